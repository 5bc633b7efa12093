"""
Exception hierarchy for LogLens.

Every failure surfaced by the engines and stores derives from LogLensError.
Errors flagged ``retryable`` are transient: the caller may retry the same
operation with backoff.
"""


class LogLensError(Exception):
    """Base exception for all LogLens failures."""

    retryable = False


class InvalidInputError(LogLensError):
    """An event or incident update is missing required fields or is malformed.

    Raised before any store write, so nothing is partially applied.
    """


class InvalidTransitionError(InvalidInputError):
    """An incident status change would move the lifecycle backwards."""

    def __init__(self, incident_id: str, current: str, requested: str):
        self.incident_id = incident_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Incident {incident_id} cannot move from {current} to {requested}"
        )


class DuplicateLogError(LogLensError):
    """A log event with the same id is already stored."""

    def __init__(self, log_id: str):
        self.log_id = log_id
        super().__init__(f"Log {log_id} already exists")


class IncidentConflictError(LogLensError):
    """A conditional upsert found stale base state for an incident."""

    retryable = True


class StoreUnavailableError(LogLensError):
    """A store timed out or its backend failed."""

    retryable = True
