"""
Enumeration types for LogLens.

This module defines all enum types used across the system for type safety
and consistent validation. All enums inherit from str to ensure JSON
serialization compatibility.
"""

from enum import Enum
from typing import Iterable


class Severity(str, Enum):
    """
    Log and incident severity levels.

    Severities form a total order INFO < WARN < ERROR < CRITICAL. Ordering is
    defined on an explicit rank, never on the string value or on declaration
    order, so comparisons stay correct if members are reordered.
    """

    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def is_error_class(self) -> bool:
        """ERROR and CRITICAL are the only severities that can drive incidents."""
        return self.rank >= _SEVERITY_RANK[Severity.ERROR]

    def __lt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank


_SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.WARN: 1,
    Severity.ERROR: 2,
    Severity.CRITICAL: 3,
}

ERROR_CLASS_SEVERITIES = frozenset(s for s in Severity if s.is_error_class)


def max_severity(severities: Iterable[Severity]) -> Severity:
    """Highest severity in ``severities``; INFO for an empty input."""
    return max(severities, key=lambda s: s.rank, default=Severity.INFO)


class Environment(str, Enum):
    """Deployment environment a log event originated from."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class IncidentStatus(str, Enum):
    """
    Lifecycle status for incidents.

    Transitions only move forward: OPEN -> ACKNOWLEDGED -> RESOLVED, or
    OPEN -> RESOLVED directly. RESOLVED is terminal.
    """

    OPEN = "OPEN"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"

    @property
    def is_active(self) -> bool:
        return self is not IncidentStatus.RESOLVED

    def can_transition_to(self, target: "IncidentStatus") -> bool:
        return _STATUS_ORDER[target] >= _STATUS_ORDER[self]


_STATUS_ORDER = {
    IncidentStatus.OPEN: 0,
    IncidentStatus.ACKNOWLEDGED: 1,
    IncidentStatus.RESOLVED: 2,
}

ACTIVE_STATUSES = (IncidentStatus.OPEN, IncidentStatus.ACKNOWLEDGED)


class CorrelationAction(str, Enum):
    """Which branch a correlation evaluation took."""

    CREATED = "created"
    MERGED = "merged"


class Granularity(str, Enum):
    """Bucket size for error trend queries."""

    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"


class GroupField(str, Enum):
    """Dimensions a Log Store aggregation can group by."""

    SERVICE = "service_name"
    SEVERITY = "severity"
    ERROR_CODE = "error_code"
    BUCKET = "bucket"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"
