"""
Correlation Engine: error event to incident correlation.

Every ingested error-class event is mapped to a correlation key
(service name, error code) and either creates a new incident for that key or
merges into the key's active one. The engine guarantees at most one active
incident per key and never loses a contributing event under concurrent
ingestion:

1. Evaluations on the same key serialize on a per-key lock; different keys
   proceed in parallel.
2. Writes go through the Incident Store's conditional upsert, so a writer
   outside this process that changed the incident first is detected.
3. A detected conflict is retried with freshly read state, a bounded number
   of times, before surfacing as IncidentConflictError.

Resolved incidents never match: an event for a key whose incident has been
resolved starts a new incident.

Version: correlation_v1
"""

from typing import Iterable, Optional

import structlog

from loglens.exceptions import IncidentConflictError, InvalidInputError
from loglens.models.enums import CorrelationAction, IncidentStatus, max_severity
from loglens.models.incidents import CorrelationKey, Incident, IncidentUpdateResult
from loglens.models.logs import LogEvent
from loglens.storage.base import IncidentStore
from loglens.utils.logging import correlation_context
from loglens.utils.retry import call_with_retry
from loglens.utils.time import Clock, utc_now

from .locks import KeyedLock
from .sla import SLAMonitor

logger = structlog.get_logger(__name__)

AUTO_DETECTED_TAG = "auto-detected"
DEFAULT_MAX_AFFECTED_USERS = 1000


def incident_title(key: CorrelationKey, error_count: int) -> str:
    return f"[{key.error_code}] {key.service_name} - {error_count} errors detected"


def incident_description(error_count: int) -> str:
    return f"Detected {error_count} related errors"


class CorrelationEngine:
    """
    Creates and merges incidents from error-class log events.

    Attributes:
        incident_store: Store holding incident state
        sla_monitor: Applies SLA breach status on every create/merge
        locks: Per-correlation-key locks, shared with the scheduler and
            operator updates
        clock: Source of "now"
        max_affected_users: Cap on distinct users recorded per incident
        max_conflict_retries: Attempts for a write that hits stale state
        conflict_retry_delay: Initial backoff between those attempts
        lock_timeout: Seconds to wait for a busy key

    Example:
        >>> engine = CorrelationEngine(incident_store, SLAMonitor(), KeyedLock())
        >>> result = engine.evaluate(event)
        >>> if result is not None:
        ...     print(result.action, result.incident.error_count)
    """

    def __init__(
        self,
        incident_store: IncidentStore,
        sla_monitor: SLAMonitor,
        locks: KeyedLock,
        clock: Clock = utc_now,
        max_affected_users: int = DEFAULT_MAX_AFFECTED_USERS,
        max_conflict_retries: int = 3,
        conflict_retry_delay: float = 0.0,
        lock_timeout: Optional[float] = None,
    ):
        self.incident_store = incident_store
        self.sla_monitor = sla_monitor
        self.locks = locks
        self.clock = clock
        self.max_affected_users = max_affected_users
        self.max_conflict_retries = max_conflict_retries
        self.conflict_retry_delay = conflict_retry_delay
        self.lock_timeout = lock_timeout

    def evaluate(self, event: LogEvent, replay: bool = False) -> Optional[IncidentUpdateResult]:
        """
        Correlate one ingested event.

        Args:
            event: The log event, already appended to the Log Store
            replay: The event was stored by an earlier attempt whose
                correlation may or may not have completed. If an incident
                already holds its log id, that incident is returned unchanged.

        Returns:
            IncidentUpdateResult telling whether an incident was created or
            merged, or None for events that are not error-class

        Raises:
            InvalidInputError: If the event has no service name
            IncidentConflictError: If the key stayed contended past all retries
            StoreUnavailableError: If the Incident Store fails
        """
        if not getattr(event, "service_name", None) or not event.service_name.strip():
            raise InvalidInputError("Log event has no service_name; cannot correlate")
        if not event.severity.is_error_class:
            return None

        key = CorrelationKey.for_event(event)
        with correlation_context(key, log_id=event.log_id), self.locks.hold(
            key, timeout=self.lock_timeout
        ) as acquired:
            if not acquired:
                logger.warning("correlation_lock_timeout")
                raise IncidentConflictError(f"Timed out waiting for incident lock on {key}")

            if replay:
                owner = self.incident_store.find_by_log_id(event.log_id)
                if owner is not None:
                    logger.info("contribution_already_recorded", incident_id=owner.incident_id)
                    action = (
                        CorrelationAction.CREATED
                        if owner.log_ids[0] == event.log_id
                        else CorrelationAction.MERGED
                    )
                    return IncidentUpdateResult(action=action, incident=owner, log_id=event.log_id)

            return call_with_retry(
                lambda: self._apply(event, key),
                attempts=self.max_conflict_retries,
                delay=self.conflict_retry_delay,
                exceptions=(IncidentConflictError,),
            )

    def evaluate_batch(self, events: Iterable[LogEvent]) -> list[Optional[IncidentUpdateResult]]:
        """
        Correlate a batch in event-timestamp order.

        Events with equal timestamps keep their ingestion order. Results are
        returned in that same processing order.
        """
        ordered = sorted(events, key=lambda e: e.timestamp)
        return [self.evaluate(event) for event in ordered]

    def _apply(self, event: LogEvent, key: CorrelationKey) -> IncidentUpdateResult:
        """Read current state for the key and write the create or merge."""
        now = self.clock()
        existing = self.incident_store.find_open_by_key(key)

        if existing is None:
            incident = self._create(event, key, now)
            stored = self.incident_store.upsert(incident, expected_version=None)
            logger.info(
                "incident_created",
                incident_id=stored.incident_id,
                incident_severity=stored.severity.value,
                sla_breached=stored.sla_breached,
            )
            return IncidentUpdateResult(
                action=CorrelationAction.CREATED, incident=stored, log_id=event.log_id
            )

        merged = self._merge(existing, event, now)
        stored = self.incident_store.upsert(merged, expected_version=existing.version)
        logger.info(
            "incident_merged",
            incident_id=stored.incident_id,
            error_count=stored.error_count,
            incident_severity=stored.severity.value,
            sla_breached=stored.sla_breached,
        )
        return IncidentUpdateResult(
            action=CorrelationAction.MERGED, incident=stored, log_id=event.log_id
        )

    def _create(self, event: LogEvent, key: CorrelationKey, now) -> Incident:
        occurred = min(event.timestamp, now)
        users = [event.user_id] if event.user_id else []
        incident = Incident(
            service_name=key.service_name,
            error_code=key.error_code,
            severity=event.severity,
            title=incident_title(key, 1),
            description=incident_description(1),
            status=IncidentStatus.OPEN,
            log_ids=[event.log_id],
            error_count=1,
            affected_services=[event.service_name],
            affected_users=users,
            detected_at=now,
            first_occurrence=occurred,
            last_occurrence=occurred,
            tags=[AUTO_DETECTED_TAG, key.error_code.lower()],
            updated_at=now,
        )
        return self.sla_monitor.apply(incident, now)

    def _merge(self, existing: Incident, event: LogEvent, now) -> Incident:
        occurred = min(event.timestamp, now)
        log_ids = list(existing.log_ids)
        if event.log_id in log_ids:
            logger.debug(
                "duplicate_contribution_ignored",
                incident_id=existing.incident_id,
                log_id=event.log_id,
            )
        else:
            log_ids.append(event.log_id)

        services = list(existing.affected_services)
        if event.service_name not in services:
            services.append(event.service_name)

        users = list(existing.affected_users)
        overflow = existing.affected_users_overflow
        if event.user_id and event.user_id not in users:
            if len(users) < self.max_affected_users:
                users.append(event.user_id)
            else:
                overflow += 1

        key = existing.correlation_key
        error_count = len(log_ids)
        merged = Incident.model_validate(
            {
                **existing.model_dump(),
                "severity": max_severity((existing.severity, event.severity)),
                "title": incident_title(key, error_count),
                "description": incident_description(error_count),
                "log_ids": log_ids,
                "error_count": error_count,
                "affected_services": sorted(services),
                "affected_users": users,
                "affected_users_overflow": overflow,
                "first_occurrence": min(existing.first_occurrence, occurred),
                "last_occurrence": max(existing.last_occurrence, occurred),
                "updated_at": now,
            }
        )
        return self.sla_monitor.apply(merged, now)
