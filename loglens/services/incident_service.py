"""
Incident service: operator-facing reads and lifecycle updates.

Status changes follow the forward-only lifecycle
OPEN -> ACKNOWLEDGED -> RESOLVED and run under the incident's correlation-key
lock, so they never interleave with a merge or an auto-resolution of the same
incident.
"""

from collections import Counter
from typing import Optional

import structlog

from loglens.engine.locks import KeyedLock
from loglens.engine.scheduler import AutoResolutionScheduler, SweepResult
from loglens.exceptions import IncidentConflictError, InvalidInputError, InvalidTransitionError
from loglens.models.enums import ACTIVE_STATUSES, IncidentStatus, Severity
from loglens.models.incidents import (
    Incident,
    IncidentDetail,
    IncidentFilter,
    IncidentStats,
    IncidentUpdate,
)
from loglens.models.logs import LogFilter
from loglens.storage.base import IncidentStore, LogStore
from loglens.utils.time import Clock, utc_now

logger = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 20
DEFAULT_CRITICAL_LIMIT = 10
TOP_SERVICES_LIMIT = 5


class IncidentService:
    """
    Queries and operator updates over the Incident Store.

    Attributes:
        incident_store: Store holding incident state
        log_store: Store used to resolve an incident's contributing events
        locks: Per-correlation-key locks shared with the engines
        scheduler: Auto-resolution scheduler used for on-demand sweeps
        clock: Source of "now"
        lock_timeout: Seconds to wait for a busy incident
    """

    def __init__(
        self,
        incident_store: IncidentStore,
        log_store: LogStore,
        locks: KeyedLock,
        scheduler: AutoResolutionScheduler,
        clock: Clock = utc_now,
        lock_timeout: Optional[float] = None,
    ):
        self.incident_store = incident_store
        self.log_store = log_store
        self.locks = locks
        self.scheduler = scheduler
        self.clock = clock
        self.lock_timeout = lock_timeout

    # ========================================================================
    # Queries
    # ========================================================================

    def list_incidents(
        self,
        incident_filter: Optional[IncidentFilter] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> list[Incident]:
        if limit < 1 or offset < 0:
            raise InvalidInputError("limit must be positive and offset non-negative")
        return self.incident_store.find(incident_filter, limit=limit, offset=offset)

    def get_incidents_by_status(
        self, status: IncidentStatus, limit: int = DEFAULT_PAGE_SIZE, offset: int = 0
    ) -> list[Incident]:
        return self.list_incidents(IncidentFilter(statuses=(status,)), limit, offset)

    def get_incidents_by_service(
        self,
        service_name: str,
        status: Optional[IncidentStatus] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> list[Incident]:
        statuses = (status,) if status is not None else None
        return self.list_incidents(
            IncidentFilter(service_name=service_name, statuses=statuses), limit, offset
        )

    def get_sla_breached_incidents(
        self, limit: int = DEFAULT_PAGE_SIZE, offset: int = 0
    ) -> list[Incident]:
        """Active incidents past their SLA, oldest first."""
        return self.list_incidents(
            IncidentFilter(sla_breached=True, statuses=ACTIVE_STATUSES), limit, offset
        )

    def get_critical_incidents(self, limit: int = DEFAULT_CRITICAL_LIMIT) -> list[Incident]:
        """Active CRITICAL incidents, newest first."""
        return self.list_incidents(
            IncidentFilter(severity=Severity.CRITICAL, statuses=ACTIVE_STATUSES), limit
        )

    def get_incident_detail(self, incident_id: str) -> Optional[IncidentDetail]:
        """
        An incident together with its contributing events, newest first.

        Returns:
            IncidentDetail, or None if no incident has this id
        """
        incident = self.incident_store.get(incident_id)
        if incident is None:
            return None
        logs = self.log_store.query(LogFilter(log_ids=tuple(incident.log_ids)), limit=None)
        return IncidentDetail(incident=incident, logs=logs)

    def get_incident_stats(self) -> IncidentStats:
        """Counts by status, SLA and severity, plus the five services with most incidents."""
        incidents = self.incident_store.find(limit=None)
        by_severity = Counter(i.severity for i in incidents)
        by_service = Counter(i.service_name for i in incidents)
        top_services = sorted(by_service.items(), key=lambda item: (-item[1], item[0]))

        return IncidentStats(
            total=len(incidents),
            open=sum(1 for i in incidents if i.status == IncidentStatus.OPEN),
            acknowledged=sum(1 for i in incidents if i.status == IncidentStatus.ACKNOWLEDGED),
            sla_breached=sum(1 for i in incidents if i.sla_breached),
            by_severity=dict(by_severity),
            top_services=top_services[:TOP_SERVICES_LIMIT],
        )

    # ========================================================================
    # Updates
    # ========================================================================

    def update_incident(self, incident_id: str, update: IncidentUpdate) -> Optional[Incident]:
        """
        Apply an operator update: status, assignee and tags.

        Status may only move forward; requesting the current status is a
        no-op. Resolving sets ``resolved_at``.

        Returns:
            The updated incident, or None if no incident has this id

        Raises:
            InvalidTransitionError: If the status would move backwards
            IncidentConflictError: If the incident stayed locked past the timeout
        """
        incident = self.incident_store.get(incident_id)
        if incident is None:
            return None

        with self.locks.hold(incident.correlation_key, timeout=self.lock_timeout) as acquired:
            if not acquired:
                raise IncidentConflictError(f"Timed out waiting for incident {incident_id}")

            current = self.incident_store.get(incident_id)
            if current is None:
                return None

            now = self.clock()
            fields: dict = {}
            new_status = current.status
            if update.status is not None and update.status != current.status:
                if not current.status.can_transition_to(update.status):
                    raise InvalidTransitionError(
                        incident_id, current.status.value, update.status.value
                    )
                new_status = update.status
                if new_status == IncidentStatus.RESOLVED:
                    fields["resolved_at"] = now
            if update.assigned_to is not None:
                fields["assigned_to"] = update.assigned_to
            if update.tags is not None:
                fields["tags"] = update.tags

            if new_status == current.status and not fields:
                return current

            fields["updated_at"] = now
            updated = self.incident_store.update_status(
                incident_id, new_status, fields=fields, expected_version=current.version
            )

        logger.info(
            "incident_updated",
            incident_id=incident_id,
            previous_status=current.status.value,
            status=new_status.value,
            assigned_to=update.assigned_to,
        )
        return updated

    def auto_resolve(self, threshold_minutes: Optional[float] = None) -> SweepResult:
        """Run an auto-resolution sweep now; see AutoResolutionScheduler.sweep."""
        return self.scheduler.sweep(threshold_minutes=threshold_minutes)
