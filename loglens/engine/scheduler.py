"""
Auto-Resolution Scheduler.

Periodically resolves incidents that have gone quiet: an OPEN or ACKNOWLEDGED
incident whose last occurrence is older than the inactivity threshold is
moved to RESOLVED. The same sweep re-checks SLA status on the incidents that
stay active, since elapsed time alone can push one past its threshold.

A sweep never blocks on ingestion. It try-acquires each incident's key lock
and skips the incident when a merge holds it; the merge either refreshes
``last_occurrence`` or the next sweep picks the incident up again.
"""

import threading
from datetime import datetime, timedelta
from typing import Optional

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from pydantic import BaseModel, Field

from loglens.exceptions import IncidentConflictError
from loglens.models.enums import ACTIVE_STATUSES, IncidentStatus
from loglens.models.incidents import Incident, IncidentFilter
from loglens.storage.base import IncidentStore
from loglens.utils.logging import correlation_context
from loglens.utils.time import Clock, utc_now

from .locks import KeyedLock
from .sla import SLAMonitor

logger = structlog.get_logger(__name__)

DEFAULT_AUTO_RESOLVE_MINUTES = 60.0
SWEEP_JOB_ID = "auto_resolution_sweep"


class SweepResult(BaseModel):
    """Outcome of one auto-resolution sweep."""

    resolved: list[str] = Field(default_factory=list, description="Incident ids resolved")
    breached: list[str] = Field(
        default_factory=list, description="Incident ids newly marked SLA-breached"
    )
    skipped: list[str] = Field(
        default_factory=list, description="Incident ids skipped because their key was busy"
    )

    @property
    def resolved_count(self) -> int:
        return len(self.resolved)


class AutoResolutionScheduler:
    """
    Sweeps the Incident Store for stale and SLA-breached incidents.

    Attributes:
        incident_store: Store holding incident state
        sla_monitor: Used for the SLA re-check on still-active incidents
        locks: Per-correlation-key locks shared with the Correlation Engine
        threshold_minutes: Inactivity before an incident is auto-resolved
        interval_seconds: Period of the background job
        clock: Source of "now"

    Example:
        >>> scheduler = AutoResolutionScheduler(incident_store, SLAMonitor(), locks)
        >>> result = scheduler.sweep()
        >>> scheduler.start()  # background sweeps every interval_seconds
    """

    def __init__(
        self,
        incident_store: IncidentStore,
        sla_monitor: SLAMonitor,
        locks: KeyedLock,
        threshold_minutes: float = DEFAULT_AUTO_RESOLVE_MINUTES,
        interval_seconds: float = 60.0,
        clock: Clock = utc_now,
    ):
        if threshold_minutes <= 0:
            raise ValueError("Auto-resolve threshold must be positive")
        self.incident_store = incident_store
        self.sla_monitor = sla_monitor
        self.locks = locks
        self.threshold_minutes = threshold_minutes
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._scheduler: Optional[BackgroundScheduler] = None
        self._state_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def sweep(self, threshold_minutes: Optional[float] = None) -> SweepResult:
        """
        Run one auto-resolution and SLA re-check pass.

        Args:
            threshold_minutes: Override for the inactivity threshold

        Returns:
            SweepResult listing resolved, newly breached and skipped incidents

        Raises:
            StoreUnavailableError: If the Incident Store fails
        """
        threshold = threshold_minutes if threshold_minutes is not None else self.threshold_minutes
        if threshold <= 0:
            raise ValueError("Auto-resolve threshold must be positive")

        now = self.clock()
        cutoff = now - timedelta(minutes=threshold)
        result = SweepResult()

        stale = self.incident_store.find(
            IncidentFilter(statuses=ACTIVE_STATUSES, last_occurrence_before=cutoff),
            limit=None,
        )
        for incident in stale:
            self._resolve_if_stale(incident, cutoff, now, result)

        active = self.incident_store.find(IncidentFilter(statuses=ACTIVE_STATUSES), limit=None)
        for incident in active:
            if incident.sla_breached:
                continue
            self._recheck_sla(incident, now, result)

        logger.info(
            "sweep_complete",
            threshold_minutes=threshold,
            resolved=len(result.resolved),
            breached=len(result.breached),
            skipped=len(result.skipped),
        )
        return result

    def _resolve_if_stale(
        self, incident: Incident, cutoff: datetime, now: datetime, result: SweepResult
    ) -> None:
        key = incident.correlation_key
        with correlation_context(key, incident_id=incident.incident_id):
            with self.locks.hold(key, blocking=False) as acquired:
                if not acquired:
                    result.skipped.append(incident.incident_id)
                    return

                current = self.incident_store.get(incident.incident_id)
                if current is None or not current.is_active or not current.last_occurrence < cutoff:
                    return

                try:
                    self.incident_store.update_status(
                        current.incident_id,
                        IncidentStatus.RESOLVED,
                        fields={"resolved_at": now, "updated_at": now},
                        expected_version=current.version,
                    )
                except IncidentConflictError:
                    # Changed outside this process since the re-read
                    result.skipped.append(current.incident_id)
                    return

            result.resolved.append(incident.incident_id)
            logger.info(
                "incident_auto_resolved",
                last_occurrence=incident.last_occurrence.isoformat(),
            )

    def _recheck_sla(self, incident: Incident, now: datetime, result: SweepResult) -> None:
        with self.locks.hold(incident.correlation_key, blocking=False) as acquired:
            if not acquired:
                return

            current = self.incident_store.get(incident.incident_id)
            if current is None or not current.is_active or current.sla_breached:
                return

            checked = self.sla_monitor.apply(current, now)
            if not checked.sla_breached:
                return

            try:
                self.incident_store.upsert(
                    checked.model_copy(update={"updated_at": now}),
                    expected_version=current.version,
                )
            except IncidentConflictError:
                return

        result.breached.append(incident.incident_id)

    def _run_tick(self) -> None:
        """Job body for the background scheduler; a failed sweep waits for the next tick."""
        try:
            self.sweep()
        except Exception as e:
            logger.error("sweep_failed", error=str(e), error_type=type(e).__name__)

    def start(self) -> None:
        """Start periodic sweeps on a background thread. Idempotent."""
        with self._state_lock:
            if self.running:
                return
            scheduler = BackgroundScheduler(timezone="UTC")
            scheduler.add_job(
                self._run_tick,
                "interval",
                seconds=self.interval_seconds,
                id=SWEEP_JOB_ID,
                max_instances=1,
                coalesce=True,
            )
            scheduler.start()
            self._scheduler = scheduler
            logger.info(
                "scheduler_started",
                interval_seconds=self.interval_seconds,
                threshold_minutes=self.threshold_minutes,
            )

    def shutdown(self, wait: bool = True) -> None:
        """Stop periodic sweeps. Safe to call when not started."""
        with self._state_lock:
            if self._scheduler is None:
                return
            if self._scheduler.running:
                self._scheduler.shutdown(wait=wait)
            self._scheduler = None
            logger.info("scheduler_stopped")
