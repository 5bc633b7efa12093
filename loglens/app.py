"""
Application factory wiring stores, engines and services together.
"""

from datetime import timedelta
from typing import Optional

from loglens.config import Settings, get_settings
from loglens.engine.analytics import AnalyticsEngine
from loglens.engine.correlation import CorrelationEngine
from loglens.engine.locks import KeyedLock
from loglens.engine.scheduler import AutoResolutionScheduler
from loglens.engine.sla import SLAMonitor
from loglens.services.incident_service import IncidentService
from loglens.services.ingestion_service import IngestionService
from loglens.storage import create_stores
from loglens.storage.base import IncidentStore, LogStore
from loglens.utils.logging import configure_logging, get_logger
from loglens.utils.time import Clock, utc_now

logger = get_logger(__name__)


class LogLens:
    """
    Running engine instance.

    Holds one of each component. ``start()`` launches the periodic
    auto-resolution sweep (when enabled); ``shutdown()`` stops it. Also
    usable as a context manager.
    """

    def __init__(
        self,
        settings: Settings,
        log_store: LogStore,
        incident_store: IncidentStore,
        clock: Clock = utc_now,
    ):
        self.settings = settings
        self.log_store = log_store
        self.incident_store = incident_store
        self.clock = clock
        self.locks = KeyedLock()

        self.sla_monitor = SLAMonitor(
            default_threshold_minutes=settings.sla_threshold_minutes,
            thresholds=settings.sla_thresholds(),
        )
        self.correlation = CorrelationEngine(
            incident_store=incident_store,
            sla_monitor=self.sla_monitor,
            locks=self.locks,
            clock=clock,
            max_affected_users=settings.max_affected_users,
            max_conflict_retries=settings.max_conflict_retries,
            conflict_retry_delay=settings.conflict_retry_delay_seconds,
            lock_timeout=settings.lock_timeout_seconds,
        )
        self.scheduler = AutoResolutionScheduler(
            incident_store=incident_store,
            sla_monitor=self.sla_monitor,
            locks=self.locks,
            threshold_minutes=settings.auto_resolve_threshold_minutes,
            interval_seconds=settings.scheduler_interval_seconds,
            clock=clock,
        )
        self.analytics = AnalyticsEngine(
            log_store=log_store,
            clock=clock,
            health_window=timedelta(minutes=settings.health_window_minutes),
            correlation_window=timedelta(minutes=settings.health_window_minutes),
            trend_window=timedelta(hours=settings.trend_window_hours),
            default_granularity=settings.trend_default_granularity,
            correlation_limit=settings.correlation_result_limit,
        )
        self.ingestion = IngestionService(
            log_store=log_store,
            correlation_engine=self.correlation,
            clock=clock,
            max_batch_size=settings.max_batch_size,
            max_clock_skew=timedelta(seconds=settings.max_clock_skew_seconds),
        )
        self.incidents = IncidentService(
            incident_store=incident_store,
            log_store=log_store,
            locks=self.locks,
            scheduler=self.scheduler,
            clock=clock,
            lock_timeout=settings.lock_timeout_seconds,
        )

    def start(self) -> None:
        logger.info(
            "application_startup",
            storage_backend=self.settings.storage_backend,
            scheduler_enabled=self.settings.scheduler_enabled,
            dev_mode=self.settings.dev_mode,
        )
        if self.settings.scheduler_enabled:
            self.scheduler.start()

    def shutdown(self) -> None:
        self.scheduler.shutdown()
        logger.info("application_shutdown")

    def __enter__(self) -> "LogLens":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()


def create_app(
    settings: Optional[Settings] = None,
    log_store: Optional[LogStore] = None,
    incident_store: Optional[IncidentStore] = None,
    clock: Optional[Clock] = None,
) -> LogLens:
    """
    Create a configured LogLens instance.

    Args:
        settings: Settings to use (defaults to the environment settings)
        log_store: Log Store override; built from settings when omitted
        incident_store: Incident Store override; built from settings when omitted
        clock: Time source override, mainly for tests

    Returns:
        LogLens instance, not yet started
    """
    settings = settings or get_settings()
    configure_logging(settings)

    if log_store is None or incident_store is None:
        default_logs, default_incidents = create_stores(settings)
        if log_store is None:
            log_store = default_logs
        if incident_store is None:
            incident_store = default_incidents

    return LogLens(settings, log_store, incident_store, clock=clock or utc_now)
