"""
Pytest configuration and shared fixtures for the LogLens test suite.

Provides data factories for log events and incidents, an advanceable clock,
in-memory and DuckDB store fixtures, and fully wired engine fixtures reused
across unit, integration, golden and property-based tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

import pytest

from loglens.app import LogLens, create_app
from loglens.config import Settings
from loglens.engine.analytics import AnalyticsEngine
from loglens.engine.correlation import CorrelationEngine, incident_description, incident_title
from loglens.engine.locks import KeyedLock
from loglens.engine.scheduler import AutoResolutionScheduler
from loglens.engine.sla import SLAMonitor
from loglens.models.enums import IncidentStatus, Severity
from loglens.models.incidents import CorrelationKey, Incident
from loglens.models.logs import LogEvent
from loglens.storage.duckdb_storage import DuckDBDatabase, DuckDBIncidentStore, DuckDBLogStore
from loglens.storage.memory import InMemoryIncidentStore, InMemoryLogStore

BASE_TIME = datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Deterministic, manually advanced time source."""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


# ---------------------------------------------------------------------------
# Model factories
# ---------------------------------------------------------------------------


def make_event(
    service_name: str = "payment-service",
    severity: Severity = Severity.ERROR,
    error_code: Optional[str] = "PAYMENT_TIMEOUT",
    timestamp: datetime = BASE_TIME,
    message: str = "Payment gateway timed out",
    **overrides,
) -> LogEvent:
    """Factory function for creating test LogEvent objects."""
    defaults = dict(
        log_id=str(uuid4()),
        service_name=service_name,
        severity=severity,
        error_code=error_code,
        timestamp=timestamp,
        message=message,
        ingested_at=timestamp,
    )
    defaults.update(overrides)
    return LogEvent(**defaults)


def make_incident(
    service_name: str = "payment-service",
    error_code: str = "PAYMENT_TIMEOUT",
    severity: Severity = Severity.ERROR,
    error_count: int = 1,
    first_occurrence: datetime = BASE_TIME,
    last_occurrence: Optional[datetime] = None,
    status: IncidentStatus = IncidentStatus.OPEN,
    **overrides,
) -> Incident:
    """Factory function for creating test Incident objects."""
    last_occurrence = last_occurrence or first_occurrence
    key = CorrelationKey(service_name, error_code)
    defaults = dict(
        incident_id=str(uuid4()),
        service_name=service_name,
        error_code=error_code,
        severity=severity,
        title=incident_title(key, error_count),
        description=incident_description(error_count),
        status=status,
        log_ids=[str(uuid4()) for _ in range(error_count)],
        error_count=error_count,
        affected_services=[service_name],
        detected_at=first_occurrence,
        first_occurrence=first_occurrence,
        last_occurrence=last_occurrence,
        resolved_at=last_occurrence if status == IncidentStatus.RESOLVED else None,
        tags=["auto-detected", error_code.lower()],
        updated_at=last_occurrence,
    )
    defaults.update(overrides)
    return Incident(**defaults)


def make_settings(**overrides) -> Settings:
    """Settings isolated from the environment's .env file."""
    defaults = dict(scheduler_enabled=False, conflict_retry_delay_seconds=0)
    defaults.update(overrides)
    return Settings(_env_file=None, **defaults)


# ---------------------------------------------------------------------------
# Pytest fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    """Clock starting at BASE_TIME."""
    return FakeClock()


@pytest.fixture
def log_store():
    return InMemoryLogStore()


@pytest.fixture
def incident_store():
    return InMemoryIncidentStore()


@pytest.fixture
def duckdb_database():
    """In-memory DuckDB database, closed after the test."""
    database = DuckDBDatabase(":memory:")
    yield database
    database.close()


@pytest.fixture
def duckdb_log_store(duckdb_database):
    return DuckDBLogStore(duckdb_database)


@pytest.fixture
def duckdb_incident_store(duckdb_database):
    return DuckDBIncidentStore(duckdb_database)


@pytest.fixture
def locks():
    return KeyedLock()


@pytest.fixture
def sla_monitor():
    """Monitor with the default thresholds: CRITICAL 5, ERROR 15 minutes."""
    return SLAMonitor(
        default_threshold_minutes=15,
        thresholds={Severity.CRITICAL: 5, Severity.ERROR: 15},
    )


@pytest.fixture
def correlation_engine(incident_store, sla_monitor, locks, clock):
    return CorrelationEngine(
        incident_store=incident_store,
        sla_monitor=sla_monitor,
        locks=locks,
        clock=clock,
    )


@pytest.fixture
def scheduler(incident_store, sla_monitor, locks, clock):
    return AutoResolutionScheduler(
        incident_store=incident_store,
        sla_monitor=sla_monitor,
        locks=locks,
        threshold_minutes=60,
        clock=clock,
    )


@pytest.fixture
def analytics(log_store, clock):
    return AnalyticsEngine(log_store=log_store, clock=clock)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def app(settings, clock) -> LogLens:
    """Fully wired LogLens on in-memory stores with the fake clock."""
    lens = create_app(settings=settings, clock=clock)
    yield lens
    lens.shutdown()
