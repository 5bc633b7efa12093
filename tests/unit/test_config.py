"""
Unit tests for Settings and the application factory.
"""

import pytest
from pydantic import ValidationError

from loglens.app import create_app
from loglens.config import Settings
from loglens.models.enums import Granularity, Severity
from loglens.storage.duckdb_storage import DuckDBIncidentStore, DuckDBLogStore
from loglens.storage.memory import InMemoryIncidentStore, InMemoryLogStore
from tests.conftest import make_settings


class TestSettings:
    def test_settings_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.sla_threshold_minutes == 15
        assert settings.auto_resolve_threshold_minutes == 60
        assert settings.trend_default_granularity == Granularity.HOUR
        assert settings.correlation_result_limit == 20
        assert settings.max_batch_size == 1000
        assert settings.storage_backend == "memory"

    def test_settings_from_environment(self, monkeypatch):
        monkeypatch.setenv("LOGLENS_AUTO_RESOLVE_THRESHOLD_MINUTES", "30")
        monkeypatch.setenv("LOGLENS_STORAGE_BACKEND", "DuckDB")
        settings = Settings(_env_file=None)
        assert settings.auto_resolve_threshold_minutes == 30
        assert settings.storage_backend == "duckdb"

    def test_settings_sla_thresholds(self):
        thresholds = make_settings().sla_thresholds()
        assert thresholds == {Severity.CRITICAL: 5, Severity.ERROR: 15}

    def test_settings_severity_thresholds_fall_back_to_global(self):
        settings = make_settings(
            sla_threshold_minutes=1,
            sla_threshold_critical_minutes=None,
            sla_threshold_error_minutes=None,
        )
        assert settings.sla_thresholds() == {Severity.CRITICAL: 1, Severity.ERROR: 1}

    def test_settings_critical_looser_than_error_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(sla_threshold_critical_minutes=30, sla_threshold_error_minutes=15)

    def test_settings_unknown_backend_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(storage_backend="mongodb")

    def test_settings_non_positive_threshold_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(auto_resolve_threshold_minutes=0)


class TestCreateApp:
    def test_create_app_memory_backend(self):
        lens = create_app(settings=make_settings())
        assert isinstance(lens.log_store, InMemoryLogStore)
        assert isinstance(lens.incident_store, InMemoryIncidentStore)
        assert lens.correlation.locks is lens.scheduler.locks is lens.incidents.locks

    def test_create_app_duckdb_backend(self, tmp_path):
        settings = make_settings(storage_backend="duckdb", db_path=str(tmp_path / "loglens.duckdb"))
        lens = create_app(settings=settings)
        assert isinstance(lens.log_store, DuckDBLogStore)
        assert isinstance(lens.incident_store, DuckDBIncidentStore)
        assert lens.log_store.database is lens.incident_store.database
        lens.log_store.database.close()

    def test_create_app_store_overrides(self, log_store, incident_store):
        lens = create_app(settings=make_settings(), log_store=log_store, incident_store=incident_store)
        assert lens.log_store is log_store
        assert lens.incident_store is incident_store

    def test_create_app_applies_settings(self):
        lens = create_app(
            settings=make_settings(auto_resolve_threshold_minutes=30, max_affected_users=5)
        )
        assert lens.scheduler.threshold_minutes == 30
        assert lens.correlation.max_affected_users == 5
        assert lens.sla_monitor.threshold_for(Severity.CRITICAL) == 5

    def test_app_lifecycle_starts_scheduler_when_enabled(self):
        lens = create_app(
            settings=make_settings(scheduler_enabled=True, scheduler_interval_seconds=3600)
        )
        with lens:
            assert lens.scheduler.running
        assert not lens.scheduler.running

    def test_app_lifecycle_scheduler_disabled(self):
        lens = create_app(settings=make_settings())
        lens.start()
        assert not lens.scheduler.running
        lens.shutdown()
