"""
Integration tests for the DuckDB-backed Log Store and Incident Store,
including the full engine running on DuckDB.
"""

import threading
from datetime import timedelta

import pytest

from loglens.app import create_app
from loglens.exceptions import DuplicateLogError, IncidentConflictError
from loglens.models.analytics import AggregateQuery
from loglens.models.enums import Granularity, GroupField, IncidentStatus, Severity, SortOrder
from loglens.models.incidents import CorrelationKey, IncidentFilter
from loglens.models.logs import LogFilter, TimeRange
from loglens.storage.duckdb_storage import DuckDBDatabase, DuckDBIncidentStore, DuckDBLogStore
from tests.conftest import BASE_TIME, FakeClock, make_event, make_incident, make_settings

KEY = CorrelationKey("payment-service", "PAYMENT_TIMEOUT")


# ============================================================================
# DuckDBLogStore
# ============================================================================


class TestDuckDBLogStore:
    def test_duckdb_log_roundtrip(self, duckdb_log_store):
        event = make_event(
            user_id="u1",
            request_id="req-1",
            host="pay-01",
            metadata={"gateway": "stripe", "attempt": 2},
            stack_trace="Traceback...",
        )
        duckdb_log_store.append(event)

        stored = duckdb_log_store.query()[0]
        assert stored == event

    def test_duckdb_log_duplicate_rejected(self, duckdb_log_store):
        event = make_event()
        duckdb_log_store.append(event)
        with pytest.raises(DuplicateLogError):
            duckdb_log_store.append(event)

    def test_duckdb_log_query_order_and_paging(self, duckdb_log_store):
        for minute in range(5):
            duckdb_log_store.append(make_event(timestamp=BASE_TIME + timedelta(minutes=minute)))
        page = duckdb_log_store.query(limit=2, offset=1)
        assert [e.timestamp.minute for e in page] == [3, 2]
        ascending = duckdb_log_store.query(order=SortOrder.ASC, limit=None)
        assert [e.timestamp.minute for e in ascending] == [0, 1, 2, 3, 4]

    def test_duckdb_log_trace_ascending(self, duckdb_log_store):
        for minute in (2, 0, 1):
            duckdb_log_store.append(
                make_event(timestamp=BASE_TIME + timedelta(minutes=minute), request_id="req-1")
            )
        trace = duckdb_log_store.query(LogFilter(request_id="req-1"))
        assert [e.timestamp.minute for e in trace] == [0, 1, 2]

    def test_duckdb_log_query_filters(self, duckdb_log_store):
        duckdb_log_store.append(make_event(service_name="a", severity=Severity.ERROR))
        duckdb_log_store.append(make_event(service_name="a", severity=Severity.INFO))
        target = make_event(service_name="b", severity=Severity.ERROR)
        duckdb_log_store.append(target)

        assert len(duckdb_log_store.query(LogFilter(service_name="a"))) == 2
        assert len(duckdb_log_store.query(LogFilter(severity=Severity.ERROR))) == 2
        by_id = duckdb_log_store.query(LogFilter(log_ids=(target.log_id,)))
        assert [e.log_id for e in by_id] == [target.log_id]
        assert duckdb_log_store.query(LogFilter(log_ids=())) == []

    def test_duckdb_log_query_time_range(self, duckdb_log_store):
        for hour in range(4):
            duckdb_log_store.append(make_event(timestamp=BASE_TIME + timedelta(hours=hour)))
        window = TimeRange(start=BASE_TIME + timedelta(hours=1), end=BASE_TIME + timedelta(hours=2))
        assert len(duckdb_log_store.query(LogFilter(time_range=window))) == 2

    def test_duckdb_aggregate_by_service(self, duckdb_log_store):
        duckdb_log_store.append(make_event(service_name="a", user_id="u1"))
        duckdb_log_store.append(make_event(service_name="a", user_id="u2", severity=Severity.INFO))
        duckdb_log_store.append(make_event(service_name="a"))
        duckdb_log_store.append(make_event(service_name="b", severity=Severity.CRITICAL))

        rows = {
            r.service_name: r
            for r in duckdb_log_store.aggregate(AggregateQuery(group_by=(GroupField.SERVICE,)))
        }
        assert rows["a"].count == 3
        assert rows["a"].error_count == 2
        assert rows["a"].user_ids == ["u1", "u2"]
        assert rows["b"].error_count == 1

    def test_duckdb_aggregate_hourly_buckets(self, duckdb_log_store):
        for minute in (5, 50, 70):
            duckdb_log_store.append(make_event(timestamp=BASE_TIME + timedelta(minutes=minute)))
        rows = duckdb_log_store.aggregate(
            AggregateQuery(group_by=(GroupField.BUCKET,), granularity=Granularity.HOUR, errors_only=True)
        )
        assert {r.bucket: r.count for r in rows} == {
            BASE_TIME: 2,
            BASE_TIME + timedelta(hours=1): 1,
        }

    def test_duckdb_aggregate_day_buckets_are_datetimes(self, duckdb_log_store):
        duckdb_log_store.append(make_event(timestamp=BASE_TIME))
        rows = duckdb_log_store.aggregate(
            AggregateQuery(group_by=(GroupField.BUCKET,), granularity=Granularity.DAY)
        )
        assert rows[0].bucket == BASE_TIME.replace(hour=0)

    def test_duckdb_aggregate_severity_and_code(self, duckdb_log_store):
        duckdb_log_store.append(make_event(error_code=None))
        duckdb_log_store.append(make_event(error_code="E1", severity=Severity.CRITICAL))
        rows = duckdb_log_store.aggregate(
            AggregateQuery(group_by=(GroupField.SEVERITY, GroupField.ERROR_CODE))
        )
        assert {(r.severity, r.error_code) for r in rows} == {
            (Severity.ERROR, None),
            (Severity.CRITICAL, "E1"),
        }

    def test_duckdb_aggregate_empty(self, duckdb_log_store):
        assert duckdb_log_store.aggregate(AggregateQuery()) == []


# ============================================================================
# DuckDBIncidentStore
# ============================================================================


class TestDuckDBIncidentStore:
    def test_duckdb_incident_roundtrip(self, duckdb_incident_store):
        incident = make_incident(
            error_count=3,
            affected_users=["u1"],
            sla_breached=True,
            breach_time=BASE_TIME + timedelta(minutes=20),
            assigned_to="oncall",
        )
        stored = duckdb_incident_store.upsert(incident)
        assert stored.version == 1
        assert duckdb_incident_store.get(incident.incident_id) == stored

    def test_duckdb_incident_find_open_by_key(self, duckdb_incident_store):
        stored = duckdb_incident_store.upsert(make_incident())
        assert duckdb_incident_store.find_open_by_key(KEY).incident_id == stored.incident_id
        assert duckdb_incident_store.find_open_by_key(CorrelationKey("x", "y")) is None

    def test_duckdb_incident_find_by_log_id(self, duckdb_incident_store):
        stored = duckdb_incident_store.upsert(
            make_incident(error_count=2, log_ids=["log-1", "log-10"])
        )
        assert duckdb_incident_store.find_by_log_id("log-10").incident_id == stored.incident_id
        assert duckdb_incident_store.find_by_log_id("log-1").incident_id == stored.incident_id
        assert duckdb_incident_store.find_by_log_id("log") is None

    def test_duckdb_incident_second_active_conflicts(self, duckdb_incident_store):
        duckdb_incident_store.upsert(make_incident())
        with pytest.raises(IncidentConflictError):
            duckdb_incident_store.upsert(make_incident())

    def test_duckdb_incident_compare_and_swap(self, duckdb_incident_store):
        stored = duckdb_incident_store.upsert(make_incident())
        updated = duckdb_incident_store.upsert(
            stored.model_copy(update={"title": "changed"}), expected_version=1
        )
        assert updated.version == 2
        assert duckdb_incident_store.get(stored.incident_id).title == "changed"
        with pytest.raises(IncidentConflictError):
            duckdb_incident_store.upsert(stored, expected_version=1)

    def test_duckdb_incident_resolve_frees_key(self, duckdb_incident_store):
        stored = duckdb_incident_store.upsert(make_incident())
        resolved = duckdb_incident_store.update_status(
            stored.incident_id,
            IncidentStatus.RESOLVED,
            fields={"resolved_at": BASE_TIME + timedelta(hours=1)},
            expected_version=1,
        )
        assert resolved.status == IncidentStatus.RESOLVED
        assert resolved.version == 2
        assert duckdb_incident_store.find_open_by_key(KEY) is None
        with pytest.raises(IncidentConflictError):
            duckdb_incident_store.upsert(resolved, expected_version=2)
        duckdb_incident_store.upsert(make_incident())
        assert duckdb_incident_store.find_open_by_key(KEY) is not None

    def test_duckdb_incident_update_status_missing(self, duckdb_incident_store):
        assert duckdb_incident_store.update_status("missing", IncidentStatus.RESOLVED) is None

    def test_duckdb_incident_update_status_version_mismatch(self, duckdb_incident_store):
        stored = duckdb_incident_store.upsert(make_incident())
        with pytest.raises(IncidentConflictError):
            duckdb_incident_store.update_status(
                stored.incident_id, IncidentStatus.ACKNOWLEDGED, expected_version=9
            )

    def test_duckdb_incident_find_filters_and_order(self, duckdb_incident_store):
        for offset, severity in ((0, Severity.ERROR), (5, Severity.CRITICAL), (10, Severity.ERROR)):
            detected = BASE_TIME + timedelta(minutes=offset)
            duckdb_incident_store.upsert(
                make_incident(
                    service_name=f"svc-{offset}",
                    severity=severity,
                    first_occurrence=detected,
                    sla_breached=offset > 0,
                    breach_time=detected if offset > 0 else None,
                )
            )

        newest_first = duckdb_incident_store.find()
        assert [i.service_name for i in newest_first] == ["svc-10", "svc-5", "svc-0"]

        breached = duckdb_incident_store.find(IncidentFilter(sla_breached=True))
        assert [i.service_name for i in breached] == ["svc-5", "svc-10"]

        critical = duckdb_incident_store.find(IncidentFilter(severity=Severity.CRITICAL))
        assert [i.service_name for i in critical] == ["svc-5"]

        stale = duckdb_incident_store.find(
            IncidentFilter(last_occurrence_before=BASE_TIME + timedelta(minutes=1))
        )
        assert [i.service_name for i in stale] == ["svc-0"]

        assert len(duckdb_incident_store.find(limit=1, offset=1)) == 1

    def test_duckdb_incident_find_by_statuses(self, duckdb_incident_store):
        stored = duckdb_incident_store.upsert(make_incident())
        duckdb_incident_store.update_status(stored.incident_id, IncidentStatus.ACKNOWLEDGED)
        assert duckdb_incident_store.find(IncidentFilter(statuses=(IncidentStatus.OPEN,))) == []
        assert len(duckdb_incident_store.find(IncidentFilter(statuses=(IncidentStatus.ACKNOWLEDGED,)))) == 1
        assert duckdb_incident_store.find(IncidentFilter(statuses=())) == []


# ============================================================================
# Persistence and full engine on DuckDB
# ============================================================================


class TestDuckDBPersistence:
    def test_duckdb_file_persists_across_connections(self, tmp_path):
        db_path = str(tmp_path / "nested" / "loglens.duckdb")
        database = DuckDBDatabase(db_path)
        DuckDBLogStore(database).append(make_event(log_id="persisted"))
        DuckDBIncidentStore(database).upsert(make_incident())
        database.close()

        reopened = DuckDBDatabase(db_path)
        try:
            assert DuckDBLogStore(reopened).query()[0].log_id == "persisted"
            assert DuckDBIncidentStore(reopened).find_open_by_key(KEY) is not None
        finally:
            reopened.close()


class TestEngineOnDuckDB:
    @pytest.fixture
    def lens(self, duckdb_log_store, duckdb_incident_store):
        clock = FakeClock(BASE_TIME + timedelta(minutes=10))
        return create_app(
            settings=make_settings(),
            log_store=duckdb_log_store,
            incident_store=duckdb_incident_store,
            clock=clock,
        )

    def test_engine_duckdb_merge_and_detail(self, lens):
        first = lens.ingestion.ingest(make_event(timestamp=BASE_TIME))
        second = lens.ingestion.ingest(make_event(timestamp=BASE_TIME + timedelta(minutes=1)))

        incident = second.incident.incident
        assert incident.incident_id == first.incident.incident.incident_id
        assert incident.error_count == 2

        detail = lens.incidents.get_incident_detail(incident.incident_id)
        assert [e.log_id for e in detail.logs] == [second.log_id, first.log_id]

    def test_engine_duckdb_concurrent_single_key(self, lens):
        events = [make_event(timestamp=BASE_TIME + timedelta(seconds=i)) for i in range(20)]
        errors = []

        def worker(event):
            try:
                lens.ingestion.ingest(event)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(e,)) for e in events]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        incidents = lens.incident_store.find(limit=None)
        assert len(incidents) == 1
        assert sorted(incidents[0].log_ids) == sorted(e.log_id for e in events)

    def test_engine_duckdb_analytics(self, lens):
        lens.ingestion.ingest(make_event(timestamp=BASE_TIME + timedelta(minutes=1), user_id="u1"))
        lens.ingestion.ingest(make_event(timestamp=BASE_TIME + timedelta(minutes=2), user_id="u2"))
        lens.ingestion.ingest(
            make_event(severity=Severity.INFO, timestamp=BASE_TIME + timedelta(minutes=3))
        )

        health = lens.analytics.service_health()
        assert health[0].total_logs == 3
        assert health[0].error_count == 2

        correlation = lens.analytics.error_correlation()
        assert correlation[0].affected_users == ["u1", "u2"]

        trends = lens.analytics.error_trends(Granularity.MINUTE)
        assert [p.label for p in trends] == ["2024-01-15 10:01", "2024-01-15 10:02"]
