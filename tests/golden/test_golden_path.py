"""
Golden path tests: end-to-end scenarios through the public LogLens surface.

Each scenario drives ingestion, correlation, SLA monitoring, auto-resolution
and analytics with a fixed clock and asserts the exact observable outcome.
"""

from datetime import timedelta

import pytest

from loglens.app import create_app
from loglens.models.enums import CorrelationAction, Granularity, IncidentStatus
from loglens.models.incidents import IncidentUpdate
from tests.conftest import BASE_TIME, FakeClock, make_incident, make_settings


def payment_timeout(timestamp, **overrides):
    data = {
        "service_name": "payment-service",
        "severity": "ERROR",
        "error_code": "PAYMENT_TIMEOUT",
        "message": "Payment gateway timed out after 30s",
        "timestamp": timestamp,
    }
    data.update(overrides)
    return data


@pytest.fixture
def clock():
    return FakeClock(BASE_TIME)


@pytest.fixture
def lens(clock):
    """LogLens with a one-minute SLA for every severity."""
    settings = make_settings(
        sla_threshold_minutes=1,
        sla_threshold_critical_minutes=None,
        sla_threshold_error_minutes=None,
    )
    app = create_app(settings=settings, clock=clock)
    yield app
    app.shutdown()


class TestGoldenPath:
    def test_golden_three_errors_one_incident_breached(self, lens, clock):
        """Three PAYMENT_TIMEOUT errors over two minutes form one breached incident."""
        results = []
        for seconds in (0, 60, 120):
            clock.set(BASE_TIME + timedelta(seconds=seconds))
            results.append(lens.ingestion.ingest(payment_timeout(clock())))

        assert [r.incident.action for r in results] == [
            CorrelationAction.CREATED,
            CorrelationAction.MERGED,
            CorrelationAction.MERGED,
        ]
        incidents = lens.incidents.list_incidents()
        assert len(incidents) == 1

        incident = incidents[0]
        assert incident.error_count == 3
        assert incident.log_ids == [r.log_id for r in results]
        assert incident.first_occurrence == BASE_TIME
        assert incident.last_occurrence == BASE_TIME + timedelta(seconds=120)
        assert incident.sla_breached
        assert incident.breach_time == BASE_TIME + timedelta(seconds=120)
        assert incident.title == "[PAYMENT_TIMEOUT] payment-service - 3 errors detected"
        assert lens.incidents.get_sla_breached_incidents()[0].incident_id == incident.incident_id

    def test_golden_resolve_then_new_error_opens_new_incident(self, lens, clock):
        """A resolved incident never absorbs new errors."""
        first = lens.ingestion.ingest(payment_timeout(clock())).incident.incident
        clock.advance(seconds=30)
        resolved = lens.incidents.update_incident(
            first.incident_id, IncidentUpdate(status=IncidentStatus.RESOLVED)
        )
        assert resolved.resolved_at == clock()

        clock.advance(seconds=30)
        result = lens.ingestion.ingest(payment_timeout(clock()))

        assert result.incident.action == CorrelationAction.CREATED
        assert result.incident.incident.incident_id != first.incident_id
        assert result.incident.incident.error_count == 1
        assert lens.incidents.get_incident_detail(first.incident_id).incident.error_count == 1
        assert lens.incidents.get_incident_stats().total == 2

    def test_golden_hourly_trend_buckets(self, lens, clock):
        """Errors at 10:05, 10:50 and 11:10 fall into the 10:00 and 11:00 buckets."""
        clock.set(BASE_TIME + timedelta(hours=2))
        for minutes in (5, 50, 70):
            lens.ingestion.ingest(
                payment_timeout(BASE_TIME + timedelta(minutes=minutes), severity="CRITICAL")
            )

        trend = lens.analytics.error_trends(Granularity.HOUR)
        assert [(p.label, p.error_count) for p in trend] == [
            ("2024-01-15 10:00", 2),
            ("2024-01-15 11:00", 1),
        ]

    def test_golden_auto_resolution_sweep(self, lens, clock):
        """With a 60 minute threshold, a 90 minute old incident resolves and a 10 minute old one stays."""
        now = BASE_TIME + timedelta(hours=3)
        clock.set(now)
        stale = lens.incident_store.upsert(
            make_incident(service_name="checkout", first_occurrence=now - timedelta(minutes=90))
        )
        fresh = lens.incident_store.upsert(
            make_incident(service_name="search", first_occurrence=now - timedelta(minutes=10))
        )

        result = lens.scheduler.sweep()

        assert result.resolved == [stale.incident_id]
        assert lens.incident_store.get(stale.incident_id).status == IncidentStatus.RESOLVED
        assert lens.incident_store.get(stale.incident_id).resolved_at == now
        assert lens.incident_store.get(fresh.incident_id).status == IncidentStatus.OPEN

    def test_golden_mixed_traffic_analytics(self, clock):
        """A realistic mix of services produces consistent analytics and incidents."""
        lens = create_app(settings=make_settings(), clock=clock)
        clock.set(BASE_TIME + timedelta(minutes=30))
        traffic = [
            ("payment-service", "ERROR", "PAYMENT_TIMEOUT", "u1"),
            ("payment-service", "ERROR", "PAYMENT_TIMEOUT", "u2"),
            ("payment-service", "INFO", None, "u3"),
            ("auth-service", "CRITICAL", "TOKEN_INVALID", "u1"),
            ("auth-service", "INFO", None, None),
            ("auth-service", "INFO", None, None),
            ("auth-service", "INFO", None, None),
            ("search-service", "WARN", None, None),
        ]
        lens.ingestion.ingest_batch(
            [
                {
                    "service_name": service,
                    "severity": severity,
                    "error_code": code,
                    "user_id": user,
                    "message": f"{service} {severity}",
                    "timestamp": BASE_TIME + timedelta(minutes=i),
                }
                for i, (service, severity, code, user) in enumerate(traffic)
            ]
        )

        top = lens.analytics.top_failing_services()
        assert [(s.service_name, s.error_count) for s in top] == [
            ("payment-service", 2),
            ("auth-service", 1),
        ]

        health = {h.service_name: h.health_score for h in lens.analytics.service_health()}
        assert health == {
            "auth-service": 75.0,
            "payment-service": pytest.approx(100 / 3),
            "search-service": 100.0,
        }

        correlation = lens.analytics.error_correlation()
        assert correlation[0].error_code == "PAYMENT_TIMEOUT"
        assert correlation[0].affected_users == ["u1", "u2"]

        assert len(lens.incidents.get_critical_incidents()) == 1
        stats = lens.incidents.get_incident_stats()
        assert stats.total == 2
        assert stats.open == 2
