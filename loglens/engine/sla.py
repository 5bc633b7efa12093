"""
SLA Monitor: incident breach detection.

An incident breaches its SLA once it has stayed unresolved for longer than
the threshold for its severity, measured from its first occurrence. The first
moment a breach is observed is recorded as the breach time and never moves
afterwards, however often the check is repeated.

The check runs on every correlation create/merge and on every scheduler
sweep, because an incident can cross its threshold from elapsed time alone.
"""

from datetime import datetime, timedelta
from typing import Mapping, NamedTuple, Optional

import structlog

from loglens.models.enums import Severity
from loglens.models.incidents import Incident
from loglens.utils.time import ensure_utc

logger = structlog.get_logger(__name__)

DEFAULT_SLA_THRESHOLD_MINUTES = 15.0


class SLAStatus(NamedTuple):
    breached: bool
    breach_time: Optional[datetime]


def check_breach(
    first_occurrence: datetime,
    threshold_minutes: float,
    now: datetime,
    previous_breach_time: Optional[datetime] = None,
) -> SLAStatus:
    """
    Evaluate whether an incident has breached its SLA.

    Args:
        first_occurrence: Timestamp of the incident's earliest event
        threshold_minutes: Allowed unresolved time
        now: Evaluation time
        previous_breach_time: Breach time recorded by an earlier check, if any

    Returns:
        SLAStatus; once a breach time exists it is returned unchanged
    """
    if previous_breach_time is not None:
        return SLAStatus(True, previous_breach_time)

    elapsed = ensure_utc(now) - ensure_utc(first_occurrence)
    if elapsed > timedelta(minutes=threshold_minutes):
        return SLAStatus(True, ensure_utc(now))
    return SLAStatus(False, None)


class SLAMonitor:
    """
    Applies severity-dependent SLA thresholds to incidents.

    Attributes:
        default_threshold_minutes: Threshold for severities without an override
        thresholds: Per-severity thresholds in minutes

    Example:
        >>> monitor = SLAMonitor(thresholds={Severity.CRITICAL: 5, Severity.ERROR: 15})
        >>> incident = monitor.apply(incident, now=utc_now())
    """

    def __init__(
        self,
        default_threshold_minutes: float = DEFAULT_SLA_THRESHOLD_MINUTES,
        thresholds: Optional[Mapping[Severity, float]] = None,
    ):
        if default_threshold_minutes <= 0:
            raise ValueError("SLA threshold must be positive")
        self.default_threshold_minutes = default_threshold_minutes
        self.thresholds = dict(thresholds or {})

    def threshold_for(self, severity: Severity) -> float:
        return self.thresholds.get(severity, self.default_threshold_minutes)

    def evaluate(self, incident: Incident, now: datetime) -> SLAStatus:
        return check_breach(
            first_occurrence=incident.first_occurrence,
            threshold_minutes=self.threshold_for(incident.severity),
            now=now,
            previous_breach_time=incident.breach_time if incident.sla_breached else None,
        )

    def apply(self, incident: Incident, now: datetime) -> Incident:
        """
        Return ``incident`` with its SLA fields brought up to date.

        The input is not modified. An incident already marked breached is
        returned unchanged.
        """
        status = self.evaluate(incident, now)
        if status.breached == incident.sla_breached:
            return incident

        logger.warning(
            "sla_breached",
            incident_id=incident.incident_id,
            service_name=incident.service_name,
            error_code=incident.error_code,
            incident_severity=incident.severity.value,
            threshold_minutes=self.threshold_for(incident.severity),
        )
        return incident.model_copy(
            update={"sla_breached": True, "breach_time": status.breach_time}
        )
