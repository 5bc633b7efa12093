"""
Pydantic v2 data models for LogLens.

Model Organization:
    - enums: Severity model and other enumeration types
    - logs: Immutable log events and Log Store query types
    - incidents: Incident aggregate, correlation key and query types
    - analytics: Aggregation contract and analytics result records

Usage:
    >>> from loglens.models import LogEvent, Severity
    >>> event = LogEvent(
    ...     service_name="payment-service",
    ...     severity=Severity.ERROR,
    ...     message="Gateway timed out",
    ...     error_code="PAYMENT_TIMEOUT",
    ...     timestamp=datetime.now(timezone.utc),
    ... )
"""

from .enums import (
    ACTIVE_STATUSES,
    ERROR_CLASS_SEVERITIES,
    CorrelationAction,
    Environment,
    Granularity,
    GroupField,
    IncidentStatus,
    Severity,
    SortOrder,
    max_severity,
)
from .logs import LogEvent, LogFilter, TimeRange
from .incidents import (
    UNKNOWN_ERROR_CODE,
    CorrelationKey,
    Incident,
    IncidentDetail,
    IncidentFilter,
    IncidentStats,
    IncidentUpdate,
    IncidentUpdateResult,
)
from .analytics import (
    AggregateQuery,
    AggregateRow,
    ErrorCorrelation,
    FailingService,
    LogCount,
    ServiceErrorFrequency,
    ServiceHealth,
    SeverityCount,
    TrendPoint,
)

__all__ = [
    # Enumerations
    "ACTIVE_STATUSES",
    "ERROR_CLASS_SEVERITIES",
    "CorrelationAction",
    "Environment",
    "Granularity",
    "GroupField",
    "IncidentStatus",
    "Severity",
    "SortOrder",
    "max_severity",
    # Log models
    "LogEvent",
    "LogFilter",
    "TimeRange",
    # Incident models
    "UNKNOWN_ERROR_CODE",
    "CorrelationKey",
    "Incident",
    "IncidentDetail",
    "IncidentFilter",
    "IncidentStats",
    "IncidentUpdate",
    "IncidentUpdateResult",
    # Analytics models
    "AggregateQuery",
    "AggregateRow",
    "ErrorCorrelation",
    "FailingService",
    "LogCount",
    "ServiceErrorFrequency",
    "ServiceHealth",
    "SeverityCount",
    "TrendPoint",
]
