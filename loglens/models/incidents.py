"""
Incident models for LogLens.

This module defines the incident aggregate built by the correlation engine,
its correlation key, query filters, and the results returned by incident
operations.
"""

from datetime import datetime
from typing import NamedTuple, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from loglens.utils.time import ensure_utc, utc_now

from .enums import CorrelationAction, IncidentStatus, Severity
from .logs import LogEvent

UNKNOWN_ERROR_CODE = "UNKNOWN"


class CorrelationKey(NamedTuple):
    """The (service, error code) pair that groups events into one incident."""

    service_name: str
    error_code: str

    @classmethod
    def for_event(cls, event: LogEvent) -> "CorrelationKey":
        return cls(event.service_name, event.error_code or UNKNOWN_ERROR_CODE)

    def __str__(self) -> str:
        return f"{self.service_name}:{self.error_code}"


class Incident(BaseModel):
    """
    A deduplicated incident built from correlated error-class log events.

    Attributes:
        incident_id: Unique identifier for this incident
        service_name: Service half of the correlation key
        error_code: Error code half of the correlation key ("UNKNOWN" if absent)
        severity: Highest severity among contributing events
        title: Human-readable title, regenerated on every merge
        description: Detailed description, regenerated on every merge
        status: Current lifecycle status
        log_ids: Ids of contributing log events, each exactly once
        error_count: Number of contributing events
        affected_services: Services touched by contributing events
        affected_users: Distinct users seen in contributing events (bounded)
        affected_users_overflow: User sightings not recorded once the cap was hit
        detected_at: When the engine created the incident
        first_occurrence: Earliest contributing event timestamp
        last_occurrence: Latest contributing event timestamp
        resolved_at: When the incident was resolved
        sla_breached: Whether the SLA threshold was exceeded
        breach_time: First observed moment of the SLA breach
        tags: Categorization tags
        assigned_to: Assigned on-call engineer
        version: Optimistic concurrency counter, maintained by the store
        updated_at: Last modification time
    """

    incident_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique identifier for this incident",
    )
    service_name: str = Field(min_length=1, description="Service where the incident occurred")
    error_code: str = Field(default=UNKNOWN_ERROR_CODE, description="Primary error code")
    severity: Severity = Field(description="Incident severity")
    title: str = Field(description="Human-readable incident title")
    description: str = Field(default="", description="Detailed description")
    status: IncidentStatus = Field(default=IncidentStatus.OPEN, description="Lifecycle status")
    log_ids: list[str] = Field(default_factory=list, description="Associated log ids")
    error_count: int = Field(default=0, ge=0, description="Number of errors in this incident")
    affected_services: list[str] = Field(default_factory=list, description="Affected services")
    affected_users: list[str] = Field(default_factory=list, description="Affected users")
    affected_users_overflow: int = Field(
        default=0, ge=0, description="User sightings not recorded after the cap"
    )
    detected_at: datetime = Field(default_factory=utc_now, description="When detected")
    first_occurrence: datetime = Field(description="When the error first appeared")
    last_occurrence: datetime = Field(description="Most recent error occurrence")
    resolved_at: Optional[datetime] = Field(default=None, description="When resolved")
    sla_breached: bool = Field(default=False, description="Whether the SLA was exceeded")
    breach_time: Optional[datetime] = Field(default=None, description="When the SLA was breached")
    tags: list[str] = Field(default_factory=list, description="Tags for categorization")
    assigned_to: Optional[str] = Field(default=None, max_length=100, description="Assignee")
    version: int = Field(default=0, ge=0, description="Store-maintained version counter")
    updated_at: datetime = Field(default_factory=utc_now, description="Last modification")

    @field_validator(
        "detected_at",
        "first_occurrence",
        "last_occurrence",
        "resolved_at",
        "breach_time",
        "updated_at",
    )
    @classmethod
    def normalize_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None

    @model_validator(mode="after")
    def validate_invariants(self) -> "Incident":
        """Enforce the aggregate's structural invariants."""
        if self.first_occurrence > self.last_occurrence:
            raise ValueError("first_occurrence must not be after last_occurrence")
        if len(set(self.log_ids)) != len(self.log_ids):
            raise ValueError("log_ids must not contain duplicates")
        if self.error_count != len(self.log_ids):
            raise ValueError("error_count must equal the number of log_ids")
        if self.sla_breached:
            if self.breach_time is None:
                raise ValueError("breach_time is required when sla_breached is set")
            if self.breach_time < self.detected_at:
                raise ValueError("breach_time must not precede detected_at")
        if (self.status == IncidentStatus.RESOLVED) != (self.resolved_at is not None):
            raise ValueError("resolved_at must be set exactly when status is RESOLVED")
        return self

    @property
    def correlation_key(self) -> CorrelationKey:
        return CorrelationKey(self.service_name, self.error_code)

    @property
    def is_active(self) -> bool:
        return self.status.is_active


class IncidentUpdateResult(BaseModel):
    """Outcome of one correlation evaluation: which branch ran and the result."""

    model_config = ConfigDict(frozen=True)

    action: CorrelationAction
    incident: Incident
    log_id: str

    @property
    def created(self) -> bool:
        return self.action == CorrelationAction.CREATED


class IncidentFilter(BaseModel):
    """Filter for Incident Store queries. Unset fields match everything."""

    model_config = ConfigDict(frozen=True)

    statuses: Optional[tuple[IncidentStatus, ...]] = None
    severity: Optional[Severity] = None
    service_name: Optional[str] = None
    sla_breached: Optional[bool] = None
    last_occurrence_before: Optional[datetime] = None

    @field_validator("last_occurrence_before")
    @classmethod
    def normalize_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None

    @property
    def oldest_first(self) -> bool:
        """SLA-breached queries are triaged oldest first."""
        return self.sla_breached is True

    def matches(self, incident: Incident) -> bool:
        if self.statuses is not None and incident.status not in self.statuses:
            return False
        if self.severity is not None and incident.severity != self.severity:
            return False
        if self.service_name is not None and incident.service_name != self.service_name:
            return False
        if self.sla_breached is not None and incident.sla_breached != self.sla_breached:
            return False
        if (
            self.last_occurrence_before is not None
            and not incident.last_occurrence < self.last_occurrence_before
        ):
            return False
        return True


class IncidentUpdate(BaseModel):
    """Operator-supplied changes to an incident."""

    status: Optional[IncidentStatus] = None
    assigned_to: Optional[str] = Field(default=None, max_length=100)
    tags: Optional[list[str]] = None

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        if v is not None and any(len(tag) > 50 for tag in v):
            raise ValueError("tags must be at most 50 characters")
        return v


class IncidentDetail(BaseModel):
    """An incident with its contributing log events, newest first."""

    incident: Incident
    logs: list[LogEvent] = Field(default_factory=list)


class IncidentStats(BaseModel):
    """Summary counts across all incidents."""

    total: int = 0
    open: int = 0
    acknowledged: int = 0
    sla_breached: int = 0
    by_severity: dict[Severity, int] = Field(default_factory=dict)
    top_services: list[tuple[str, int]] = Field(default_factory=list)
