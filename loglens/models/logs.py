"""
Log event models for LogLens.

This module defines the immutable log event record accepted at ingestion and
the filter/range types used to query the Log Store.
"""

from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from loglens.utils.time import ensure_utc, utc_now

from .enums import Environment, Severity


class LogEvent(BaseModel):
    """
    A structured application log event.

    Created once at ingestion and never mutated. ``timestamp`` is the
    authoritative, caller-supplied time of the event; ``ingested_at`` records
    when the engine accepted it.

    Attributes:
        log_id: Unique identifier for this event
        service_name: Service that emitted the event
        environment: Deployment environment of the emitter
        host: Hostname or instance id
        severity: Ordinal severity level
        message: Log message
        error_code: Application error code, if any
        stack_trace: Stack trace for errors
        metadata: Free-form additional context
        user_id: Associated user, if any
        request_id: Correlation id for request tracing
        timestamp: When the event occurred
        ingested_at: When the event was accepted by the engine
    """

    model_config = ConfigDict(frozen=True)

    log_id: str = Field(
        default_factory=lambda: str(uuid4()),
        min_length=1,
        description="Unique identifier for this event",
    )
    service_name: str = Field(
        min_length=1, max_length=100, description="Service that emitted the event"
    )
    environment: Environment = Field(
        default=Environment.PRODUCTION, description="Deployment environment"
    )
    host: Optional[str] = Field(default=None, max_length=100, description="Hostname or instance id")
    severity: Severity = Field(description="Log severity level")
    message: str = Field(min_length=1, max_length=5000, description="Log message")
    error_code: Optional[str] = Field(default=None, max_length=50, description="Error code")
    stack_trace: Optional[str] = Field(default=None, max_length=50000, description="Stack trace")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Additional metadata")
    user_id: Optional[str] = Field(default=None, max_length=100, description="Associated user")
    request_id: Optional[str] = Field(
        default=None, max_length=100, description="Correlation id for request tracing"
    )
    timestamp: datetime = Field(description="When the event occurred")
    ingested_at: datetime = Field(
        default_factory=utc_now, description="When the event was ingested"
    )

    @field_validator("service_name")
    @classmethod
    def validate_service_name(cls, v: str) -> str:
        """Reject whitespace-only service names."""
        v = v.strip()
        if not v:
            raise ValueError("service_name must not be blank")
        return v

    @field_validator("error_code")
    @classmethod
    def normalize_error_code(cls, v: Optional[str]) -> Optional[str]:
        """Treat blank error codes as absent."""
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator("timestamp", "ingested_at")
    @classmethod
    def normalize_timezone(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class TimeRange(BaseModel):
    """Inclusive time window ``[start, end]``; either side may be open."""

    model_config = ConfigDict(frozen=True)

    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @field_validator("start", "end")
    @classmethod
    def normalize_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None

    @model_validator(mode="after")
    def validate_ordering(self) -> "TimeRange":
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValueError("start must not be after end")
        return self

    @classmethod
    def last(cls, window: timedelta, now: Optional[datetime] = None) -> "TimeRange":
        """Window ending at ``now`` and spanning ``window``."""
        end = ensure_utc(now) if now is not None else utc_now()
        return cls(start=end - window, end=end)

    def contains(self, value: datetime) -> bool:
        if self.start is not None and value < self.start:
            return False
        if self.end is not None and value > self.end:
            return False
        return True


class LogFilter(BaseModel):
    """Filter for Log Store queries. Unset fields match everything."""

    model_config = ConfigDict(frozen=True)

    service_name: Optional[str] = None
    severity: Optional[Severity] = None
    error_code: Optional[str] = None
    request_id: Optional[str] = None
    log_ids: Optional[tuple[str, ...]] = None
    time_range: Optional[TimeRange] = None

    @property
    def is_trace(self) -> bool:
        """Request-id tracing queries read in chronological order."""
        return self.request_id is not None

    def matches(self, event: LogEvent) -> bool:
        if self.service_name is not None and event.service_name != self.service_name:
            return False
        if self.severity is not None and event.severity != self.severity:
            return False
        if self.error_code is not None and event.error_code != self.error_code:
            return False
        if self.request_id is not None and event.request_id != self.request_id:
            return False
        if self.log_ids is not None and event.log_id not in self.log_ids:
            return False
        if self.time_range is not None and not self.time_range.contains(event.timestamp):
            return False
        return True
