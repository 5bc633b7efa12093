"""
Analytics models for LogLens.

Defines the aggregation request/row contract between the analytics engine and
the Log Store, and the result records returned to analytics callers.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .enums import Granularity, GroupField, Severity
from .logs import TimeRange


class AggregateQuery(BaseModel):
    """
    Grouping request executed by the Log Store.

    Attributes:
        group_by: Dimensions to group by (may be empty for a single total)
        time_range: Restrict to events whose timestamp falls in this window
        errors_only: Only count error-class events
        granularity: Bucket size, used when grouping by GroupField.BUCKET
    """

    model_config = ConfigDict(frozen=True)

    group_by: tuple[GroupField, ...] = ()
    time_range: Optional[TimeRange] = None
    errors_only: bool = False
    granularity: Granularity = Granularity.HOUR

    @field_validator("group_by")
    @classmethod
    def validate_unique_fields(cls, v: tuple[GroupField, ...]) -> tuple[GroupField, ...]:
        if len(set(v)) != len(v):
            raise ValueError("group_by fields must be unique")
        return v


class AggregateRow(BaseModel):
    """
    One group produced by a Log Store aggregation.

    Dimension fields not in the query's ``group_by`` are None.
    """

    service_name: Optional[str] = None
    severity: Optional[Severity] = None
    error_code: Optional[str] = None
    bucket: Optional[datetime] = None
    count: int = Field(ge=0)
    error_count: int = Field(default=0, ge=0)
    last_timestamp: Optional[datetime] = None
    user_ids: list[str] = Field(default_factory=list)


class ServiceErrorFrequency(BaseModel):
    service_name: str
    error_count: int


class FailingService(BaseModel):
    service_name: str
    error_count: int
    last_error: datetime


class TrendPoint(BaseModel):
    bucket: datetime
    label: str
    error_count: int


class SeverityCount(BaseModel):
    severity: Severity
    count: int


class ServiceHealth(BaseModel):
    """Health of one service's log stream over a window (0-100, higher is healthier)."""

    service_name: str
    total_logs: int = Field(gt=0)
    error_count: int = Field(ge=0)
    health_score: float = Field(ge=0.0, le=100.0)
    last_log: Optional[datetime] = None


class ErrorCorrelation(BaseModel):
    """An error signature and how widely it spreads across users."""

    service_name: str
    error_code: Optional[str] = None
    count: int
    affected_users: list[str] = Field(default_factory=list)

    @property
    def user_count(self) -> int:
        return len(self.affected_users)


class LogCount(BaseModel):
    service_name: str
    severity: Severity
    count: int
