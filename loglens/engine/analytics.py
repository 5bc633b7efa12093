"""
Analytics Aggregation Engine.

Read-only statistics over the Log Store. Every operation is a single
``LogStore.aggregate`` call followed by ranking in Python, so the engine
holds no state and needs no locking.

Windows: health and correlation default to the last hour, trends to the last
24 hours; the remaining operations cover all stored events unless a range is
given.
"""

from datetime import datetime, timedelta
from typing import Optional

import structlog
from pydantic import ValidationError

from loglens.exceptions import InvalidInputError
from loglens.models.analytics import (
    AggregateQuery,
    ErrorCorrelation,
    FailingService,
    ServiceErrorFrequency,
    ServiceHealth,
    SeverityCount,
    TrendPoint,
)
from loglens.models.enums import Granularity, GroupField
from loglens.models.logs import TimeRange
from loglens.storage.base import LogStore
from loglens.utils.time import Clock, bucket_label, utc_now

logger = structlog.get_logger(__name__)

DEFAULT_TOP_FAILING_LIMIT = 10
DEFAULT_CORRELATION_LIMIT = 20


def health_score(total: int, errors: int) -> float:
    """Share of non-error events as a percentage; requires ``total > 0``."""
    return (1 - errors / total) * 100


class AnalyticsEngine:
    """
    Time-windowed aggregations over ingested logs.

    Attributes:
        log_store: Store to aggregate over
        clock: Source of "now" for default windows
        health_window: Default window for service_health
        correlation_window: Default window for error_correlation
        trend_window: Default window for error_trends
        default_granularity: Bucket size when error_trends gets none
        correlation_limit: Cap on error_correlation groups

    Example:
        >>> analytics = AnalyticsEngine(log_store)
        >>> for point in analytics.error_trends(granularity=Granularity.HOUR):
        ...     print(point.label, point.error_count)
    """

    def __init__(
        self,
        log_store: LogStore,
        clock: Clock = utc_now,
        health_window: timedelta = timedelta(hours=1),
        correlation_window: timedelta = timedelta(hours=1),
        trend_window: timedelta = timedelta(hours=24),
        default_granularity: Granularity = Granularity.HOUR,
        correlation_limit: int = DEFAULT_CORRELATION_LIMIT,
    ):
        self.log_store = log_store
        self.clock = clock
        self.health_window = health_window
        self.correlation_window = correlation_window
        self.trend_window = trend_window
        self.default_granularity = default_granularity
        self.correlation_limit = correlation_limit

    # ========================================================================
    # Operations
    # ========================================================================

    def error_frequency_by_service(
        self,
        time_range: Optional[TimeRange] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[ServiceErrorFrequency]:
        """Error-class event counts per service, most errors first."""
        window = self._window(time_range, start, end, default=None)
        rows = self.log_store.aggregate(
            AggregateQuery(group_by=(GroupField.SERVICE,), time_range=window, errors_only=True)
        )
        rows.sort(key=lambda r: (-r.count, r.service_name))
        return [ServiceErrorFrequency(service_name=r.service_name, error_count=r.count) for r in rows]

    def top_failing_services(
        self,
        limit: int = DEFAULT_TOP_FAILING_LIMIT,
        time_range: Optional[TimeRange] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[FailingService]:
        """
        Services with the most error-class events.

        Args:
            limit: Maximum number of services returned
            time_range: Window to aggregate over (default: all events)

        Returns:
            FailingService records, count descending then service name
        """
        if limit < 1:
            raise InvalidInputError("limit must be at least 1")
        window = self._window(time_range, start, end, default=None)
        rows = self.log_store.aggregate(
            AggregateQuery(group_by=(GroupField.SERVICE,), time_range=window, errors_only=True)
        )
        rows.sort(key=lambda r: (-r.count, r.service_name))
        return [
            FailingService(
                service_name=r.service_name,
                error_count=r.count,
                last_error=r.last_timestamp,
            )
            for r in rows[:limit]
        ]

    def error_trends(
        self,
        granularity: Optional[Granularity] = None,
        time_range: Optional[TimeRange] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[TrendPoint]:
        """
        Error-class event counts per time bucket, oldest bucket first.

        Buckets are the event timestamps truncated to the granularity in UTC.
        Only buckets containing errors are returned; gaps are not filled.
        """
        try:
            granularity = Granularity(granularity) if granularity else self.default_granularity
        except ValueError as e:
            raise InvalidInputError(f"Unsupported granularity: {granularity}") from e

        window = self._window(time_range, start, end, default=self.trend_window)
        rows = self.log_store.aggregate(
            AggregateQuery(
                group_by=(GroupField.BUCKET,),
                time_range=window,
                errors_only=True,
                granularity=granularity,
            )
        )
        rows.sort(key=lambda r: r.bucket)
        return [
            TrendPoint(
                bucket=r.bucket,
                label=bucket_label(r.bucket, granularity),
                error_count=r.count,
            )
            for r in rows
        ]

    def severity_breakdown(
        self,
        time_range: Optional[TimeRange] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[SeverityCount]:
        """Counts of all events per severity, most severe first."""
        window = self._window(time_range, start, end, default=None)
        rows = self.log_store.aggregate(
            AggregateQuery(group_by=(GroupField.SEVERITY,), time_range=window)
        )
        rows.sort(key=lambda r: r.severity.rank, reverse=True)
        return [SeverityCount(severity=r.severity, count=r.count) for r in rows]

    def service_health(
        self,
        time_range: Optional[TimeRange] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[ServiceHealth]:
        """
        Health score per service over the window, least healthy first.

        ``score = (1 - errors / total) * 100``. Services without events in
        the window do not appear.
        """
        window = self._window(time_range, start, end, default=self.health_window)
        rows = self.log_store.aggregate(
            AggregateQuery(group_by=(GroupField.SERVICE,), time_range=window)
        )

        results = [
            ServiceHealth(
                service_name=r.service_name,
                total_logs=r.count,
                error_count=r.error_count,
                health_score=health_score(r.count, r.error_count),
                last_log=r.last_timestamp,
            )
            for r in rows
            if r.count > 0
        ]
        results.sort(key=lambda h: (h.health_score, h.service_name))
        return results

    def error_correlation(
        self,
        time_range: Optional[TimeRange] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[ErrorCorrelation]:
        """
        Error signatures (service, error code) with their distinct affected users.

        Returns at most ``limit`` groups (default: the configured cap), most
        frequent first.
        """
        limit = limit if limit is not None else self.correlation_limit
        if limit < 1:
            raise InvalidInputError("limit must be at least 1")
        window = self._window(time_range, start, end, default=self.correlation_window)
        rows = self.log_store.aggregate(
            AggregateQuery(
                group_by=(GroupField.SERVICE, GroupField.ERROR_CODE),
                time_range=window,
                errors_only=True,
            )
        )
        rows.sort(key=lambda r: (-r.count, r.service_name, r.error_code or ""))
        return [
            ErrorCorrelation(
                service_name=r.service_name,
                error_code=r.error_code,
                count=r.count,
                affected_users=list(r.user_ids),
            )
            for r in rows[:limit]
        ]

    # ========================================================================
    # Helpers
    # ========================================================================

    def _window(
        self,
        time_range: Optional[TimeRange],
        start: Optional[datetime],
        end: Optional[datetime],
        default: Optional[timedelta],
    ) -> Optional[TimeRange]:
        """Resolve the query window from an explicit range, bounds, or a default."""
        if time_range is not None:
            if start is not None or end is not None:
                raise InvalidInputError("Pass either time_range or start/end, not both")
            return time_range

        if start is None and end is None:
            if default is None:
                return None
            return TimeRange.last(default, now=self.clock())

        try:
            return TimeRange(start=start, end=end)
        except ValidationError as e:
            logger.warning("invalid_time_range", start=str(start), end=str(end))
            raise InvalidInputError(f"Invalid time range: start {start} is after end {end}") from e
