"""
Ingestion service: accepts log events and feeds the Correlation Engine.

This module coordinates the ingestion workflow:
1. Validation: payloads become immutable LogEvent records; anything
   malformed is rejected before a single write
2. Storage: each event is appended to the Log Store
3. Correlation: error-class events are evaluated into incidents
4. Queries: log lookups by service, severity, request id and recency

Batches are validated as a whole first and then applied in event-timestamp
order, so an invalid member never leaves the batch half applied.

Resubmitting an event that is already stored is safe: its correlation is
re-run and comes back unchanged if an incident already holds it. This lets
a caller retry ingestion or a whole batch after a transient store failure.
"""

from datetime import datetime, timedelta
from typing import Any, Iterable, Optional, Union

import structlog
from pydantic import BaseModel, ValidationError

from loglens.engine.correlation import CorrelationEngine
from loglens.exceptions import DuplicateLogError, InvalidInputError
from loglens.models.analytics import AggregateQuery, LogCount
from loglens.models.enums import GroupField, Severity, SortOrder
from loglens.models.incidents import IncidentUpdateResult
from loglens.models.logs import LogEvent, LogFilter, TimeRange
from loglens.storage.base import LogStore
from loglens.utils.time import Clock, ensure_utc, utc_now

logger = structlog.get_logger(__name__)

LogPayload = Union[LogEvent, dict[str, Any]]

DEFAULT_QUERY_LIMIT = 100
DEFAULT_RECENT_LIMIT = 50


class IngestResult(BaseModel):
    """Outcome of ingesting one event."""

    log_id: str
    incident: Optional[IncidentUpdateResult] = None


class IngestionService:
    """
    Front door for log events.

    Attributes:
        log_store: Append-only event store
        correlation_engine: Turns error-class events into incidents
        clock: Source of "now" for ingestion timestamps
        max_batch_size: Largest accepted batch
        max_clock_skew: How far in the future an event timestamp may lie
    """

    def __init__(
        self,
        log_store: LogStore,
        correlation_engine: CorrelationEngine,
        clock: Clock = utc_now,
        max_batch_size: int = 1000,
        max_clock_skew: timedelta = timedelta(minutes=5),
    ):
        self.log_store = log_store
        self.correlation_engine = correlation_engine
        self.clock = clock
        self.max_batch_size = max_batch_size
        self.max_clock_skew = max_clock_skew

    def ingest(self, payload: LogPayload) -> IngestResult:
        """
        Validate, store and correlate a single event.

        Args:
            payload: A LogEvent or a mapping of LogEvent fields. A missing
                timestamp defaults to now.

        Returns:
            IngestResult with the stored log id and the incident outcome
            (None for events that are not error-class)

        Raises:
            InvalidInputError: If the payload is malformed
            DuplicateLogError: If the log id is stored with different content
            IncidentConflictError: If correlation stayed contended past retries
            StoreUnavailableError: If a store fails
        """
        now = self.clock()
        event = self._validate(payload, now)
        return self._store_and_correlate(event)

    def ingest_batch(self, payloads: Iterable[LogPayload]) -> list[IngestResult]:
        """
        Validate a batch as a whole, then store and correlate it.

        Members are applied in event-timestamp order; equal timestamps keep
        their submission order. Results come back in that applied order.

        Raises:
            InvalidInputError: If the batch is empty, too large, has a
                malformed member or repeats a log id
            DuplicateLogError: If a member's log id is stored with different content
        """
        payloads = list(payloads)
        if not payloads:
            raise InvalidInputError("Batch must contain at least one log")
        if len(payloads) > self.max_batch_size:
            raise InvalidInputError(
                f"Batch of {len(payloads)} exceeds the maximum of {self.max_batch_size}"
            )

        now = self.clock()
        events = []
        for index, payload in enumerate(payloads):
            try:
                events.append(self._validate(payload, now))
            except InvalidInputError as e:
                raise InvalidInputError(f"Batch member {index}: {e}") from e

        log_ids = [event.log_id for event in events]
        if len(set(log_ids)) != len(log_ids):
            raise InvalidInputError("Batch contains duplicate log ids")
        stored = {
            e.log_id: e
            for e in self.log_store.query(LogFilter(log_ids=tuple(log_ids)), limit=None)
        }
        for event in events:
            if event.log_id in stored and not _same_record(stored[event.log_id], event):
                raise DuplicateLogError(event.log_id)

        ordered = sorted(events, key=lambda e: e.timestamp)
        results = [self._store_and_correlate(event) for event in ordered]

        logger.info(
            "batch_ingested",
            count=len(results),
            incidents_touched=sum(1 for r in results if r.incident is not None),
        )
        return results

    # ========================================================================
    # Queries
    # ========================================================================

    def get_logs_by_service(
        self,
        service_name: str,
        severity: Optional[Severity] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = DEFAULT_QUERY_LIMIT,
        offset: int = 0,
    ) -> list[LogEvent]:
        """Events from one service, newest first."""
        log_filter = LogFilter(
            service_name=service_name,
            severity=severity,
            time_range=self._time_range(start, end),
        )
        return self.log_store.query(log_filter, limit=limit, offset=offset)

    def get_logs_by_severity(
        self,
        severity: Severity,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = DEFAULT_QUERY_LIMIT,
        offset: int = 0,
    ) -> list[LogEvent]:
        """Events of one severity, newest first."""
        log_filter = LogFilter(severity=severity, time_range=self._time_range(start, end))
        return self.log_store.query(log_filter, limit=limit, offset=offset)

    def trace_request(self, request_id: str) -> list[LogEvent]:
        """All events carrying a request id, in chronological order."""
        if not request_id:
            raise InvalidInputError("request_id is required")
        return self.log_store.query(
            LogFilter(request_id=request_id), limit=None, order=SortOrder.ASC
        )

    def get_recent_logs(
        self, limit: int = DEFAULT_RECENT_LIMIT, severity: Optional[Severity] = None
    ) -> list[LogEvent]:
        return self.log_store.query(LogFilter(severity=severity), limit=limit)

    def get_log_counts(self) -> list[LogCount]:
        """Event counts per (service, severity), largest first."""
        rows = self.log_store.aggregate(
            AggregateQuery(group_by=(GroupField.SERVICE, GroupField.SEVERITY))
        )
        rows.sort(key=lambda r: (-r.count, r.service_name, -r.severity.rank))
        return [
            LogCount(service_name=r.service_name, severity=r.severity, count=r.count)
            for r in rows
        ]

    # ========================================================================
    # Helpers
    # ========================================================================

    def _validate(self, payload: LogPayload, now: datetime) -> LogEvent:
        """Build the immutable event for a payload and check its timestamp."""
        if isinstance(payload, LogEvent):
            event = payload.model_copy(update={"ingested_at": now})
        elif isinstance(payload, dict):
            data = dict(payload)
            if data.get("timestamp") is None:
                data["timestamp"] = now
            data["ingested_at"] = now
            try:
                event = LogEvent.model_validate(data)
            except ValidationError as e:
                raise InvalidInputError(f"Invalid log event: {e}") from e
        else:
            raise InvalidInputError(
                f"Log payload must be a LogEvent or a mapping, got {type(payload).__name__}"
            )

        if ensure_utc(event.timestamp) > now + self.max_clock_skew:
            raise InvalidInputError(
                f"Log timestamp {event.timestamp.isoformat()} is too far in the future"
            )
        return event

    def _store_and_correlate(self, event: LogEvent) -> IngestResult:
        replay = False
        try:
            log_id = self.log_store.append(event)
        except DuplicateLogError:
            event = self._stored_copy(event)
            log_id = event.log_id
            replay = True
        logger.debug(
            "log_ingested",
            log_id=log_id,
            service_name=event.service_name,
            log_severity=event.severity.value,
            replay=replay,
        )
        incident = self.correlation_engine.evaluate(event, replay=replay)
        return IngestResult(log_id=log_id, incident=incident)

    def _stored_copy(self, event: LogEvent) -> LogEvent:
        """The stored record for a resubmitted event; a different record under the same id is rejected."""
        stored = self.log_store.query(LogFilter(log_ids=(event.log_id,)), limit=1)
        if not stored or not _same_record(stored[0], event):
            raise DuplicateLogError(event.log_id)
        return stored[0]

    @staticmethod
    def _time_range(start: Optional[datetime], end: Optional[datetime]) -> Optional[TimeRange]:
        if start is None and end is None:
            return None
        try:
            return TimeRange(start=start, end=end)
        except ValidationError as e:
            raise InvalidInputError(f"Invalid time range: start {start} is after end {end}") from e


def _same_record(stored: LogEvent, event: LogEvent) -> bool:
    """Whether a resubmitted event carries the stored record's content."""
    exclude = {"timestamp", "ingested_at"}
    return stored.model_dump(exclude=exclude) == event.model_dump(exclude=exclude)
