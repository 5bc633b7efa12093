"""
Thread-safe in-memory implementations of the LogLens stores.

Suitable for tests, development and single-process deployments. Every
operation runs under a store lock taken with a timeout; a lock that cannot be
acquired in time surfaces as StoreUnavailableError rather than blocking the
caller indefinitely.
"""

import threading
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog

from loglens.exceptions import DuplicateLogError, IncidentConflictError, StoreUnavailableError
from loglens.models.analytics import AggregateQuery, AggregateRow
from loglens.models.enums import GroupField, IncidentStatus, SortOrder
from loglens.models.incidents import CorrelationKey, Incident, IncidentFilter
from loglens.models.logs import LogEvent, LogFilter
from loglens.utils.time import truncate

from .base import IncidentStore, LogStore

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


class _LockedStore:
    """Shared lock handling for the in-memory stores."""

    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS):
        self.timeout_seconds = timeout_seconds
        self._lock = threading.RLock()

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.timeout_seconds):
            logger.error(
                "store_lock_timeout",
                store=type(self).__name__,
                timeout_seconds=self.timeout_seconds,
            )
            raise StoreUnavailableError(
                f"{type(self).__name__} did not respond within {self.timeout_seconds}s"
            )
        try:
            yield
        finally:
            self._lock.release()


def _slice(items: list, limit: Optional[int], offset: int) -> list:
    if limit is None:
        return items[offset:]
    return items[offset : offset + limit]


class InMemoryLogStore(_LockedStore, LogStore):
    """Log Store keeping every event in a dict keyed by log_id."""

    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS):
        super().__init__(timeout_seconds)
        self._events: dict[str, LogEvent] = {}

    def append(self, event: LogEvent) -> str:
        with self._locked():
            if event.log_id in self._events:
                raise DuplicateLogError(event.log_id)
            self._events[event.log_id] = event
        logger.debug("log_appended", log_id=event.log_id, service_name=event.service_name)
        return event.log_id

    def query(
        self,
        log_filter: Optional[LogFilter] = None,
        limit: Optional[int] = 100,
        offset: int = 0,
        order: Optional[SortOrder] = None,
    ) -> list[LogEvent]:
        log_filter = log_filter or LogFilter()
        with self._locked():
            matches = [e for e in self._events.values() if log_filter.matches(e)]

        if order is None:
            order = SortOrder.ASC if log_filter.is_trace else SortOrder.DESC
        matches.sort(
            key=lambda e: (e.timestamp, e.ingested_at, e.log_id),
            reverse=order == SortOrder.DESC,
        )
        return _slice(matches, limit, offset)

    def aggregate(self, query: AggregateQuery) -> list[AggregateRow]:
        with self._locked():
            events = list(self._events.values())

        groups: dict[tuple, dict[str, Any]] = {}
        for event in events:
            if query.time_range is not None and not query.time_range.contains(event.timestamp):
                continue
            if query.errors_only and not event.severity.is_error_class:
                continue

            dimensions = {
                GroupField.SERVICE: event.service_name,
                GroupField.SEVERITY: event.severity,
                GroupField.ERROR_CODE: event.error_code,
                GroupField.BUCKET: truncate(event.timestamp, query.granularity),
            }
            key = tuple(dimensions[field] for field in query.group_by)
            group = groups.get(key)
            if group is None:
                group = groups[key] = {
                    "dimensions": {field: dimensions[field] for field in query.group_by},
                    "count": 0,
                    "error_count": 0,
                    "last_timestamp": None,
                    "user_ids": set(),
                }
            group["count"] += 1
            if event.severity.is_error_class:
                group["error_count"] += 1
            if group["last_timestamp"] is None or event.timestamp > group["last_timestamp"]:
                group["last_timestamp"] = event.timestamp
            if event.user_id is not None:
                group["user_ids"].add(event.user_id)

        rows = []
        for group in groups.values():
            dims = group["dimensions"]
            rows.append(
                AggregateRow(
                    service_name=dims.get(GroupField.SERVICE),
                    severity=dims.get(GroupField.SEVERITY),
                    error_code=dims.get(GroupField.ERROR_CODE),
                    bucket=dims.get(GroupField.BUCKET),
                    count=group["count"],
                    error_count=group["error_count"],
                    last_timestamp=group["last_timestamp"],
                    user_ids=sorted(group["user_ids"]),
                )
            )
        return rows

    def __len__(self) -> int:
        with self._locked():
            return len(self._events)


class InMemoryIncidentStore(_LockedStore, IncidentStore):
    """
    Incident Store with an index of active incidents per correlation key.

    The index makes find_open_by_key O(1) and is what upsert checks for the
    at-most-one-active-incident-per-key guarantee.
    """

    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS):
        super().__init__(timeout_seconds)
        self._incidents: dict[str, Incident] = {}
        self._active_by_key: dict[CorrelationKey, str] = {}

    def find_open_by_key(self, key: CorrelationKey) -> Optional[Incident]:
        with self._locked():
            incident_id = self._active_by_key.get(key)
            if incident_id is None:
                return None
            return self._incidents[incident_id].model_copy(deep=True)

    def get(self, incident_id: str) -> Optional[Incident]:
        with self._locked():
            incident = self._incidents.get(incident_id)
            return incident.model_copy(deep=True) if incident is not None else None

    def find_by_log_id(self, log_id: str) -> Optional[Incident]:
        with self._locked():
            for incident in self._incidents.values():
                if log_id in incident.log_ids:
                    return incident.model_copy(deep=True)
        return None

    def upsert(self, incident: Incident, expected_version: Optional[int] = None) -> Incident:
        key = incident.correlation_key
        with self._locked():
            current = self._incidents.get(incident.incident_id)
            if expected_version is None:
                if current is not None:
                    raise IncidentConflictError(f"Incident {incident.incident_id} already exists")
                if incident.is_active and key in self._active_by_key:
                    raise IncidentConflictError(f"An active incident already exists for {key}")
                new_version = 1
            else:
                if current is None or current.version != expected_version:
                    raise IncidentConflictError(
                        f"Incident {incident.incident_id} changed since version {expected_version}"
                    )
                if not current.is_active:
                    raise IncidentConflictError(f"Incident {incident.incident_id} is resolved")
                if current.correlation_key != key:
                    raise IncidentConflictError("Correlation key of an incident cannot change")
                new_version = expected_version + 1

            stored = incident.model_copy(update={"version": new_version}, deep=True)
            self._store(stored)
            return stored.model_copy(deep=True)

    def find(
        self,
        incident_filter: Optional[IncidentFilter] = None,
        limit: Optional[int] = 20,
        offset: int = 0,
    ) -> list[Incident]:
        incident_filter = incident_filter or IncidentFilter()
        with self._locked():
            matches = [
                i.model_copy(deep=True)
                for i in self._incidents.values()
                if incident_filter.matches(i)
            ]
        matches.sort(
            key=lambda i: (i.detected_at, i.incident_id),
            reverse=not incident_filter.oldest_first,
        )
        return _slice(matches, limit, offset)

    def update_status(
        self,
        incident_id: str,
        new_status: IncidentStatus,
        fields: Optional[dict[str, Any]] = None,
        expected_version: Optional[int] = None,
    ) -> Optional[Incident]:
        with self._locked():
            current = self._incidents.get(incident_id)
            if current is None:
                return None
            if expected_version is not None and current.version != expected_version:
                raise IncidentConflictError(
                    f"Incident {incident_id} changed since version {expected_version}"
                )
            data = current.model_dump()
            data.update(fields or {})
            data["status"] = new_status
            data["version"] = current.version + 1
            updated = Incident.model_validate(data)
            self._store(updated)
            return updated.model_copy(deep=True)

    def _store(self, incident: Incident) -> None:
        """Write an incident and keep the active-key index consistent. Caller holds the lock."""
        key = incident.correlation_key
        self._incidents[incident.incident_id] = incident
        if incident.is_active:
            self._active_by_key[key] = incident.incident_id
        elif self._active_by_key.get(key) == incident.incident_id:
            del self._active_by_key[key]
