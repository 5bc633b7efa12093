"""
Abstract storage interfaces for LogLens.

The engines depend only on these two contracts, never on a concrete backend:

- LogStore: durable append-only log of events with filtered range queries
  and the grouping access the analytics engine needs.
- IncidentStore: keyed record of incident state with an atomic conditional
  upsert, so that at most one active incident exists per correlation key
  and concurrent merges are never lost.

Implementations must be thread-safe and must surface timeouts and backend
failures as StoreUnavailableError.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from loglens.models.analytics import AggregateQuery, AggregateRow
from loglens.models.enums import IncidentStatus, SortOrder
from loglens.models.incidents import CorrelationKey, Incident, IncidentFilter
from loglens.models.logs import LogEvent, LogFilter


class LogStore(ABC):
    """
    Append-only store of log events.

    Retention is the store's own concern; the engines never delete events.
    """

    @abstractmethod
    def append(self, event: LogEvent) -> str:
        """
        Append a log event.

        Args:
            event: Event to store

        Returns:
            The stored event's log_id

        Raises:
            DuplicateLogError: If an event with the same log_id exists
            StoreUnavailableError: If the store times out or fails
        """
        pass

    @abstractmethod
    def query(
        self,
        log_filter: Optional[LogFilter] = None,
        limit: Optional[int] = 100,
        offset: int = 0,
        order: Optional[SortOrder] = None,
    ) -> list[LogEvent]:
        """
        Read events matching a filter.

        Results are ordered by timestamp descending, except request-id
        tracing queries which default to ascending. ``order`` overrides the
        default.

        Args:
            log_filter: Filter to apply (None matches everything)
            limit: Maximum number of events (None for no limit)
            offset: Number of matching events to skip

        Raises:
            StoreUnavailableError: If the store times out or fails
        """
        pass

    @abstractmethod
    def aggregate(self, query: AggregateQuery) -> list[AggregateRow]:
        """
        Group events and compute per-group statistics.

        Each row carries the event count, the error-class count, the latest
        event timestamp and the distinct non-null user ids of its group.
        Rows are returned in no particular order.

        Raises:
            StoreUnavailableError: If the store times out or fails
        """
        pass


class IncidentStore(ABC):
    """
    Keyed store of incident aggregates.

    The store owns ``Incident.version``: every successful write stores the
    incident with ``version = expected_version + 1`` (or 1 on creation).
    """

    @abstractmethod
    def find_open_by_key(self, key: CorrelationKey) -> Optional[Incident]:
        """
        Return the active (OPEN or ACKNOWLEDGED) incident for a key, if any.

        Raises:
            StoreUnavailableError: If the store times out or fails
        """
        pass

    @abstractmethod
    def get(self, incident_id: str) -> Optional[Incident]:
        """Return the incident with this id, or None."""
        pass

    @abstractmethod
    def find_by_log_id(self, log_id: str) -> Optional[Incident]:
        """
        Return the incident that holds a contributing log id, if any.

        Raises:
            StoreUnavailableError: If the store times out or fails
        """
        pass

    @abstractmethod
    def upsert(self, incident: Incident, expected_version: Optional[int] = None) -> Incident:
        """
        Atomically create or replace an incident.

        With ``expected_version=None`` this is create-if-absent: it fails if
        the id exists or if another active incident holds the same
        correlation key. Otherwise it is a compare-and-swap: it fails unless
        the stored incident has exactly ``expected_version`` and is still
        active.

        Returns:
            The incident as stored, with its new version

        Raises:
            IncidentConflictError: If the conditional check fails
            StoreUnavailableError: If the store times out or fails
        """
        pass

    @abstractmethod
    def find(
        self,
        incident_filter: Optional[IncidentFilter] = None,
        limit: Optional[int] = 20,
        offset: int = 0,
    ) -> list[Incident]:
        """
        Read incidents matching a filter.

        Ordered by detected_at descending, except SLA-breached queries which
        are ordered ascending (oldest breach first).

        Raises:
            StoreUnavailableError: If the store times out or fails
        """
        pass

    @abstractmethod
    def update_status(
        self,
        incident_id: str,
        new_status: IncidentStatus,
        fields: Optional[dict[str, Any]] = None,
        expected_version: Optional[int] = None,
    ) -> Optional[Incident]:
        """
        Set an incident's status and any additional fields.

        Args:
            incident_id: Incident to update
            new_status: Status to store
            fields: Other Incident fields to change
            expected_version: If given, fail unless the stored version matches

        Returns:
            The updated incident, or None if no incident has this id

        Raises:
            IncidentConflictError: If ``expected_version`` does not match
            StoreUnavailableError: If the store times out or fails
        """
        pass
