"""
DuckDB storage implementation for LogLens.

Provides a local, columnar backend for both stores. DuckDB's grouping and
date_trunc support lets the Log Store push analytics aggregations down into
SQL instead of scanning events in Python.

Key features:
- Thread-safe access with a per-thread cursor on one shared database
- Automatic schema creation
- Serialized writes so the incident conditional upsert is atomic
- Driver failures re-raised as StoreUnavailableError with structured logging
"""

import json
import threading
from contextlib import contextmanager
from datetime import datetime, time
from pathlib import Path
from typing import Any, Iterator, Optional

import duckdb
import structlog

from loglens.exceptions import (
    DuplicateLogError,
    IncidentConflictError,
    LogLensError,
    StoreUnavailableError,
)
from loglens.models.analytics import AggregateQuery, AggregateRow
from loglens.models.enums import GroupField, IncidentStatus, Severity, SortOrder
from loglens.models.incidents import CorrelationKey, Incident, IncidentFilter
from loglens.models.logs import LogEvent, LogFilter
from loglens.utils.time import ensure_utc

from .base import IncidentStore, LogStore

logger = structlog.get_logger(__name__)

_ERROR_RANK = Severity.ERROR.rank

_LOG_COLUMNS = (
    "log_id, service_name, environment, host, severity, message, error_code, "
    "stack_trace, metadata, user_id, request_id, timestamp, ingested_at"
)

_INCIDENT_COLUMNS = (
    "incident_id, service_name, error_code, severity, title, description, status, "
    "log_ids, error_count, affected_services, affected_users, affected_users_overflow, "
    "detected_at, first_occurrence, last_occurrence, resolved_at, sla_breached, "
    "breach_time, tags, assigned_to, version, updated_at"
)

_MUTABLE_INCIDENT_COLUMNS = (
    "severity",
    "title",
    "description",
    "status",
    "log_ids",
    "error_count",
    "affected_services",
    "affected_users",
    "affected_users_overflow",
    "first_occurrence",
    "last_occurrence",
    "resolved_at",
    "sla_breached",
    "breach_time",
    "tags",
    "assigned_to",
    "version",
    "updated_at",
)

_GROUP_EXPRESSIONS = {
    GroupField.SERVICE: "service_name",
    GroupField.SEVERITY: "severity",
    GroupField.ERROR_CODE: "error_code",
}


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    """DuckDB TIMESTAMP columns hold naive UTC."""
    if value is None:
        return None
    return ensure_utc(value).replace(tzinfo=None)


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if not isinstance(value, datetime):
        # date_trunc may hand back a DATE for day buckets
        value = datetime.combine(value, time.min)
    return ensure_utc(value)


class DuckDBDatabase:
    """
    Shared DuckDB connection with thread-local cursors.

    Both stores can share one database so a single file holds logs and
    incidents. Works with ":memory:" as well as file paths.

    Attributes:
        db_path: Path to the DuckDB database file, or ":memory:"
        write_lock: Serializes writes across threads
        lock_timeout_seconds: Wait for the write lock before giving up
    """

    def __init__(self, db_path: str = ":memory:", lock_timeout_seconds: float = 5.0):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.lock_timeout_seconds = lock_timeout_seconds
        self.write_lock = threading.Lock()
        self._local = threading.local()

        try:
            self._connection = duckdb.connect(db_path)
        except duckdb.Error as e:
            logger.error("duckdb_connection_failed", db_path=db_path, error=str(e))
            raise StoreUnavailableError(f"Failed to connect to DuckDB: {e}") from e

        self._initialize_schema()
        logger.info("duckdb_database_initialized", db_path=db_path)

    def cursor(self) -> "duckdb.DuckDBPyConnection":
        """Per-thread cursor; DuckDB connections are not safe to share across threads."""
        if not hasattr(self._local, "cursor"):
            self._local.cursor = self._connection.cursor()
            logger.debug("duckdb_cursor_created", thread_id=threading.get_ident())
        return self._local.cursor

    @contextmanager
    def writing(self) -> Iterator["duckdb.DuckDBPyConnection"]:
        """Hold the write lock and run the block in a transaction."""
        if not self.write_lock.acquire(timeout=self.lock_timeout_seconds):
            raise StoreUnavailableError(
                f"DuckDB write lock not acquired within {self.lock_timeout_seconds}s"
            )
        try:
            conn = self.cursor()
            conn.execute("BEGIN TRANSACTION")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            self.write_lock.release()

    def close(self) -> None:
        self._connection.close()

    def _initialize_schema(self) -> None:
        """Create tables and indexes. Idempotent."""
        try:
            conn = self.cursor()
            conn.execute("""
                CREATE TABLE IF NOT EXISTS logs (
                    log_id VARCHAR PRIMARY KEY,
                    service_name VARCHAR NOT NULL,
                    environment VARCHAR NOT NULL,
                    host VARCHAR,
                    severity VARCHAR NOT NULL,
                    severity_rank INTEGER NOT NULL,
                    message VARCHAR NOT NULL,
                    error_code VARCHAR,
                    stack_trace VARCHAR,
                    metadata JSON,
                    user_id VARCHAR,
                    request_id VARCHAR,
                    timestamp TIMESTAMP NOT NULL,
                    ingested_at TIMESTAMP NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_logs_service_severity_ts
                ON logs(service_name, severity, timestamp)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_logs_request_id
                ON logs(request_id)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS incidents (
                    incident_id VARCHAR PRIMARY KEY,
                    service_name VARCHAR NOT NULL,
                    error_code VARCHAR NOT NULL,
                    severity VARCHAR NOT NULL,
                    title VARCHAR NOT NULL,
                    description VARCHAR,
                    status VARCHAR NOT NULL,
                    log_ids JSON NOT NULL,
                    error_count INTEGER NOT NULL,
                    affected_services JSON,
                    affected_users JSON,
                    affected_users_overflow INTEGER NOT NULL DEFAULT 0,
                    detected_at TIMESTAMP NOT NULL,
                    first_occurrence TIMESTAMP NOT NULL,
                    last_occurrence TIMESTAMP NOT NULL,
                    resolved_at TIMESTAMP,
                    sla_breached BOOLEAN NOT NULL DEFAULT FALSE,
                    breach_time TIMESTAMP,
                    tags JSON,
                    assigned_to VARCHAR,
                    version INTEGER NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_incidents_key
                ON incidents(service_name, error_code)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_incidents_detected_at
                ON incidents(detected_at)
            """)

        except duckdb.Error as e:
            logger.error("duckdb_schema_initialization_failed", error=str(e))
            raise StoreUnavailableError(f"Failed to initialize schema: {e}") from e


class DuckDBLogStore(LogStore):
    """Log Store backed by the ``logs`` table."""

    def __init__(self, database: DuckDBDatabase):
        self.database = database

    def append(self, event: LogEvent) -> str:
        try:
            with self.database.writing() as conn:
                exists = conn.execute(
                    "SELECT 1 FROM logs WHERE log_id = ?", [event.log_id]
                ).fetchone()
                if exists:
                    raise DuplicateLogError(event.log_id)
                conn.execute(
                    f"""
                    INSERT INTO logs ({_LOG_COLUMNS}, severity_rank)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        event.log_id,
                        event.service_name,
                        event.environment.value,
                        event.host,
                        event.severity.value,
                        event.message,
                        event.error_code,
                        event.stack_trace,
                        json.dumps(event.metadata, default=str),
                        event.user_id,
                        event.request_id,
                        _to_db(event.timestamp),
                        _to_db(event.ingested_at),
                        event.severity.rank,
                    ],
                )
        except LogLensError:
            raise
        except duckdb.Error as e:
            logger.error("append_log_failed", log_id=event.log_id, error=str(e))
            raise StoreUnavailableError(f"Failed to append log: {e}") from e

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
        if order is None:
            order = SortOrder.ASC if log_filter.is_trace else SortOrder.DESC
        direction = "ASC" if order == SortOrder.ASC else "DESC"

        where, params = self._where(log_filter)
        sql = (
            f"SELECT {_LOG_COLUMNS} FROM logs WHERE {where} "
            f"ORDER BY timestamp {direction}, ingested_at {direction}, log_id {direction}"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        sql += " OFFSET ?"
        params.append(offset)

        try:
            rows = self.database.cursor().execute(sql, params).fetchall()
        except duckdb.Error as e:
            logger.error("query_logs_failed", error=str(e))
            raise StoreUnavailableError(f"Failed to query logs: {e}") from e

        events = [self._row_to_event(row) for row in rows]
        logger.debug("logs_read", count=len(events))
        return events

    def aggregate(self, query: AggregateQuery) -> list[AggregateRow]:
        dimensions = []
        for field in query.group_by:
            if field == GroupField.BUCKET:
                # Granularity values are a closed enum, safe to inline
                dimensions.append(f"date_trunc('{query.granularity.value}', timestamp)")
            else:
                dimensions.append(_GROUP_EXPRESSIONS[field])

        where_parts = ["1=1"]
        params: list[Any] = []
        if query.errors_only:
            where_parts.append("severity_rank >= ?")
            params.append(_ERROR_RANK)
        self._time_range_clause(query.time_range, where_parts, params)

        select = ", ".join(dimensions + [
            "count(*)",
            f"sum(CASE WHEN severity_rank >= {_ERROR_RANK} THEN 1 ELSE 0 END)",
            "max(timestamp)",
            "list(DISTINCT user_id)",
        ])
        sql = f"SELECT {select} FROM logs WHERE {' AND '.join(where_parts)}"
        if dimensions:
            sql += f" GROUP BY {', '.join(dimensions)}"

        try:
            rows = self.database.cursor().execute(sql, params).fetchall()
        except duckdb.Error as e:
            logger.error("aggregate_logs_failed", error=str(e))
            raise StoreUnavailableError(f"Failed to aggregate logs: {e}") from e

        results = []
        width = len(query.group_by)
        for row in rows:
            count = row[width]
            if not count:
                continue
            dims = dict(zip(query.group_by, row[:width]))
            bucket = dims.get(GroupField.BUCKET)
            results.append(
                AggregateRow(
                    service_name=dims.get(GroupField.SERVICE),
                    severity=dims.get(GroupField.SEVERITY),
                    error_code=dims.get(GroupField.ERROR_CODE),
                    bucket=_from_db(bucket),
                    count=count,
                    error_count=int(row[width + 1] or 0),
                    last_timestamp=_from_db(row[width + 2]),
                    user_ids=sorted(u for u in (row[width + 3] or []) if u is not None),
                )
            )
        return results

    @staticmethod
    def _time_range_clause(time_range, where_parts: list[str], params: list[Any]) -> None:
        if time_range is None:
            return
        if time_range.start is not None:
            where_parts.append("timestamp >= ?")
            params.append(_to_db(time_range.start))
        if time_range.end is not None:
            where_parts.append("timestamp <= ?")
            params.append(_to_db(time_range.end))

    def _where(self, log_filter: LogFilter) -> tuple[str, list[Any]]:
        where_parts = ["1=1"]
        params: list[Any] = []

        if log_filter.service_name is not None:
            where_parts.append("service_name = ?")
            params.append(log_filter.service_name)

        if log_filter.severity is not None:
            where_parts.append("severity = ?")
            params.append(log_filter.severity.value)

        if log_filter.error_code is not None:
            where_parts.append("error_code = ?")
            params.append(log_filter.error_code)

        if log_filter.request_id is not None:
            where_parts.append("request_id = ?")
            params.append(log_filter.request_id)

        if log_filter.log_ids is not None:
            if not log_filter.log_ids:
                where_parts.append("1=0")
            else:
                placeholders = ",".join(["?"] * len(log_filter.log_ids))
                where_parts.append(f"log_id IN ({placeholders})")
                params.extend(log_filter.log_ids)

        self._time_range_clause(log_filter.time_range, where_parts, params)
        return " AND ".join(where_parts), params

    @staticmethod
    def _row_to_event(row: tuple) -> LogEvent:
        return LogEvent(
            log_id=row[0],
            service_name=row[1],
            environment=row[2],
            host=row[3],
            severity=row[4],
            message=row[5],
            error_code=row[6],
            stack_trace=row[7],
            metadata=json.loads(row[8]) if row[8] else {},
            user_id=row[9],
            request_id=row[10],
            timestamp=_from_db(row[11]),
            ingested_at=_from_db(row[12]),
        )


class DuckDBIncidentStore(IncidentStore):
    """
    Incident Store backed by the ``incidents`` table.

    Conditional upserts run inside a write transaction under the database
    write lock, so the check and the write cannot interleave with another
    writer.
    """

    def __init__(self, database: DuckDBDatabase):
        self.database = database

    def find_open_by_key(self, key: CorrelationKey) -> Optional[Incident]:
        return self._fetch_one(
            f"""
            SELECT {_INCIDENT_COLUMNS} FROM incidents
            WHERE service_name = ? AND error_code = ? AND status <> ?
            ORDER BY detected_at DESC
            LIMIT 1
            """,
            [key.service_name, key.error_code, IncidentStatus.RESOLVED.value],
        )

    def get(self, incident_id: str) -> Optional[Incident]:
        return self._fetch_one(
            f"SELECT {_INCIDENT_COLUMNS} FROM incidents WHERE incident_id = ?",
            [incident_id],
        )

    def find_by_log_id(self, log_id: str) -> Optional[Incident]:
        # LIKE narrows on the encoded JSON; membership is confirmed per row
        sql = f"SELECT {_INCIDENT_COLUMNS} FROM incidents WHERE CAST(log_ids AS VARCHAR) LIKE ?"
        try:
            rows = self.database.cursor().execute(sql, [f"%{json.dumps(log_id)}%"]).fetchall()
        except duckdb.Error as e:
            logger.error("read_incident_failed", error=str(e))
            raise StoreUnavailableError(f"Failed to read incident: {e}") from e
        for row in rows:
            incident = self._row_to_incident(row)
            if log_id in incident.log_ids:
                return incident
        return None

    def upsert(self, incident: Incident, expected_version: Optional[int] = None) -> Incident:
        key = incident.correlation_key
        try:
            with self.database.writing() as conn:
                current = conn.execute(
                    "SELECT version, status, service_name, error_code "
                    "FROM incidents WHERE incident_id = ?",
                    [incident.incident_id],
                ).fetchone()

                if expected_version is None:
                    if current is not None:
                        raise IncidentConflictError(
                            f"Incident {incident.incident_id} already exists"
                        )
                    if incident.is_active:
                        active = conn.execute(
                            "SELECT 1 FROM incidents "
                            "WHERE service_name = ? AND error_code = ? AND status <> ?",
                            [key.service_name, key.error_code, IncidentStatus.RESOLVED.value],
                        ).fetchone()
                        if active:
                            raise IncidentConflictError(
                                f"An active incident already exists for {key}"
                            )
                    stored = incident.model_copy(update={"version": 1}, deep=True)
                    conn.execute(
                        f"INSERT INTO incidents ({_INCIDENT_COLUMNS}) "
                        f"VALUES ({', '.join(['?'] * 22)})",
                        self._incident_params(stored),
                    )
                else:
                    if current is None or current[0] != expected_version:
                        raise IncidentConflictError(
                            f"Incident {incident.incident_id} changed since version {expected_version}"
                        )
                    if current[1] == IncidentStatus.RESOLVED.value:
                        raise IncidentConflictError(f"Incident {incident.incident_id} is resolved")
                    if (current[2], current[3]) != (key.service_name, key.error_code):
                        raise IncidentConflictError("Correlation key of an incident cannot change")
                    stored = incident.model_copy(update={"version": expected_version + 1}, deep=True)
                    self._replace(conn, stored)
        except LogLensError:
            raise
        except duckdb.Error as e:
            logger.error("upsert_incident_failed", incident_id=incident.incident_id, error=str(e))
            raise StoreUnavailableError(f"Failed to upsert incident: {e}") from e

        logger.debug("incident_written", incident_id=stored.incident_id, version=stored.version)
        return stored

    def find(
        self,
        incident_filter: Optional[IncidentFilter] = None,
        limit: Optional[int] = 20,
        offset: int = 0,
    ) -> list[Incident]:
        incident_filter = incident_filter or IncidentFilter()
        where_parts = ["1=1"]
        params: list[Any] = []

        if incident_filter.statuses is not None:
            if not incident_filter.statuses:
                where_parts.append("1=0")
            else:
                placeholders = ",".join(["?"] * len(incident_filter.statuses))
                where_parts.append(f"status IN ({placeholders})")
                params.extend(s.value for s in incident_filter.statuses)

        if incident_filter.severity is not None:
            where_parts.append("severity = ?")
            params.append(incident_filter.severity.value)

        if incident_filter.service_name is not None:
            where_parts.append("service_name = ?")
            params.append(incident_filter.service_name)

        if incident_filter.sla_breached is not None:
            where_parts.append("sla_breached = ?")
            params.append(incident_filter.sla_breached)

        if incident_filter.last_occurrence_before is not None:
            where_parts.append("last_occurrence < ?")
            params.append(_to_db(incident_filter.last_occurrence_before))

        direction = "ASC" if incident_filter.oldest_first else "DESC"
        sql = (
            f"SELECT {_INCIDENT_COLUMNS} FROM incidents WHERE {' AND '.join(where_parts)} "
            f"ORDER BY detected_at {direction}, incident_id {direction}"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        sql += " OFFSET ?"
        params.append(offset)

        try:
            rows = self.database.cursor().execute(sql, params).fetchall()
        except duckdb.Error as e:
            logger.error("read_incidents_failed", error=str(e))
            raise StoreUnavailableError(f"Failed to read incidents: {e}") from e

        incidents = [self._row_to_incident(row) for row in rows]
        logger.debug("incidents_read", count=len(incidents))
        return incidents

    def update_status(
        self,
        incident_id: str,
        new_status: IncidentStatus,
        fields: Optional[dict[str, Any]] = None,
        expected_version: Optional[int] = None,
    ) -> Optional[Incident]:
        try:
            with self.database.writing() as conn:
                row = conn.execute(
                    f"SELECT {_INCIDENT_COLUMNS} FROM incidents WHERE incident_id = ?",
                    [incident_id],
                ).fetchone()
                if row is None:
                    return None
                current = self._row_to_incident(row)
                if expected_version is not None and current.version != expected_version:
                    raise IncidentConflictError(
                        f"Incident {incident_id} changed since version {expected_version}"
                    )
                data = current.model_dump()
                data.update(fields or {})
                data["status"] = new_status
                data["version"] = current.version + 1
                updated = Incident.model_validate(data)
                self._replace(conn, updated)
        except LogLensError:
            raise
        except duckdb.Error as e:
            logger.error("update_incident_failed", incident_id=incident_id, error=str(e))
            raise StoreUnavailableError(f"Failed to update incident: {e}") from e

        logger.info(
            "incident_status_updated",
            incident_id=incident_id,
            status=new_status.value,
            version=updated.version,
        )
        return updated

    def _fetch_one(self, sql: str, params: list[Any]) -> Optional[Incident]:
        try:
            row = self.database.cursor().execute(sql, params).fetchone()
        except duckdb.Error as e:
            logger.error("read_incident_failed", error=str(e))
            raise StoreUnavailableError(f"Failed to read incident: {e}") from e
        return self._row_to_incident(row) if row is not None else None

    def _replace(self, conn: "duckdb.DuckDBPyConnection", incident: Incident) -> None:
        # Indexed columns must not appear in an UPDATE on DuckDB
        params = dict(zip(_INCIDENT_COLUMNS.split(", "), self._incident_params(incident)))
        assignments = ", ".join(f"{column} = ?" for column in _MUTABLE_INCIDENT_COLUMNS)
        conn.execute(
            f"UPDATE incidents SET {assignments} WHERE incident_id = ?",
            [params[column] for column in _MUTABLE_INCIDENT_COLUMNS] + [incident.incident_id],
        )

    @staticmethod
    def _incident_params(incident: Incident) -> list[Any]:
        return [
            incident.incident_id,
            incident.service_name,
            incident.error_code,
            incident.severity.value,
            incident.title,
            incident.description,
            incident.status.value,
            json.dumps(incident.log_ids),
            incident.error_count,
            json.dumps(incident.affected_services),
            json.dumps(incident.affected_users),
            incident.affected_users_overflow,
            _to_db(incident.detected_at),
            _to_db(incident.first_occurrence),
            _to_db(incident.last_occurrence),
            _to_db(incident.resolved_at),
            incident.sla_breached,
            _to_db(incident.breach_time),
            json.dumps(incident.tags),
            incident.assigned_to,
            incident.version,
            _to_db(incident.updated_at),
        ]

    @staticmethod
    def _row_to_incident(row: tuple) -> Incident:
        return Incident(
            incident_id=row[0],
            service_name=row[1],
            error_code=row[2],
            severity=row[3],
            title=row[4],
            description=row[5] or "",
            status=row[6],
            log_ids=json.loads(row[7]) if row[7] else [],
            error_count=row[8],
            affected_services=json.loads(row[9]) if row[9] else [],
            affected_users=json.loads(row[10]) if row[10] else [],
            affected_users_overflow=row[11],
            detected_at=_from_db(row[12]),
            first_occurrence=_from_db(row[13]),
            last_occurrence=_from_db(row[14]),
            resolved_at=_from_db(row[15]),
            sla_breached=row[16],
            breach_time=_from_db(row[17]),
            tags=json.loads(row[18]) if row[18] else [],
            assigned_to=row[19],
            version=row[20],
            updated_at=_from_db(row[21]),
        )
