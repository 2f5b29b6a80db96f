#!/usr/bin/env python3
"""
O-Cloud Rollback Audit Log
Append-only storage of rollback events in DuckDB
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Iterator, Optional

import duckdb

from ocloud_rollback_errors import AuditLogError
from ocloud_rollback_models import RollbackEvent, RollbackOutcome, TriggeredBy

_COLUMNS = "event_id, lineage, from_revision, to_revision, triggered_by, timestamp, outcome, reason"


def _to_db_time(value: datetime) -> datetime:
    """DuckDB TIMESTAMP is naive; store UTC"""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_time(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc)


class AuditQuery:
    """Lazy, restartable view over a time range of the audit log.

    Each iteration opens its own cursor and fetches rows in batches, so the
    same query object can be iterated any number of times.
    """

    def __init__(self, log: "AuditLog", start: Optional[datetime], end: Optional[datetime],
                 lineage: Optional[str], batch_size: int = 256):
        self.log = log
        self.start = start
        self.end = end
        self.lineage = lineage
        self.batch_size = batch_size

    def _sql(self):
        clauses = []
        params = []
        if self.start is not None:
            clauses.append("timestamp >= ?")
            params.append(_to_db_time(self.start))
        if self.end is not None:
            clauses.append("timestamp < ?")
            params.append(_to_db_time(self.end))
        if self.lineage is not None:
            clauses.append("lineage = ?")
            params.append(self.lineage)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        # seq breaks ties between events written within the same microsecond
        sql = f"SELECT {_COLUMNS} FROM rollback_events {where} ORDER BY timestamp ASC, seq ASC"
        return sql, params

    def __iter__(self) -> Iterator[RollbackEvent]:
        sql, params = self._sql()
        cursor = self.log.cursor()
        try:
            cursor.execute(sql, params)
            while True:
                rows = cursor.fetchmany(self.batch_size)
                if not rows:
                    break
                for row in rows:
                    yield AuditLog.row_to_event(row)
        except duckdb.Error as e:
            raise AuditLogError(f"Failed to query audit log: {e}") from e
        finally:
            cursor.close()


class AuditLog:
    """Database handler for rollback events using DuckDB"""

    def __init__(self, db_path: str = "rollback_audit.duckdb"):
        self.db_path = db_path
        self.logger = logging.getLogger(f"{__name__}.audit")
        self.conn = None
        self._lock = threading.Lock()
        self._initialize_database()

    def _initialize_database(self) -> None:
        """Initialize DuckDB connection and create tables if not exist"""
        try:
            self.conn = duckdb.connect(self.db_path)
            self._create_tables()
            self.logger.info(f"Audit log initialized: {self.db_path}")
        except duckdb.Error as e:
            self.logger.error(f"Failed to initialize audit log: {e}")
            raise AuditLogError(f"Failed to initialize audit log {self.db_path}: {e}") from e

    def _create_tables(self) -> None:
        self.conn.execute("CREATE SEQUENCE IF NOT EXISTS rollback_events_seq")
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS rollback_events (
                event_id VARCHAR PRIMARY KEY,
                seq BIGINT NOT NULL DEFAULT nextval('rollback_events_seq'),
                lineage VARCHAR NOT NULL,
                from_revision INTEGER NOT NULL,
                to_revision INTEGER NOT NULL,
                triggered_by VARCHAR NOT NULL,
                timestamp TIMESTAMP NOT NULL,
                outcome VARCHAR NOT NULL,
                reason VARCHAR,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_rollback_events_time
            ON rollback_events(timestamp)
        """)
        self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_rollback_events_lineage
            ON rollback_events(lineage, timestamp)
        """)

    def cursor(self):
        if self.conn is None:
            raise AuditLogError("Audit log is closed")
        with self._lock:
            return self.conn.cursor()

    def append(self, event: RollbackEvent) -> None:
        """Append one event; storage errors are raised, never dropped"""
        if self.conn is None:
            raise AuditLogError("Audit log is closed")
        try:
            with self._lock:
                self.conn.execute(f"""
                    INSERT INTO rollback_events ({_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    event.event_id,
                    event.lineage,
                    event.from_revision,
                    event.to_revision,
                    event.triggered_by.value,
                    _to_db_time(event.timestamp),
                    event.outcome.value,
                    event.reason,
                ))
        except duckdb.Error as e:
            self.logger.error(f"Failed to append rollback event {event.event_id}: {e}")
            raise AuditLogError(f"Failed to append rollback event: {e}") from e

        self.logger.info(
            f"Rollback event {event.outcome.value}: {event.lineage} "
            f"from revision {event.from_revision} to revision {event.to_revision} "
            f"({event.triggered_by.value}{', ' + event.reason if event.reason else ''})"
        )

    def query(self, start: Optional[datetime] = None, end: Optional[datetime] = None,
              lineage: Optional[str] = None) -> AuditQuery:
        """Events with start <= timestamp < end, oldest first"""
        return AuditQuery(self, start, end, lineage)

    @staticmethod
    def row_to_event(row) -> RollbackEvent:
        event_id, lineage, from_rev, to_rev, triggered_by, timestamp, outcome, reason = row
        return RollbackEvent(
            lineage=lineage,
            from_revision=from_rev,
            to_revision=to_rev,
            triggered_by=TriggeredBy(triggered_by),
            outcome=RollbackOutcome(outcome),
            timestamp=_from_db_time(timestamp),
            reason=reason or "",
            event_id=event_id,
        )

    def close(self) -> None:
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None
