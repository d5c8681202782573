"""SQLite-backed audit sink.

Entries are stored as their JSON serialization next to a few indexed columns
used for filtering (epoch timestamp, client IP, key id, path, decision).
Blocking database work runs in a worker thread; writes are serialized
through a threading lock.

Dependencies:
    - sqlite3: For persistent storage
    - threading: For write serialization
    - structlog: For purge logging

Called by:
    - sentinel.container: When ``database_path`` is configured

Complexity:
    - Batch append: O(b) inserts in one transaction
    - Query: O(log n + r) using the timestamp index
    - Purge: O(d) deleted rows
"""

import asyncio
import sqlite3
import threading
from collections.abc import Iterable
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path

import structlog

from ..models.audit_models import (
    AccessEventEntry,
    AuditEntry,
    LogKind,
    LogQuery,
    TrafficLogEntry,
)
from .sinks import AuditSink

logger = structlog.get_logger()

_TABLES = {
    LogKind.TRAFFIC: "traffic_logs",
    LogKind.ACCESS: "access_events",
}


class SqliteAuditSink(AuditSink):
    """Audit entries persisted in two SQLite tables."""

    def __init__(self, db_path: str):
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path
        self._lock = threading.Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self) -> None:
        with closing(self._connect()) as conn, conn:
            for table in _TABLES.values():
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        ts REAL NOT NULL,
                        ip TEXT,
                        api_key_id TEXT,
                        path TEXT,
                        decision TEXT,
                        payload TEXT NOT NULL
                    )
                """
                )
                conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_ts ON {table} (ts)")

    @staticmethod
    def _row_values(entry: AuditEntry) -> tuple:
        decision = entry.decision.value if isinstance(entry, AccessEventEntry) else None
        return (
            entry.id,
            entry.timestamp.timestamp(),
            entry.client.ip,
            entry.api_key_id,
            entry.path,
            decision,
            entry.model_dump_json(),
        )

    def _insert_sync(self, entries: list[AuditEntry]) -> int:
        with self._lock, closing(self._connect()) as conn, conn:
            for entry in entries:
                # OR IGNORE keeps a redelivered entry from being stored twice
                conn.execute(
                    f"INSERT OR IGNORE INTO {_TABLES[entry.kind]} "
                    "(id, ts, ip, api_key_id, path, decision, payload) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    self._row_values(entry),
                )
        return len(entries)

    def _query_sync(self, query: LogQuery) -> list[AuditEntry]:
        clauses = []
        params: list = []
        if query.ip is not None:
            clauses.append("ip = ?")
            params.append(query.ip)
        if query.api_key_id is not None:
            clauses.append("api_key_id = ?")
            params.append(query.api_key_id)
        if query.route is not None:
            clauses.append("instr(path, ?) > 0")
            params.append(query.route)
        if query.since is not None:
            clauses.append("ts >= ?")
            params.append(query.since.timestamp())
        if query.decision is not None:
            clauses.append("decision = ?")
            params.append(query.decision.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"SELECT payload FROM {_TABLES[query.kind]} {where} ORDER BY ts DESC LIMIT ?"
        params.append(query.limit)

        model = TrafficLogEntry if query.kind == LogKind.TRAFFIC else AccessEventEntry
        with closing(self._connect()) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [model.model_validate_json(row[0]) for row in rows]

    def _purge_sync(self, cutoff: datetime) -> int:
        removed = 0
        with self._lock, closing(self._connect()) as conn, conn:
            for table in _TABLES.values():
                cursor = conn.execute(f"DELETE FROM {table} WHERE ts < ?", (cutoff.timestamp(),))
                removed += cursor.rowcount
        return removed

    async def append(self, entry: AuditEntry) -> None:
        await asyncio.to_thread(self._insert_sync, [entry])

    async def append_batch(self, entries: Iterable[AuditEntry]) -> int:
        return await asyncio.to_thread(self._insert_sync, list(entries))

    async def query(self, query: LogQuery) -> list[AuditEntry]:
        return await asyncio.to_thread(self._query_sync, query)

    async def purge_older_than(self, cutoff: datetime) -> int:
        if cutoff.tzinfo is None:
            cutoff = cutoff.replace(tzinfo=timezone.utc)
        removed = await asyncio.to_thread(self._purge_sync, cutoff)
        if removed:
            logger.info("Purged audit entries", removed=removed, cutoff=cutoff.isoformat())
        return removed
