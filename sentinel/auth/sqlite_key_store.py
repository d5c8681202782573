"""SQLite-backed API key store.

Durable variant of the in-memory store for single-node deployments. Each
operation opens a short-lived connection; writes are serialized through a
threading lock and all blocking database work runs in a worker thread.

Dependencies:
    - sqlite3: For persistent storage
    - threading: For write serialization
    - json: For the scope set column
    - structlog: For logging

Called by:
    - sentinel.container: When ``database_path`` is configured

Complexity:
    - Lookup by id: O(log n) primary key index
    - Active listing: O(n)
"""

import asyncio
import json
import sqlite3
import threading
from collections.abc import Iterable
from contextlib import closing
from datetime import datetime
from pathlib import Path
from typing import Optional

import structlog

from ..models.audit_models import utc_now
from .key_store import DEFAULT_HASH_ITERATIONS, ApiKeyStore
from .models import ApiKeyRecord, OwnerType

logger = structlog.get_logger()

_COLUMNS = (
    "id, name, hashed_key, owner_type, owner_id, scopes, is_active, "
    "created_at, expires_at, last_used_at"
)


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SqliteApiKeyStore(ApiKeyStore):
    """API key records persisted in a SQLite table."""

    def __init__(self, db_path: str, hash_iterations: int = DEFAULT_HASH_ITERATIONS):
        """Open (and if needed create) the key table.

        Args:
            db_path: Path of the SQLite database file. Parent directories are
                created when missing.
            hash_iterations: PBKDF2 iterations for newly created keys
        """
        super().__init__(hash_iterations)
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path
        self._lock = threading.Lock()  # Serializes writes
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS api_keys (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    hashed_key TEXT NOT NULL,
                    owner_type TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    scopes TEXT NOT NULL DEFAULT '[]',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    expires_at TEXT,
                    last_used_at TEXT
                )
            """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_api_keys_owner ON api_keys (owner_type, owner_id)"
            )

    @staticmethod
    def _row_to_record(row: tuple) -> ApiKeyRecord:
        return ApiKeyRecord(
            id=row[0],
            name=row[1],
            hashed_key=row[2],
            owner_type=OwnerType(row[3]),
            owner_id=row[4],
            scopes=frozenset(json.loads(row[5] or "[]")),
            is_active=bool(row[6]),
            created_at=_from_iso(row[7]),
            expires_at=_from_iso(row[8]),
            last_used_at=_from_iso(row[9]),
        )

    def _fetch(self, sql: str, params: tuple = ()) -> list[ApiKeyRecord]:
        with closing(self._connect()) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_record(row) for row in rows]

    def _insert_sync(self, record: ApiKeyRecord) -> None:
        with self._lock, closing(self._connect()) as conn, conn:
            conn.execute(
                f"INSERT INTO api_keys ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.name,
                    record.hashed_key,
                    record.owner_type.value,
                    record.owner_id,
                    json.dumps(sorted(record.scopes)),
                    int(record.is_active),
                    _to_iso(record.created_at),
                    _to_iso(record.expires_at),
                    _to_iso(record.last_used_at),
                ),
            )

    def _update_sync(self, sql: str, params: tuple) -> int:
        with self._lock, closing(self._connect()) as conn, conn:
            cursor = conn.execute(sql, params)
            return cursor.rowcount

    async def create_key(
        self,
        owner_type: OwnerType,
        owner_id: str,
        scopes: Iterable[str] = (),
        name: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> tuple[ApiKeyRecord, str]:
        record, raw_key = await self._new_record(owner_type, owner_id, scopes, name, expires_at)
        await asyncio.to_thread(self._insert_sync, record)
        logger.info(
            "API key created",
            key_id=record.id,
            owner_type=record.owner_type.value,
            owner_id=owner_id,
            scopes=sorted(record.scopes),
        )
        return record, raw_key

    async def list_active(self) -> list[ApiKeyRecord]:
        return await asyncio.to_thread(
            self._fetch, f"SELECT {_COLUMNS} FROM api_keys WHERE is_active = 1"
        )

    async def touch_last_used(self, key_id: str, when: Optional[datetime] = None) -> None:
        await asyncio.to_thread(
            self._update_sync,
            "UPDATE api_keys SET last_used_at = ? WHERE id = ?",
            (_to_iso(when or utc_now()), key_id),
        )

    async def invalidate_key(self, key_id: str) -> bool:
        # The is_active guard makes a second invalidation a no-op
        changed = await asyncio.to_thread(
            self._update_sync,
            "UPDATE api_keys SET is_active = 0 WHERE id = ? AND is_active = 1",
            (key_id,),
        )
        if changed:
            logger.info("API key invalidated", key_id=key_id)
        return changed > 0

    async def get_by_id(self, key_id: str) -> Optional[ApiKeyRecord]:
        records = await asyncio.to_thread(
            self._fetch, f"SELECT {_COLUMNS} FROM api_keys WHERE id = ?", (key_id,)
        )
        return records[0] if records else None

    async def list_by_owner(self, owner_type: OwnerType, owner_id: str) -> list[ApiKeyRecord]:
        records = await asyncio.to_thread(
            self._fetch,
            f"SELECT {_COLUMNS} FROM api_keys WHERE owner_type = ? AND owner_id = ?",
            (OwnerType(owner_type).value, owner_id),
        )
        return sorted(records, key=lambda record: record.created_at, reverse=True)

    async def list_keys(self) -> list[ApiKeyRecord]:
        return await asyncio.to_thread(self._fetch, f"SELECT {_COLUMNS} FROM api_keys")
