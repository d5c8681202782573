"""API key storage with cryptographic hashed keys.

Keys are generated once, returned to the caller in clear text exactly once,
and stored only as salted PBKDF2 hashes. Because the hash is one-way there is
no reverse lookup from a presented key to its record: validation iterates the
active records and compares hashes (see ``sentinel.auth.validators``).

Security Features:
    - PBKDF2-SHA256 key hashing (100,000 iterations by default)
    - Unique 32-byte salt per key
    - Timing-safe comparison via hmac.compare_digest
    - Permanent invalidation (no reactivation)
    - last_used_at tracking for auditing

Hash Encoding:
    ``pbkdf2_sha256$<iterations>$<salt hex>$<hash hex>`` so that records
    created with a different iteration count keep verifying.

Dependencies:
    - hashlib: For PBKDF2 cryptographic hashing
    - hmac: For timing-safe hash comparison
    - secrets: For key and salt generation
    - threading: For store synchronization
    - structlog: For key lifecycle logging

Used by:
    - sentinel.auth.validators: Store key strategy
    - sentinel.service.main: Key administration endpoints
    - sentinel.container: Store construction

Complexity:
    - Key verification: O(k) where k = hash iterations
    - Store lookups by id: O(1)
    - Owner listings: O(n) where n = number of keys
"""

import asyncio
import hashlib
import hmac
import secrets
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from typing import Optional

import structlog

from ..models.audit_models import utc_now
from .models import ApiKeyRecord, OwnerType

logger = structlog.get_logger()

DEFAULT_HASH_ITERATIONS = 100_000
HASH_ALGORITHM = "pbkdf2_sha256"
RAW_KEY_PREFIX = "ak_"


def generate_raw_key() -> str:
    """Generate a new raw API key: ``ak_`` followed by 64 hex characters."""
    return RAW_KEY_PREFIX + secrets.token_hex(32)


def hash_api_key(raw_key: str, iterations: int = DEFAULT_HASH_ITERATIONS) -> str:
    """Hash a raw key with a fresh salt and return the encoded hash."""
    salt = secrets.token_bytes(32)
    digest = hashlib.pbkdf2_hmac("sha256", raw_key.encode(), salt, iterations)
    return f"{HASH_ALGORITHM}${iterations}${salt.hex()}${digest.hex()}"


def verify_api_key_hash(raw_key: Optional[str], encoded: str) -> bool:
    """Check a raw key against an encoded hash in constant time.

    Malformed encodings never verify.
    """
    if not raw_key:
        return False
    try:
        algorithm, iterations, salt_hex, digest_hex = encoded.split("$")
        if algorithm != HASH_ALGORITHM:
            return False
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(digest_hex)
        rounds = int(iterations)
    except (ValueError, AttributeError):
        return False
    provided = hashlib.pbkdf2_hmac("sha256", raw_key.encode(), salt, rounds)
    return hmac.compare_digest(provided, expected)


def _key_prefix(raw_key: str) -> str:
    # Safe prefix for logs, never the whole key
    return raw_key[:4] + "..." if len(raw_key) > 4 else "***"


class ApiKeyStore(ABC):
    """Persisted API key records.

    Implementations must be safe under concurrent access: validation reads
    heavily while create, invalidate and touch write occasionally. Records are
    only ever changed through ``create_key``, ``invalidate_key`` and
    ``touch_last_used``.
    """

    def __init__(self, hash_iterations: int = DEFAULT_HASH_ITERATIONS):
        self.hash_iterations = hash_iterations

    async def _new_record(
        self,
        owner_type: OwnerType,
        owner_id: str,
        scopes: Iterable[str],
        name: Optional[str],
        expires_at: Optional[datetime],
    ) -> tuple[ApiKeyRecord, str]:
        raw_key = generate_raw_key()
        now = utc_now()
        owner_type = OwnerType(owner_type)
        # PBKDF2 is CPU bound, run it off the event loop
        hashed_key = await asyncio.to_thread(hash_api_key, raw_key, self.hash_iterations)
        record = ApiKeyRecord(
            id=uuid.uuid4().hex,
            name=name or f"{owner_type.value}-{owner_id}-{int(now.timestamp() * 1000)}",
            hashed_key=hashed_key,
            owner_type=owner_type,
            owner_id=owner_id,
            scopes=frozenset(scopes),
            created_at=now,
            expires_at=expires_at,
        )
        return record, raw_key

    @abstractmethod
    async def create_key(
        self,
        owner_type: OwnerType,
        owner_id: str,
        scopes: Iterable[str] = (),
        name: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> tuple[ApiKeyRecord, str]:
        """Create a key and return ``(record, raw_key)``.

        The raw key is not recoverable afterwards.
        """

    @abstractmethod
    async def list_active(self) -> list[ApiKeyRecord]:
        """Return every record with ``is_active`` set."""

    @abstractmethod
    async def touch_last_used(self, key_id: str, when: Optional[datetime] = None) -> None:
        """Record a successful validation of ``key_id``."""

    @abstractmethod
    async def invalidate_key(self, key_id: str) -> bool:
        """Permanently deactivate a key.

        Returns:
            True if the key was active and is now inactive, False if the key
            does not exist or was already inactive
        """

    @abstractmethod
    async def get_by_id(self, key_id: str) -> Optional[ApiKeyRecord]:
        ...

    @abstractmethod
    async def list_by_owner(self, owner_type: OwnerType, owner_id: str) -> list[ApiKeyRecord]:
        """Return an owner's keys, newest first."""

    @abstractmethod
    async def list_keys(self) -> list[ApiKeyRecord]:
        ...

    async def rotate_key(self, key_id: str) -> Optional[tuple[ApiKeyRecord, str]]:
        """Replace an active key with a fresh one carrying the same grants.

        The old key is invalidated only after the new one exists.

        Returns:
            ``(new_record, raw_key)``, or None when ``key_id`` is unknown or
            inactive
        """
        current = await self.get_by_id(key_id)
        if current is None or not current.is_active:
            return None
        new_record, raw_key = await self.create_key(
            current.owner_type,
            current.owner_id,
            current.scopes,
            current.name,
            current.expires_at,
        )
        await self.invalidate_key(key_id)
        logger.info("API key rotated", old_key_id=key_id, new_key_id=new_record.id)
        return new_record, raw_key

    async def find_matching(self, raw_key: str) -> Optional[ApiKeyRecord]:
        """Return the active record whose hash matches ``raw_key``.

        Hash comparison runs in a worker thread so PBKDF2 does not block the
        event loop.
        """
        records = await self.list_active()
        return await asyncio.to_thread(self._match_sync, raw_key, records)

    @staticmethod
    def _match_sync(raw_key: str, records: list[ApiKeyRecord]) -> Optional[ApiKeyRecord]:
        for record in records:
            if verify_api_key_hash(raw_key, record.hashed_key):
                return record
        logger.warning(
            "API key verification failed",
            provided_key_prefix=_key_prefix(raw_key),
            candidates=len(records),
        )
        return None

    async def close(self) -> None:
        """Release resources held by the store."""


class InMemoryApiKeyStore(ApiKeyStore):
    """Process-local key store guarded by a lock.

    Suitable for tests and single-process deployments. State is lost on
    restart; use ``SqliteApiKeyStore`` for durability.
    """

    def __init__(self, hash_iterations: int = DEFAULT_HASH_ITERATIONS):
        super().__init__(hash_iterations)
        self._records: dict[str, ApiKeyRecord] = {}
        self._lock = threading.Lock()

    async def create_key(
        self,
        owner_type: OwnerType,
        owner_id: str,
        scopes: Iterable[str] = (),
        name: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> tuple[ApiKeyRecord, str]:
        record, raw_key = await self._new_record(owner_type, owner_id, scopes, name, expires_at)
        with self._lock:
            self._records[record.id] = record
        logger.info(
            "API key created",
            key_id=record.id,
            owner_type=record.owner_type.value,
            owner_id=owner_id,
            scopes=sorted(record.scopes),
        )
        return record, raw_key

    async def list_active(self) -> list[ApiKeyRecord]:
        with self._lock:
            return [record for record in self._records.values() if record.is_active]

    async def touch_last_used(self, key_id: str, when: Optional[datetime] = None) -> None:
        with self._lock:
            record = self._records.get(key_id)
            if record is not None:
                self._records[key_id] = record.model_copy(update={"last_used_at": when or utc_now()})

    async def invalidate_key(self, key_id: str) -> bool:
        with self._lock:
            record = self._records.get(key_id)
            if record is None or not record.is_active:
                return False
            self._records[key_id] = record.model_copy(update={"is_active": False})
        logger.info("API key invalidated", key_id=key_id)
        return True

    async def get_by_id(self, key_id: str) -> Optional[ApiKeyRecord]:
        with self._lock:
            return self._records.get(key_id)

    async def list_by_owner(self, owner_type: OwnerType, owner_id: str) -> list[ApiKeyRecord]:
        owner_type = OwnerType(owner_type)
        with self._lock:
            owned = [
                record
                for record in self._records.values()
                if record.owner_type == owner_type and record.owner_id == owner_id
            ]
        return sorted(owned, key=lambda record: record.created_at, reverse=True)

    async def list_keys(self) -> list[ApiKeyRecord]:
        with self._lock:
            return list(self._records.values())

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
