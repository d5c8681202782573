"""Audit sinks: persistence destinations for traffic and access entries.

The engine only ever talks to the abstract ``AuditSink`` interface, so an
in-memory sink and a durable one are interchangeable. Sinks never modify an
entry after storing it; the only deletion path is ``purge_older_than``,
driven by the retention sweep.

Dependencies:
    - threading: For the in-memory sink's lock
    - structlog: For purge logging

Used by:
    - sentinel.audit.queue: Batch delivery and retention sweep
    - sentinel.service.main: Log query endpoints
"""

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime, timezone

import structlog

from ..models.audit_models import AccessEventEntry, AuditEntry, LogKind, LogQuery, TrafficLogEntry

logger = structlog.get_logger()


class AuditSink(ABC):
    """Append-only store of audit entries."""

    @abstractmethod
    async def append(self, entry: AuditEntry) -> None:
        """Store one entry."""

    async def append_batch(self, entries: Iterable[AuditEntry]) -> int:
        """Store several entries; returns how many were stored.

        Sinks with a cheaper bulk path override this.
        """
        count = 0
        for entry in entries:
            await self.append(entry)
            count += 1
        return count

    @abstractmethod
    async def query(self, query: LogQuery) -> list[AuditEntry]:
        """Entries matching ``query``, newest first, at most ``query.limit``."""

    @abstractmethod
    async def purge_older_than(self, cutoff: datetime) -> int:
        """Delete every entry with a timestamp before ``cutoff``; returns the count."""

    async def close(self) -> None:
        """Release resources held by the sink."""


class InMemoryAuditSink(AuditSink):
    """Process-local sink keeping entries in two lists."""

    def __init__(self):
        self._traffic: list[TrafficLogEntry] = []
        self._access: list[AccessEventEntry] = []
        self._lock = threading.Lock()

    def _bucket(self, kind: LogKind) -> list:
        return self._traffic if kind == LogKind.TRAFFIC else self._access

    async def append(self, entry: AuditEntry) -> None:
        with self._lock:
            self._bucket(entry.kind).append(entry)

    async def append_batch(self, entries: Iterable[AuditEntry]) -> int:
        entries = list(entries)
        with self._lock:
            for entry in entries:
                self._bucket(entry.kind).append(entry)
        return len(entries)

    async def query(self, query: LogQuery) -> list[AuditEntry]:
        with self._lock:
            candidates = list(self._bucket(query.kind))
        matched = [entry for entry in candidates if query.matches(entry)]
        matched.sort(key=lambda entry: entry.timestamp, reverse=True)
        return matched[: query.limit]

    async def purge_older_than(self, cutoff: datetime) -> int:
        if cutoff.tzinfo is None:
            cutoff = cutoff.replace(tzinfo=timezone.utc)
        with self._lock:
            before = len(self._traffic) + len(self._access)
            self._traffic = [entry for entry in self._traffic if entry.timestamp >= cutoff]
            self._access = [entry for entry in self._access if entry.timestamp >= cutoff]
            removed = before - len(self._traffic) - len(self._access)
        if removed:
            logger.info("Purged audit entries", removed=removed, cutoff=cutoff.isoformat())
        return removed

    def count(self, kind: LogKind) -> int:
        with self._lock:
            return len(self._bucket(kind))

    def all_entries(self, kind: LogKind) -> list[AuditEntry]:
        """Snapshot of stored entries in insertion order."""
        with self._lock:
            return list(self._bucket(kind))
