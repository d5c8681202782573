"""Asynchronous audit queue with batched delivery and retention sweeping.

The request path must never wait on audit persistence. Traffic entries and
access events are appended to two independent bounded in-memory buffers and
delivered to the ``AuditSink`` in batches by background tasks.

Delivery Triggers:
    - Periodic flush: every ``flush_interval_seconds`` up to one batch is
      taken from each buffer (traffic 50, access 25 by default)
    - High-water drain: when a buffer reaches its high-water mark (traffic
      100, access 50) the whole buffer is taken at once, in batch-size
      chunks, and handed to a background delivery task
    - Shutdown: ``stop()`` cancels the timers and drains what is left

Delivery Guarantees:
    Batches are removed from a buffer under its lock, so an entry is either
    still queued or owned by exactly one delivery. Sink failures are logged
    and the batch is dropped; there is no automatic retry, and nothing that
    happens here can change a decision already returned to a caller.

Retention:
    A separate task runs ``sweep()`` once after ``retention_initial_delay_seconds``
    and then every ``retention_interval_seconds``, deleting entries older than
    ``retention_days``. ``retention_days <= 0`` disables sweeping.

Dependencies:
    - asyncio: For background tasks
    - threading: For buffer locks
    - structlog: For delivery and backpressure logging

Used by:
    - sentinel.engine.guard: Access events
    - sentinel.service.middleware: Traffic entries
    - sentinel.container: Lifecycle (start/stop)
"""

import asyncio
import threading
import time
from collections import deque
from collections.abc import Coroutine
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog

from ..config import AuditSettings, SentinelConfig
from ..models.audit_models import (
    AccessEventEntry,
    AuditEntry,
    LogKind,
    TrafficLogEntry,
    utc_now,
)
from .sinks import AuditSink

logger = structlog.get_logger()


class _EntryBuffer:
    """Bounded FIFO buffer with atomic batch removal."""

    def __init__(self, kind: LogKind, max_size: int, batch_size: int, high_water: int):
        self.kind = kind
        self.max_size = max_size
        self.batch_size = batch_size
        self.high_water = high_water
        self._entries: deque = deque()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def push(self, entry: AuditEntry) -> tuple[bool, int]:
        """Append ``entry``; returns ``(accepted, depth_after)``."""
        with self._lock:
            if len(self._entries) >= self.max_size:
                return False, len(self._entries)
            self._entries.append(entry)
            return True, len(self._entries)

    def take(self, limit: int) -> list[AuditEntry]:
        with self._lock:
            count = min(limit, len(self._entries))
            return [self._entries.popleft() for _ in range(count)]

    def take_batches(self) -> list[list[AuditEntry]]:
        """Remove every queued entry, split into batch-size chunks."""
        with self._lock:
            entries = list(self._entries)
            self._entries.clear()
        return [
            entries[i:i + self.batch_size] for i in range(0, len(entries), self.batch_size)
        ]


class AuditQueue:
    """Non-blocking audit buffers with background delivery to a sink."""

    def __init__(
        self,
        sink: AuditSink,
        settings: Optional[AuditSettings] = None,
        retention_days: int = 90,
        on_traffic_log: Optional[Callable[..., Any]] = None,
        on_access_event: Optional[Callable[..., Any]] = None,
        enabled: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.sink = sink
        self.settings = settings or AuditSettings()
        self.retention_days = retention_days
        self.on_traffic_log = on_traffic_log
        self.on_access_event = on_access_event
        self.enabled = enabled
        self.clock = clock

        self._traffic = _EntryBuffer(
            LogKind.TRAFFIC,
            self.settings.max_queue_size,
            self.settings.traffic_batch_size,
            self.settings.traffic_high_water,
        )
        self._access = _EntryBuffer(
            LogKind.ACCESS,
            self.settings.max_queue_size,
            self.settings.access_batch_size,
            self.settings.access_high_water,
        )

        self._flush_task: Optional[asyncio.Task] = None
        self._retention_task: Optional[asyncio.Task] = None
        self._pending: set[asyncio.Task] = set()

        self._delivered = {LogKind.TRAFFIC: 0, LogKind.ACCESS: 0}
        self._failed = {LogKind.TRAFFIC: 0, LogKind.ACCESS: 0}
        self._dropped = {LogKind.TRAFFIC: 0, LogKind.ACCESS: 0}
        self._last_backpressure_log = 0.0

    @classmethod
    def from_config(cls, config: SentinelConfig, sink: AuditSink) -> "AuditQueue":
        return cls(
            sink,
            settings=config.audit,
            retention_days=config.traffic_retention_days,
            on_traffic_log=config.on_traffic_log,
            on_access_event=config.on_access_event,
            enabled=config.enable_logs,
        )

    @property
    def running(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    def depth(self, kind: LogKind) -> int:
        return len(self._buffer(kind))

    def _buffer(self, kind: LogKind) -> _EntryBuffer:
        return self._traffic if kind == LogKind.TRAFFIC else self._access

    # Enqueue path (synchronous, never blocks on I/O)

    def log_traffic(self, entry: TrafficLogEntry) -> bool:
        """Queue a traffic entry; returns False if it was not accepted."""
        return self._enqueue(self._traffic, entry, self.on_traffic_log)

    def log_access(self, entry: AccessEventEntry) -> bool:
        """Queue an access event; returns False if it was not accepted."""
        return self._enqueue(self._access, entry, self.on_access_event)

    def _enqueue(
        self,
        buffer: _EntryBuffer,
        entry: AuditEntry,
        hook: Optional[Callable[..., Any]],
    ) -> bool:
        if not self.enabled:
            return False

        if hook is not None:
            self._run_hook(hook, entry, buffer.kind)

        accepted, depth = buffer.push(entry)
        if not accepted:
            self._dropped[buffer.kind] += 1
            self._log_backpressure(buffer)
            return False

        if depth >= buffer.high_water:
            self._drain_out_of_cycle(buffer)
        return True

    def _run_hook(self, hook: Callable[..., Any], entry: AuditEntry, kind: LogKind) -> None:
        try:
            outcome = hook(entry)
        except Exception as e:
            logger.error("Audit hook failed", kind=kind.value, error=str(e))
            return
        if asyncio.iscoroutine(outcome):
            self._spawn(self._await_hook(outcome, kind))

    async def _await_hook(self, outcome: Coroutine, kind: LogKind) -> None:
        try:
            await outcome
        except Exception as e:
            logger.error("Audit hook failed", kind=kind.value, error=str(e))

    def _log_backpressure(self, buffer: _EntryBuffer) -> None:
        # First drop, every 100th drop, or at least once per minute
        dropped = self._dropped[buffer.kind]
        now = time.monotonic()
        if dropped == 1 or dropped % 100 == 0 or now - self._last_backpressure_log > 60:
            logger.warning(
                "Audit queue full, dropping entry",
                kind=buffer.kind.value,
                max_size=buffer.max_size,
                dropped=dropped,
            )
            self._last_backpressure_log = now

    def _drain_out_of_cycle(self, buffer: _EntryBuffer) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop to deliver on; entries stay queued for the next flush
            return
        batches = buffer.take_batches()
        if batches:
            logger.debug(
                "Audit high-water drain",
                kind=buffer.kind.value,
                entries=sum(len(batch) for batch in batches),
            )
            self._spawn(self._deliver_batches(buffer.kind, batches))

    def _spawn(self, coro: Coroutine) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return None
        task = loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    # Delivery

    async def _deliver(self, kind: LogKind, batch: list[AuditEntry]) -> int:
        if not batch:
            return 0
        try:
            await self.sink.append_batch(batch)
        except Exception as e:
            self._failed[kind] += len(batch)
            logger.error(
                "Audit sink write failed, batch dropped",
                kind=kind.value,
                batch_size=len(batch),
                error=str(e),
                error_type=type(e).__name__,
            )
            return 0
        self._delivered[kind] += len(batch)
        return len(batch)

    async def _deliver_batches(self, kind: LogKind, batches: list[list[AuditEntry]]) -> int:
        delivered = 0
        for batch in batches:
            delivered += await self._deliver(kind, batch)
        return delivered

    async def flush_once(self) -> int:
        """Deliver up to one batch from each buffer (one timer tick)."""
        delivered = 0
        for buffer in (self._traffic, self._access):
            delivered += await self._deliver(buffer.kind, buffer.take(buffer.batch_size))
        return delivered

    async def flush(self) -> int:
        """Wait for in-flight deliveries, then deliver everything still queued."""
        await self._wait_pending()
        delivered = 0
        for buffer in (self._traffic, self._access):
            delivered += await self._deliver_batches(buffer.kind, buffer.take_batches())
        return delivered

    async def _wait_pending(self) -> None:
        current = asyncio.current_task()
        pending = [task for task in self._pending if task is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # Retention

    async def sweep(self) -> int:
        """Delete entries older than the retention window; returns the count."""
        if self.retention_days <= 0:
            return 0
        cutoff = self.clock() - timedelta(days=self.retention_days)
        try:
            removed = await self.sink.purge_older_than(cutoff)
        except Exception as e:
            logger.error("Audit retention sweep failed", error=str(e), error_type=type(e).__name__)
            return 0
        logger.info(
            "Audit retention sweep completed",
            removed=removed,
            retention_days=self.retention_days,
        )
        return removed

    # Background tasks

    async def _flush_loop(self) -> None:
        interval = self.settings.flush_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.flush_once()
            except Exception as e:
                logger.error("Audit flush cycle failed", error=str(e))

    async def _retention_loop(self) -> None:
        await asyncio.sleep(self.settings.retention_initial_delay_seconds)
        while True:
            await self.sweep()
            await asyncio.sleep(self.settings.retention_interval_seconds)

    def start(self) -> None:
        """Start the flush timer and, if retention is enabled, the sweep timer.

        Must be called from a running event loop.
        """
        if self.running:
            return
        self._flush_task = asyncio.create_task(self._flush_loop())
        if self.retention_days > 0:
            self._retention_task = asyncio.create_task(self._retention_loop())
        logger.info(
            "Audit queue started",
            flush_interval=self.settings.flush_interval_seconds,
            retention_days=self.retention_days,
            retention_enabled=self.retention_days > 0,
        )

    async def stop(self, flush: bool = True) -> None:
        """Cancel the timers, then optionally deliver what is still queued."""
        tasks = [task for task in (self._flush_task, self._retention_task) if task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._flush_task = None
        self._retention_task = None

        if flush:
            await self.flush()
        else:
            await self._wait_pending()
        logger.info("Audit queue stopped", **self.stats())

    async def close(self) -> None:
        await self.stop()

    def stats(self) -> dict[str, Any]:
        return {
            "traffic_queued": len(self._traffic),
            "access_queued": len(self._access),
            "traffic_delivered": self._delivered[LogKind.TRAFFIC],
            "access_delivered": self._delivered[LogKind.ACCESS],
            "traffic_failed": self._failed[LogKind.TRAFFIC],
            "access_failed": self._failed[LogKind.ACCESS],
            "traffic_dropped": self._dropped[LogKind.TRAFFIC],
            "access_dropped": self._dropped[LogKind.ACCESS],
        }
