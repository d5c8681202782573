"""Audit logging: asynchronous queue, sinks and summary statistics."""

from .queue import AuditQueue
from .sinks import AuditSink, InMemoryAuditSink
from .sqlite_sink import SqliteAuditSink
from .stats import access_event_stats, traffic_stats

__all__ = [
    "AuditQueue",
    "AuditSink",
    "InMemoryAuditSink",
    "SqliteAuditSink",
    "access_event_stats",
    "traffic_stats",
]
