"""Test audit sinks (in-memory and SQLite) and summary statistics."""

from datetime import datetime, timedelta, timezone

import pytest

from sentinel.audit.sinks import InMemoryAuditSink
from sentinel.audit.sqlite_sink import SqliteAuditSink
from sentinel.audit.stats import access_event_stats, traffic_stats
from sentinel.models.access_models import ClientInfo
from sentinel.models.audit_models import (
    AccessEventEntry,
    AccessOutcome,
    LogKind,
    LogQuery,
    TrafficLogEntry,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class Principal:
    def __init__(self, name):
        self.name = name

    def __str__(self):
        return f"Principal({self.name})"


def traffic(path="/items", ip="10.0.0.5", minutes_ago=0, **kwargs):
    kwargs.setdefault("status_code", 200)
    return TrafficLogEntry(
        method=kwargs.pop("method", "GET"),
        path=path,
        client=ClientInfo(ip=ip),
        timestamp=NOW - timedelta(minutes=minutes_ago),
        **kwargs,
    )


def event(decision=AccessOutcome.ALLOW, reason=None, minutes_ago=0, **kwargs):
    return AccessEventEntry(
        decision=decision,
        reason=reason,
        client=ClientInfo(ip=kwargs.pop("ip", "10.0.0.5")),
        path=kwargs.pop("path", "/items"),
        timestamp=NOW - timedelta(minutes=minutes_ago),
        **kwargs,
    )


@pytest.fixture(params=["memory", "sqlite"])
def sink(request, tmp_path):
    if request.param == "memory":
        return InMemoryAuditSink()
    return SqliteAuditSink(str(tmp_path / "audit" / "audit.db"))


class TestAuditSink:
    """Test the sink contract on every implementation."""

    @pytest.mark.asyncio
    async def test_append_and_query(self, sink):
        entry = traffic(api_key_id="key-1", headers={"x-api-key": "[REDACTED]"})
        await sink.append(entry)

        (stored,) = await sink.query(LogQuery(kind=LogKind.TRAFFIC))

        assert stored.id == entry.id
        assert stored.headers == {"x-api-key": "[REDACTED]"}
        assert stored.timestamp == entry.timestamp

    @pytest.mark.asyncio
    async def test_append_batch(self, sink):
        entries = [traffic(minutes_ago=i) for i in range(5)] + [event()]
        assert await sink.append_batch(entries) == 6

        assert len(await sink.query(LogQuery(kind=LogKind.TRAFFIC))) == 5
        assert len(await sink.query(LogQuery(kind=LogKind.ACCESS))) == 1

    @pytest.mark.asyncio
    async def test_newest_first_and_limit(self, sink):
        entries = [traffic(path=f"/p{i}", minutes_ago=i) for i in range(5)]
        await sink.append_batch(entries)

        result = await sink.query(LogQuery(kind=LogKind.TRAFFIC, limit=2))

        assert [entry.path for entry in result] == ["/p0", "/p1"]

    @pytest.mark.asyncio
    async def test_filters(self, sink):
        await sink.append_batch(
            [
                traffic(path="/reports/daily", ip="10.0.0.1", api_key_id="k1", minutes_ago=5),
                traffic(path="/reports/weekly", ip="10.0.0.2", api_key_id="k2", minutes_ago=90),
                traffic(path="/health", ip="10.0.0.1", minutes_ago=1),
            ]
        )

        by_ip = await sink.query(LogQuery(ip="10.0.0.1"))
        by_key = await sink.query(LogQuery(api_key_id="k2"))
        by_route = await sink.query(LogQuery(route="/reports"))
        recent = await sink.query(LogQuery(since=NOW - timedelta(minutes=30)))

        assert {entry.path for entry in by_ip} == {"/reports/daily", "/health"}
        assert [entry.path for entry in by_key] == ["/reports/weekly"]
        assert {entry.path for entry in by_route} == {"/reports/daily", "/reports/weekly"}
        assert {entry.path for entry in recent} == {"/reports/daily", "/health"}

    @pytest.mark.asyncio
    async def test_decision_filter(self, sink):
        await sink.append_batch(
            [event(), event(AccessOutcome.DENY, "deny rule matched: 10.0.0.5")]
        )

        denied = await sink.query(LogQuery(kind=LogKind.ACCESS, decision=AccessOutcome.DENY))

        assert len(denied) == 1
        assert denied[0].reason == "deny rule matched: 10.0.0.5"

    @pytest.mark.asyncio
    async def test_purge_older_than(self, sink):
        await sink.append_batch(
            [traffic(minutes_ago=10), traffic(minutes_ago=120), event(minutes_ago=180)]
        )

        removed = await sink.purge_older_than(NOW - timedelta(hours=1))

        assert removed == 2
        assert len(await sink.query(LogQuery(kind=LogKind.TRAFFIC))) == 1
        assert await sink.query(LogQuery(kind=LogKind.ACCESS)) == []

    @pytest.mark.asyncio
    async def test_naive_cutoff_is_utc(self, sink):
        await sink.append(traffic(minutes_ago=120))
        removed = await sink.purge_older_than(NOW.replace(tzinfo=None) - timedelta(hours=1))
        assert removed == 1


class TestSqliteAuditSink:
    """Test SQLite specifics."""

    @pytest.mark.asyncio
    async def test_opaque_rule_meta_does_not_sink_batch(self, tmp_path):
        """Metadata objects without a JSON form are stored as their string form."""
        sink = SqliteAuditSink(str(tmp_path / "audit.db"))
        entries = [event() for _ in range(10)]
        entries.append(event(rule_meta={"user": Principal("alice"), "tags": ("a", "b")}))

        assert await sink.append_batch(entries) == 11

        stored = await sink.query(LogQuery(kind=LogKind.ACCESS))
        assert {entry.id for entry in stored} == {entry.id for entry in entries}
        assert entries[-1].rule_meta == {"user": "Principal(alice)", "tags": ["a", "b"]}

    @pytest.mark.asyncio
    async def test_redelivered_entry_is_stored_once(self, tmp_path):
        sink = SqliteAuditSink(str(tmp_path / "audit.db"))
        entry = traffic()

        await sink.append_batch([entry])
        await sink.append_batch([entry])

        assert len(await sink.query(LogQuery())) == 1

    @pytest.mark.asyncio
    async def test_entries_survive_reopen(self, tmp_path):
        path = str(tmp_path / "audit.db")
        await SqliteAuditSink(path).append(event(AccessOutcome.DENY, "IP/MAC not in allow list"))

        (stored,) = await SqliteAuditSink(path).query(LogQuery(kind=LogKind.ACCESS))

        assert stored.decision == AccessOutcome.DENY
        assert stored.reason == "IP/MAC not in allow list"


class TestStats:
    """Test summary statistics."""

    def test_traffic_stats(self):
        entries = [
            traffic(path="/a", ip="10.0.0.1", duration_ms=10.0),
            traffic(path="/a", ip="10.0.0.2", duration_ms=20.0),
            traffic(path="/b", ip="10.0.0.1", duration_ms=30.0, status_code=404),
            traffic(path="/b", ip="", method="POST", duration_ms=0.5),
        ]

        stats = traffic_stats(entries)

        assert stats["total_requests"] == 4
        assert stats["unique_ips"] == 2
        assert stats["average_response_time_ms"] == 15.125
        assert stats["status_code_distribution"] == {"200": 3, "404": 1}
        assert stats["top_endpoints"][0] == {"endpoint": "GET /a", "count": 2}

    def test_empty_traffic_stats(self):
        stats = traffic_stats([])
        assert stats["total_requests"] == 0
        assert stats["top_endpoints"] == []

    def test_access_event_stats(self):
        entries = [
            event(),
            event(AccessOutcome.DENY, "IP/MAC not in allow list"),
            event(AccessOutcome.DENY, "IP/MAC not in allow list"),
            event(AccessOutcome.DENY),
        ]

        stats = access_event_stats(entries)

        assert stats["total"] == 4
        assert stats["allowed"] == 1
        assert stats["denied"] == 3
        assert stats["top_denied_reasons"] == [
            {"reason": "IP/MAC not in allow list", "count": 2},
            {"reason": "unspecified", "count": 1},
        ]
