"""Summary statistics over audit entries, served by the admin API."""

from collections import Counter
from collections.abc import Iterable
from typing import Any

from ..models.audit_models import AccessEventEntry, AccessOutcome, TrafficLogEntry

TOP_ENDPOINTS = 10
TOP_DENIED_REASONS = 5


def traffic_stats(entries: Iterable[TrafficLogEntry]) -> dict[str, Any]:
    """Aggregate request volume, latency and status distribution."""
    entries = list(entries)
    if not entries:
        return {
            "total_requests": 0,
            "unique_ips": 0,
            "average_response_time_ms": 0.0,
            "status_code_distribution": {},
            "top_endpoints": [],
        }

    statuses = Counter(str(entry.status_code) for entry in entries)
    endpoints = Counter(f"{entry.method} {entry.path}" for entry in entries)
    total_duration = sum(entry.duration_ms for entry in entries)

    return {
        "total_requests": len(entries),
        "unique_ips": len({entry.client.ip for entry in entries if entry.client.ip}),
        "average_response_time_ms": round(total_duration / len(entries), 3),
        "status_code_distribution": dict(statuses),
        "top_endpoints": [
            {"endpoint": endpoint, "count": count}
            for endpoint, count in endpoints.most_common(TOP_ENDPOINTS)
        ],
    }


def access_event_stats(entries: Iterable[AccessEventEntry]) -> dict[str, Any]:
    entries = list(entries)
    allowed = sum(1 for entry in entries if entry.decision == AccessOutcome.ALLOW)
    reasons = Counter(
        entry.reason or "unspecified"
        for entry in entries
        if entry.decision == AccessOutcome.DENY
    )
    return {
        "total": len(entries),
        "allowed": allowed,
        "denied": len(entries) - allowed,
        "top_denied_reasons": [
            {"reason": reason, "count": count}
            for reason, count in reasons.most_common(TOP_DENIED_REASONS)
        ],
    }
