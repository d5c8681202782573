"""Audit record models: traffic entries, access events and log queries.

Entries are frozen once created. Sinks store them as-is and only the
retention sweep ever removes them.
"""

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .access_models import ClientInfo


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_entry_id() -> str:
    return uuid.uuid4().hex


def _as_utc(value: datetime) -> datetime:
    # Naive datetimes are taken as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AccessOutcome(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class LogKind(str, Enum):
    TRAFFIC = "traffic"
    ACCESS = "access"


class TrafficLogEntry(BaseModel):
    """One handled HTTP request."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_entry_id)
    method: str
    path: str
    status_code: int = Field(..., description="Response status, 500 when the handler raised")
    duration_ms: float = Field(0.0, ge=0, description="Handling time in milliseconds")
    client: ClientInfo = Field(default_factory=ClientInfo)
    api_key_id: Optional[str] = None
    user_id: Optional[str] = None
    service_id: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict, description="Sanitized request headers")
    query: dict[str, Any] = Field(default_factory=dict)
    user_agent: Optional[str] = None
    response_size: Optional[int] = None
    route_name: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)

    @field_validator("timestamp")
    @classmethod
    def ensure_aware(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def kind(self) -> LogKind:
        return LogKind.TRAFFIC


class AccessEventEntry(BaseModel):
    """One access decision taken by the Guard."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_entry_id)
    decision: AccessOutcome
    reason: Optional[str] = None
    code: Optional[str] = None
    client: ClientInfo = Field(default_factory=ClientInfo)
    api_key_id: Optional[str] = None
    method: Optional[str] = None
    path: Optional[str] = None
    strategy: Optional[str] = None
    rule_meta: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)

    @field_validator("timestamp")
    @classmethod
    def ensure_aware(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @field_validator("rule_meta")
    @classmethod
    def json_safe_meta(cls, value: dict[str, Any]) -> dict[str, Any]:
        # Strategy metadata may hold arbitrary objects; keep only their JSON form
        return json.loads(json.dumps(value, default=str))

    @property
    def kind(self) -> LogKind:
        return LogKind.ACCESS


AuditEntry = Union[TrafficLogEntry, AccessEventEntry]


class LogQuery(BaseModel):
    """Filter for reading entries back from a sink.

    ``route`` is a substring match against the request path; results are
    ordered newest first and capped at ``limit``.
    """

    kind: LogKind = LogKind.TRAFFIC
    ip: Optional[str] = None
    api_key_id: Optional[str] = None
    route: Optional[str] = None
    decision: Optional[AccessOutcome] = None
    since: Optional[datetime] = None
    limit: int = Field(100, ge=1, le=10000)

    @field_validator("since")
    @classmethod
    def ensure_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Naive datetimes are taken as UTC
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def matches(self, entry: AuditEntry) -> bool:
        """Return True when ``entry`` satisfies every set filter."""
        if entry.kind != self.kind:
            return False
        if self.ip is not None and entry.client.ip != self.ip:
            return False
        if self.api_key_id is not None and entry.api_key_id != self.api_key_id:
            return False
        if self.route is not None and self.route not in (entry.path or ""):
            return False
        if self.since is not None and entry.timestamp < self.since:
            return False
        if self.decision is not None:
            if not isinstance(entry, AccessEventEntry) or entry.decision != self.decision:
                return False
        return True
