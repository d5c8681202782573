"""Sentinel Access: access decisions for HTTP services with asynchronous audit logging."""

from .audit import AuditQueue, InMemoryAuditSink, SqliteAuditSink
from .config import SentinelConfig, load_config
from .engine import AccessRequest, Guard
from .errors import AccessValidationError, ConfigurationError, ErrorCode, SentinelError
from .models import AccessRuleOptions, ClientInfo, Decision, ValidationResult

__version__ = "1.0.0"

__all__ = [
    "AuditQueue",
    "InMemoryAuditSink",
    "SqliteAuditSink",
    "SentinelConfig",
    "load_config",
    "AccessRequest",
    "Guard",
    "AccessValidationError",
    "ConfigurationError",
    "ErrorCode",
    "SentinelError",
    "AccessRuleOptions",
    "ClientInfo",
    "Decision",
    "ValidationResult",
]
