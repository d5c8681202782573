"""Data models for Sentinel access control."""

from .access_models import (
    AccessContext,
    AccessRuleOptions,
    AddressMatch,
    AddressRule,
    ApiKeyValidationRule,
    ClientInfo,
    CombinedRequirement,
    Decision,
    IpVersion,
    IpVersionRule,
    KeyStrategyName,
    RequireOptions,
    ValidationResult,
)
from .audit_models import (
    AccessEventEntry,
    AccessOutcome,
    AuditEntry,
    LogKind,
    LogQuery,
    TrafficLogEntry,
    utc_now,
)

__all__ = [
    "AccessContext",
    "AccessRuleOptions",
    "AddressMatch",
    "AddressRule",
    "ApiKeyValidationRule",
    "ClientInfo",
    "CombinedRequirement",
    "Decision",
    "IpVersion",
    "IpVersionRule",
    "KeyStrategyName",
    "RequireOptions",
    "ValidationResult",
    "AccessEventEntry",
    "AccessOutcome",
    "AuditEntry",
    "LogKind",
    "LogQuery",
    "TrafficLogEntry",
    "utc_now",
]
