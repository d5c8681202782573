"""Error taxonomy for the access-decision engine.

Two families of errors exist and they are never mixed:

Configuration errors:
    Raised while the engine is being assembled (missing default strategy,
    empty header names, nonsensical queue settings). These are fatal and are
    expected to abort application startup.

Validation errors:
    Per-request outcomes (address not allowed, key expired, scope missing...).
    The evaluator reports them as denied ``ValidationResult`` values carrying an
    ``ErrorCode``; the Guard converts a denied decision into the matching
    exception class only when a caller asks it to enforce.

Dependencies:
    - enum: For machine-readable reason codes

Used by:
    - sentinel.engine.evaluator: Reason codes on denied results
    - sentinel.engine.strategies: StrategyNotFound during resolution
    - sentinel.engine.guard: Decision to exception mapping
    - sentinel.service.dependencies: HTTP status selection
    - sentinel.config: Startup validation errors
"""

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    """Machine-distinguishable reason codes attached to denied decisions."""

    IP_NOT_ALLOWED = "IP_NOT_ALLOWED"
    IP_BLACKLISTED = "IP_BLACKLISTED"
    IP_VERSION_MISMATCH = "IP_VERSION_MISMATCH"
    API_KEY_MISSING = "API_KEY_MISSING"
    API_KEY_INVALID = "API_KEY_INVALID"
    API_KEY_EXPIRED = "API_KEY_EXPIRED"
    SCOPE_MISSING = "SCOPE_MISSING"
    COMBINED_REQUIREMENT_UNMET = "COMBINED_REQUIREMENT_UNMET"
    STRATEGY_NOT_FOUND = "STRATEGY_NOT_FOUND"
    ACCESS_DENIED = "ACCESS_DENIED"
    EVALUATION_FAILED = "EVALUATION_FAILED"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


# Codes that describe a credential problem rather than an address problem.
# The HTTP layer answers these with 401 instead of 403.
CREDENTIAL_ERROR_CODES = frozenset(
    {
        ErrorCode.API_KEY_MISSING,
        ErrorCode.API_KEY_INVALID,
        ErrorCode.API_KEY_EXPIRED,
    }
)


class SentinelError(Exception):
    """Base class for every error raised by the sentinel package."""

    code: ErrorCode = ErrorCode.ACCESS_DENIED

    def __init__(self, message: str = "", metadata: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.metadata = metadata or {}


class ConfigurationError(SentinelError):
    """Fatal startup-time configuration problem."""

    code = ErrorCode.CONFIGURATION_ERROR


class AccessValidationError(SentinelError):
    """A request was denied by the access-decision engine."""

    code = ErrorCode.ACCESS_DENIED


class IpNotAllowed(AccessValidationError):
    code = ErrorCode.IP_NOT_ALLOWED


class IpBlacklisted(AccessValidationError):
    code = ErrorCode.IP_BLACKLISTED


class IpVersionMismatch(AccessValidationError):
    code = ErrorCode.IP_VERSION_MISMATCH


class ApiKeyMissing(AccessValidationError):
    code = ErrorCode.API_KEY_MISSING


class ApiKeyInvalid(AccessValidationError):
    code = ErrorCode.API_KEY_INVALID


class ApiKeyExpired(AccessValidationError):
    code = ErrorCode.API_KEY_EXPIRED


class ScopeMissing(AccessValidationError):
    code = ErrorCode.SCOPE_MISSING


class CombinedRequirementUnmet(AccessValidationError):
    code = ErrorCode.COMBINED_REQUIREMENT_UNMET


class StrategyNotFound(AccessValidationError):
    """Named strategy is not registered; triggers fallback during resolution."""

    code = ErrorCode.STRATEGY_NOT_FOUND


class AccessDenied(AccessValidationError):
    """Generic deny produced by deny-all or custom strategies."""

    code = ErrorCode.ACCESS_DENIED


class AccessEvaluationFailed(AccessValidationError):
    """Evaluation raised unexpectedly and the Guard failed closed."""

    code = ErrorCode.EVALUATION_FAILED


_ERRORS_BY_CODE: dict[ErrorCode, type[AccessValidationError]] = {
    cls.code: cls
    for cls in (
        IpNotAllowed,
        IpBlacklisted,
        IpVersionMismatch,
        ApiKeyMissing,
        ApiKeyInvalid,
        ApiKeyExpired,
        ScopeMissing,
        CombinedRequirementUnmet,
        StrategyNotFound,
        AccessDenied,
        AccessEvaluationFailed,
    )
}


def error_for_code(code: Optional[str]) -> type[AccessValidationError]:
    """Map a reason code to its exception class.

    Unknown or missing codes map to ``AccessDenied`` so that custom strategies
    returning free-form codes still produce a deny.
    """
    if code is None:
        return AccessDenied
    try:
        return _ERRORS_BY_CODE[ErrorCode(code)]
    except (ValueError, KeyError):
        return AccessDenied
