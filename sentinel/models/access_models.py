"""Pydantic models describing access rules, request facts and decisions.

These models form the data contract between the routing layer and the
access-decision engine. The routing layer resolves an ``AccessRuleOptions``
value per endpoint and derives one ``ClientInfo`` per request; the engine
answers with a ``ValidationResult`` (aliased ``Decision``).

Dependencies:
    - pydantic: For validated, immutable request facts and rule options

Used by:
    - sentinel.security.address_matcher: ClientInfo and AddressMatch
    - sentinel.engine.evaluator: Rule merging and evaluation
    - sentinel.engine.strategies: ValidationContext and results
    - sentinel.service.dependencies: Rule declaration on FastAPI routes
"""

from enum import Enum
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class IpVersion(str, Enum):
    """Address family of a concrete client address."""

    IPV4 = "ipv4"
    IPV6 = "ipv6"


class IpVersionRule(str, Enum):
    """Address family constraint declared on a rule."""

    IPV4 = "ipv4"
    IPV6 = "ipv6"
    ANY = "any"


class CombinedRequirement(str, Enum):
    """Requirement kinds accepted in ``require.combined``.

    Values keep the wire spelling used in rule documents so that rules loaded
    from JSON or YAML keep working unchanged.
    """

    IP = "ip"
    MAC = "mac"
    API_KEY = "apiKey"
    IP_VERSION = "ipVersion"


class KeyStrategyName(str, Enum):
    """API key validation strategies."""

    STATIC = "static"
    FUNCTION = "function"
    STORE = "store"


# Accepted spellings for combined requirements besides the enum values
_COMBINED_ALIASES = {
    "address": CombinedRequirement.IP,
    "api_key": CombinedRequirement.API_KEY,
    "apikey": CombinedRequirement.API_KEY,
    "key": CombinedRequirement.API_KEY,
    "ip_version": CombinedRequirement.IP_VERSION,
    "ipversion": CombinedRequirement.IP_VERSION,
}


class ClientInfo(BaseModel):
    """Network facts about the calling client, derived once per request."""

    model_config = ConfigDict(frozen=True)

    ip: str = Field("", description="Client IP address as seen by the service")
    # None when the address could not be parsed
    ip_version: Optional[IpVersion] = Field(None, description="Address family of ip")
    mac: Optional[str] = Field(None, description="Normalized MAC address (AA-BB-CC-DD-EE-FF)")


class AddressMatch(BaseModel):
    """Compound address pattern usable inside allow and deny lists.

    Matches when any ``any_of`` pattern matches, or when ``all_of`` is
    non-empty and every one of its patterns matches.
    """

    model_config = ConfigDict(frozen=True)

    any_of: list[str] = Field(default_factory=list, description="Patterns of which one must match")
    all_of: list[str] = Field(default_factory=list, description="Patterns that must all match")


AddressRule = Union[str, AddressMatch]


class ApiKeyValidationRule(BaseModel):
    """Per-rule selection and settings of the API key validation strategy."""

    strategy: Optional[KeyStrategyName] = Field(
        None, description="Key strategy; falls back to the global setting when unset"
    )
    valid_keys: Optional[list[str]] = Field(None, description="Keys accepted by the static strategy")
    validation_function: Optional[Callable[..., Any]] = Field(
        None, description="Predicate used by the function strategy"
    )
    case_sensitive: bool = Field(True, description="Static strategy case sensitivity")
    allow_partial_match: bool = Field(
        False, description="Static strategy substring matching in either direction"
    )


class RequireOptions(BaseModel):
    """Credential and presence requirements of a rule."""

    api_key: bool = Field(False, description="Whether a valid API key is required")
    scopes: list[str] = Field(default_factory=list, description="Scopes the key must grant")
    combined: list[CombinedRequirement] = Field(
        default_factory=list, description="Ordered presence requirements that must all hold"
    )
    key_validation: Optional[ApiKeyValidationRule] = Field(
        None, description="Key strategy override for this rule"
    )

    @field_validator("combined", mode="before")
    @classmethod
    def normalize_combined(cls, value: Any) -> Any:
        """Accept snake_case and lowercase aliases for combined requirements."""
        if not isinstance(value, (list, tuple)):
            return value
        normalized = []
        for item in value:
            if isinstance(item, str) and not isinstance(item, CombinedRequirement):
                key = item.strip().lower()
                item = _COMBINED_ALIASES.get(key, key)
            normalized.append(item)
        return normalized


class AccessRuleOptions(BaseModel):
    """Resolved access rules for one endpoint (or the global policy).

    Only fields that were explicitly set take part in merging with the
    global policy; see ``sentinel.engine.evaluator.merge_rule_options``.
    """

    allow: list[AddressRule] = Field(default_factory=list, description="Allowed address patterns")
    deny: list[AddressRule] = Field(default_factory=list, description="Denied address patterns")
    require: Optional[RequireOptions] = Field(None, description="Credential requirements")
    ip_version: IpVersionRule = Field(IpVersionRule.ANY, description="Required address family")
    skip_guard: bool = Field(False, description="Bypass access evaluation")
    skip_traffic_log: bool = Field(False, description="Do not record traffic for this endpoint")
    skip_access_log: bool = Field(False, description="Do not record access events for this endpoint")
    strategy: Optional[str] = Field(None, description="Route-level strategy name")
    note: Optional[str] = Field(None, description="Free-form description of the rule")


class AccessContext(BaseModel):
    """Identity established by a successful API key validation."""

    model_config = ConfigDict(frozen=True)

    api_key_id: Optional[str] = None
    owner_type: Optional[str] = None
    owner_id: Optional[str] = None
    scopes: frozenset[str] = Field(default_factory=frozenset)


class ValidationResult(BaseModel):
    """Outcome of a validation step, a strategy, or the whole evaluation."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: Optional[str] = None
    code: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    context: Optional[AccessContext] = None

    @classmethod
    def allow(
        cls,
        context: Optional[AccessContext] = None,
        **metadata: Any,
    ) -> "ValidationResult":
        return cls(allowed=True, context=context, metadata=metadata)

    @classmethod
    def deny(cls, reason: str, code: Union[str, Enum], **metadata: Any) -> "ValidationResult":
        code_value = code.value if isinstance(code, Enum) else code
        return cls(allowed=False, reason=reason, code=code_value, metadata=metadata)


# A Decision is the final ValidationResult returned by the Guard
Decision = ValidationResult
