"""API key validation strategies.

Three mutually exclusive strategies decide whether a presented key is valid:

Static:
    Membership of the key in a fixed list. Case sensitivity is configurable
    and partial matching (substring containment in either direction) is an
    explicit opt-in because it is strictly more permissive.

Function:
    A caller-supplied predicate, plain or async, receiving the raw key. Any
    exception it raises becomes a deny with a generic validation-error
    reason; it never propagates.

Store:
    Lookup against the persisted key store. Every active record's hash is
    compared until one matches, then expiry, then scopes are checked, and
    ``last_used_at`` is updated. The ``validate_api_key`` configuration hook
    replaces this lookup entirely when set.

The strategy is chosen per rule (``require.key_validation.strategy``), else by
``api_key_validation_strategy`` in the configuration, defaulting to store.

Every failure yields ``allowed=False`` with a machine-readable ``code`` from
``sentinel.errors.ErrorCode``; the evaluator surfaces it unchanged.

Dependencies:
    - hmac: For timing-safe static key comparison
    - structlog: For security event logging

Used by:
    - sentinel.engine.evaluator: Step 5 of rule evaluation
"""

import hmac
from collections.abc import Iterable
from typing import Optional

import structlog

from ..config import SentinelConfig
from ..errors import ErrorCode
from ..models.access_models import (
    AccessContext,
    ApiKeyValidationRule,
    KeyStrategyName,
    ValidationResult,
)
from ..utils import maybe_await
from .key_store import ApiKeyStore
from .models import ApiKeyRecord, OwnerType

logger = structlog.get_logger()

INVALID_KEY_REASON = "Invalid API key"
EXPIRED_KEY_REASON = "API key has expired"
VALIDATION_ERROR_REASON = "API key validation error"


def missing_scopes(required: Iterable[str], granted: Iterable[str]) -> list[str]:
    """Return required scopes absent from ``granted``, in required order."""
    granted_set = set(granted)
    missing: list[str] = []
    for scope in required:
        if scope not in granted_set and scope not in missing:
            missing.append(scope)
    return missing


def missing_scopes_result(missing: list[str], **metadata) -> ValidationResult:
    return ValidationResult.deny(
        f"Missing required scopes: {', '.join(missing)}",
        ErrorCode.SCOPE_MISSING,
        missing_scopes=missing,
        **metadata,
    )


def effective_required_scopes(
    config: SentinelConfig,
    required_scopes: Iterable[str],
    owner_type: Optional[str],
) -> list[str]:
    """Route scopes plus the service baseline for service-owned keys."""
    scopes = list(required_scopes)
    if (
        config.service_auth.enabled
        and owner_type == OwnerType.SERVICE.value
        and config.service_auth.required_scopes
    ):
        for scope in config.service_auth.required_scopes:
            if scope not in scopes:
                scopes.append(scope)
    return scopes


def _key_prefix(raw_key: str) -> str:
    return raw_key[:4] + "..." if len(raw_key) > 4 else "***"


def context_from_record(record: ApiKeyRecord) -> AccessContext:
    return AccessContext(
        api_key_id=record.id,
        owner_type=record.owner_type.value,
        owner_id=record.owner_id,
        scopes=record.scopes,
    )


class StaticKeyStrategy:
    """Accept keys found in a fixed list."""

    name = KeyStrategyName.STATIC

    def __init__(self, config: SentinelConfig):
        self.config = config

    def _settings(self, rule: Optional[ApiKeyValidationRule]) -> tuple[list[str], bool, bool]:
        keys = self.config.global_valid_api_keys
        case_sensitive = self.config.global_api_key_options.case_sensitive
        partial = self.config.global_api_key_options.allow_partial_match
        if rule is not None:
            if rule.valid_keys is not None:
                keys = rule.valid_keys
            # Only options the rule set explicitly override the globals
            if "case_sensitive" in rule.model_fields_set:
                case_sensitive = rule.case_sensitive
            if "allow_partial_match" in rule.model_fields_set:
                partial = rule.allow_partial_match
        return keys, case_sensitive, partial

    async def validate(
        self,
        raw_key: str,
        required_scopes: Iterable[str] = (),
        rule: Optional[ApiKeyValidationRule] = None,
    ) -> ValidationResult:
        keys, case_sensitive, partial = self._settings(rule)
        if not keys:
            logger.warning("Static key strategy has no keys configured")
            return ValidationResult.deny(INVALID_KEY_REASON, ErrorCode.API_KEY_INVALID, strategy="static")

        presented = raw_key if case_sensitive else raw_key.lower()
        for candidate in keys:
            if not candidate:
                continue
            expected = candidate if case_sensitive else candidate.lower()
            if hmac.compare_digest(presented.encode(), expected.encode()):
                return ValidationResult.allow(strategy="static")
            if partial and (expected in presented or presented in expected):
                return ValidationResult.allow(strategy="static", partial_match=True)

        logger.warning(
            "Static API key rejected",
            key_prefix=_key_prefix(raw_key),
            extra={"security_event": True},
        )
        return ValidationResult.deny(INVALID_KEY_REASON, ErrorCode.API_KEY_INVALID, strategy="static")


class FunctionKeyStrategy:
    """Delegate the decision to a caller-supplied predicate."""

    name = KeyStrategyName.FUNCTION

    def __init__(self, config: SentinelConfig):
        self.config = config

    async def validate(
        self,
        raw_key: str,
        required_scopes: Iterable[str] = (),
        rule: Optional[ApiKeyValidationRule] = None,
    ) -> ValidationResult:
        predicate = None
        if rule is not None and rule.validation_function is not None:
            predicate = rule.validation_function
        if predicate is None:
            predicate = self.config.global_api_key_validation
        if predicate is None:
            logger.error("Function key strategy selected but no predicate configured")
            return ValidationResult.deny(
                VALIDATION_ERROR_REASON, ErrorCode.API_KEY_INVALID, strategy="function"
            )

        try:
            outcome = await maybe_await(predicate(raw_key))
        except Exception as e:
            logger.error(
                "API key validation function raised",
                error=str(e),
                error_type=type(e).__name__,
            )
            return ValidationResult.deny(
                VALIDATION_ERROR_REASON, ErrorCode.API_KEY_INVALID, strategy="function"
            )

        if isinstance(outcome, ValidationResult):
            return outcome
        if outcome:
            return ValidationResult.allow(strategy="function")
        return ValidationResult.deny(INVALID_KEY_REASON, ErrorCode.API_KEY_INVALID, strategy="function")


class StoreKeyStrategy:
    """Validate keys against the persisted key store."""

    name = KeyStrategyName.STORE

    def __init__(self, config: SentinelConfig, key_store: Optional[ApiKeyStore]):
        self.config = config
        self.key_store = key_store

    async def _validate_with_override(
        self, raw_key: str, required_scopes: list[str]
    ) -> ValidationResult:
        try:
            outcome = await maybe_await(self.config.validate_api_key(raw_key, required_scopes))
        except Exception as e:
            logger.error("validate_api_key override raised", error=str(e), error_type=type(e).__name__)
            return ValidationResult.deny(VALIDATION_ERROR_REASON, ErrorCode.API_KEY_INVALID, strategy="store")
        # The override receives the required scopes and owns the scope check
        if isinstance(outcome, ValidationResult):
            if outcome.allowed:
                metadata = {**outcome.metadata, "scopes_verified": True}
                return outcome.model_copy(update={"metadata": metadata})
            return outcome
        if outcome:
            return ValidationResult.allow(strategy="store", scopes_verified=True)
        return ValidationResult.deny(INVALID_KEY_REASON, ErrorCode.API_KEY_INVALID, strategy="store")

    async def validate(
        self,
        raw_key: str,
        required_scopes: Iterable[str] = (),
        rule: Optional[ApiKeyValidationRule] = None,
    ) -> ValidationResult:
        """Look the key up, then check expiry, then scopes, then touch it.

        Returns:
            Allowed result carrying an ``AccessContext`` on success, otherwise
            a denied result with API_KEY_INVALID, API_KEY_EXPIRED or
            SCOPE_MISSING
        """
        required = list(required_scopes)
        if self.config.validate_api_key is not None:
            return await self._validate_with_override(raw_key, required)

        if self.key_store is None:
            logger.error("Store key strategy selected but no key store configured")
            return ValidationResult.deny(VALIDATION_ERROR_REASON, ErrorCode.API_KEY_INVALID, strategy="store")

        try:
            record = await self.key_store.find_matching(raw_key)
            if record is None:
                return ValidationResult.deny(INVALID_KEY_REASON, ErrorCode.API_KEY_INVALID, strategy="store")

            if record.is_expired():
                logger.warning(
                    "Expired API key attempted",
                    key_id=record.id,
                    extra={"security_event": True},
                )
                return ValidationResult.deny(
                    EXPIRED_KEY_REASON,
                    ErrorCode.API_KEY_EXPIRED,
                    strategy="store",
                    key_id=record.id,
                )

            effective = effective_required_scopes(self.config, required, record.owner_type.value)
            missing = missing_scopes(effective, record.scopes)
            if missing:
                return missing_scopes_result(missing, strategy="store", key_id=record.id)

            await self.key_store.touch_last_used(record.id)
        except Exception as e:
            logger.error("API key store lookup failed", error=str(e), error_type=type(e).__name__)
            return ValidationResult.deny(VALIDATION_ERROR_REASON, ErrorCode.API_KEY_INVALID, strategy="store")

        logger.info(
            "API key authenticated successfully",
            key_id=record.id,
            owner_type=record.owner_type.value,
        )
        return ValidationResult.allow(
            context=context_from_record(record), strategy="store", scopes_verified=True
        )


class ApiKeyValidator:
    """Dispatch key validation to the strategy selected for the rule."""

    def __init__(self, config: SentinelConfig, key_store: Optional[ApiKeyStore] = None):
        self.config = config
        self.key_store = key_store
        self._strategies = {
            KeyStrategyName.STATIC: StaticKeyStrategy(config),
            KeyStrategyName.FUNCTION: FunctionKeyStrategy(config),
            KeyStrategyName.STORE: StoreKeyStrategy(config, key_store),
        }

    def select_strategy(self, rule: Optional[ApiKeyValidationRule] = None) -> KeyStrategyName:
        if rule is not None and rule.strategy is not None:
            return KeyStrategyName(rule.strategy)
        return KeyStrategyName(self.config.api_key_validation_strategy)

    async def validate(
        self,
        raw_key: str,
        required_scopes: Iterable[str] = (),
        rule: Optional[ApiKeyValidationRule] = None,
    ) -> ValidationResult:
        """Validate ``raw_key`` with the rule's strategy.

        Args:
            raw_key: Key presented by the client (non-empty)
            required_scopes: Scopes the route requires
            rule: Optional per-rule strategy selection and settings

        Returns:
            ValidationResult; never raises for strategy failures
        """
        name = self.select_strategy(rule)
        return await self._strategies[name].validate(raw_key, required_scopes, rule)
