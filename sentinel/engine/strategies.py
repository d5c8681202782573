"""Named whole-request validation strategies and their registry.

A strategy receives the full ``ValidationContext`` of a request and returns a
``ValidationResult`` (or an awaitable resolving to one). Strategies are
registered once at startup under a unique name and selected per request by
name.

Built-in Strategies:
    - default: full rule evaluation (addresses, key, scopes, combined)
    - allow-all: allows every request; intended for development only
    - deny-all: denies every request
    - address-only: address rules only, key requirements are ignored

Resolution Cascade:
    route-level name → handler-level name → group-level name → configured
    default. A name that is not registered logs a warning and the cascade
    moves on. An unregistered default is a configuration error raised at
    startup (see ``StrategyRegistry.ensure_registered``).

Dependencies:
    - threading: For registration safety
    - structlog: For fallback warnings

Used by:
    - sentinel.engine.guard: Strategy resolution and invocation
    - sentinel.container: Registry construction
"""

import threading
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Iterable
from typing import Any, Callable, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field

from ..errors import ConfigurationError, ErrorCode, StrategyNotFound
from ..models.access_models import AccessRuleOptions, ClientInfo, ValidationResult
from ..utils import maybe_await
from .evaluator import AccessPolicyEvaluator

logger = structlog.get_logger()

DEFAULT_STRATEGY = "default"
ALLOW_ALL_STRATEGY = "allow-all"
DENY_ALL_STRATEGY = "deny-all"
ADDRESS_ONLY_STRATEGY = "address-only"

StrategyOutcome = Union[ValidationResult, Awaitable[ValidationResult]]


class ValidationContext(BaseModel):
    """Everything a strategy may look at for one request."""

    model_config = ConfigDict(frozen=True)

    client: ClientInfo
    api_key: Optional[str] = None
    rules: Optional[AccessRuleOptions] = None
    method: Optional[str] = None
    path: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class AccessStrategy(ABC):
    """Base class for named request validation strategies."""

    name: str = ""
    description: str = ""

    @abstractmethod
    def validate(self, context: ValidationContext) -> StrategyOutcome:
        """Decide on the request described by ``context``."""


class DefaultStrategy(AccessStrategy):
    name = DEFAULT_STRATEGY
    description = "Evaluates address rules, API keys, scopes and combined requirements"

    def __init__(self, evaluator: AccessPolicyEvaluator):
        self.evaluator = evaluator

    async def validate(self, context: ValidationContext) -> ValidationResult:
        return await self.evaluator.evaluate(context.client, context.rules, context.api_key)


class AllowAllStrategy(AccessStrategy):
    name = ALLOW_ALL_STRATEGY
    description = "Allows every request (development only)"

    def validate(self, context: ValidationContext) -> ValidationResult:
        return ValidationResult.allow(warning="allow-all strategy bypasses every rule")


class DenyAllStrategy(AccessStrategy):
    name = DENY_ALL_STRATEGY
    description = "Denies every request"

    def validate(self, context: ValidationContext) -> ValidationResult:
        return ValidationResult.deny("Access denied by deny-all strategy", ErrorCode.ACCESS_DENIED)


class AddressOnlyStrategy(AccessStrategy):
    name = ADDRESS_ONLY_STRATEGY
    description = "Evaluates address rules only, ignoring key requirements"

    def __init__(self, evaluator: AccessPolicyEvaluator):
        self.evaluator = evaluator

    async def validate(self, context: ValidationContext) -> ValidationResult:
        return await self.evaluator.evaluate(
            context.client, context.rules, context.api_key, include_requirements=False
        )


class FunctionStrategy(AccessStrategy):
    """Adapt a plain or async callable to the strategy interface."""

    def __init__(
        self,
        name: str,
        func: Callable[[ValidationContext], Any],
        description: str = "",
    ):
        self.name = name
        self.func = func
        self.description = description

    def validate(self, context: ValidationContext) -> StrategyOutcome:
        return self.func(context)


def _coerce_result(strategy_name: str, outcome: Any) -> ValidationResult:
    if isinstance(outcome, ValidationResult):
        return outcome
    if isinstance(outcome, bool):
        if outcome:
            return ValidationResult.allow(strategy=strategy_name)
        return ValidationResult.deny(
            f"Access denied by {strategy_name} strategy", ErrorCode.ACCESS_DENIED
        )
    raise TypeError(
        f"Strategy {strategy_name!r} returned {type(outcome).__name__}, expected ValidationResult"
    )


class StrategyRegistry:
    """Thread-safe name → strategy lookup with cascade resolution."""

    def __init__(self, strategies: Iterable[AccessStrategy] = ()):
        self._strategies: dict[str, AccessStrategy] = {}
        self._lock = threading.Lock()
        for strategy in strategies:
            self.register(strategy)

    def register(self, strategy: AccessStrategy) -> "StrategyRegistry":
        """Register ``strategy`` under its name, replacing any previous one."""
        if not strategy.name:
            raise ConfigurationError("Strategies must have a non-empty name")
        with self._lock:
            replaced = strategy.name in self._strategies
            self._strategies[strategy.name] = strategy
        if replaced:
            logger.warning("Strategy replaced", strategy=strategy.name)
        else:
            logger.debug("Strategy registered", strategy=strategy.name)
        return self

    def unregister(self, name: str) -> bool:
        with self._lock:
            return self._strategies.pop(name, None) is not None

    def get(self, name: str) -> Optional[AccessStrategy]:
        with self._lock:
            return self._strategies.get(name)

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._strategies

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._strategies)

    def clear(self) -> None:
        with self._lock:
            self._strategies.clear()

    def require(self, name: str) -> AccessStrategy:
        """Return the named strategy.

        Raises:
            StrategyNotFound: If ``name`` is not registered
        """
        strategy = self.get(name)
        if strategy is None:
            raise StrategyNotFound(f"Strategy not found: {name}", {"strategy": name})
        return strategy

    def ensure_registered(self, default_name: str) -> None:
        """Fail startup when the final fallback strategy is missing.

        Raises:
            ConfigurationError: If ``default_name`` is not registered
        """
        if not self.has(default_name):
            raise ConfigurationError(
                f"Default strategy {default_name!r} is not registered "
                f"(registered: {', '.join(self.names()) or 'none'})"
            )

    def resolve(
        self,
        candidates: Iterable[tuple[str, Optional[str]]],
        default_name: str,
    ) -> AccessStrategy:
        """Walk the resolution cascade and return the first registered strategy.

        Args:
            candidates: ``(level, name)`` pairs in cascade order; None names
                are skipped
            default_name: Final fallback

        Raises:
            ConfigurationError: If the fallback itself is not registered
        """
        for level, name in candidates:
            if not name:
                continue
            try:
                return self.require(name)
            except StrategyNotFound:
                logger.warning(
                    "Strategy not found, falling back",
                    strategy=name,
                    level=level,
                    fallback=default_name,
                )
        try:
            return self.require(default_name)
        except StrategyNotFound as e:
            raise ConfigurationError(f"Default strategy {default_name!r} is not registered") from e

    async def run(self, strategy: AccessStrategy, context: ValidationContext) -> ValidationResult:
        """Invoke a strategy, awaiting once if it returned an awaitable."""
        outcome = await maybe_await(strategy.validate(context))
        return _coerce_result(strategy.name, outcome)


def create_default_registry(
    evaluator: AccessPolicyEvaluator,
    custom: Iterable[AccessStrategy] = (),
) -> StrategyRegistry:
    """Registry with the built-in strategies plus ``custom`` ones."""
    registry = StrategyRegistry(
        [
            DefaultStrategy(evaluator),
            AllowAllStrategy(),
            DenyAllStrategy(),
            AddressOnlyStrategy(evaluator),
        ]
    )
    for strategy in custom:
        registry.register(strategy)
    return registry
