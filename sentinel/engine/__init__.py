"""Access-decision engine: rule evaluation, strategies and the Guard."""

from .evaluator import AccessPolicyEvaluator, merge_rule_options
from .guard import AccessRequest, Guard
from .strategies import (
    ADDRESS_ONLY_STRATEGY,
    ALLOW_ALL_STRATEGY,
    DEFAULT_STRATEGY,
    DENY_ALL_STRATEGY,
    AccessStrategy,
    AddressOnlyStrategy,
    AllowAllStrategy,
    DefaultStrategy,
    DenyAllStrategy,
    FunctionStrategy,
    StrategyRegistry,
    ValidationContext,
    create_default_registry,
)

__all__ = [
    "AccessPolicyEvaluator",
    "merge_rule_options",
    "AccessRequest",
    "Guard",
    "ADDRESS_ONLY_STRATEGY",
    "ALLOW_ALL_STRATEGY",
    "DEFAULT_STRATEGY",
    "DENY_ALL_STRATEGY",
    "AccessStrategy",
    "AddressOnlyStrategy",
    "AllowAllStrategy",
    "DefaultStrategy",
    "DenyAllStrategy",
    "FunctionStrategy",
    "StrategyRegistry",
    "ValidationContext",
    "create_default_registry",
]
