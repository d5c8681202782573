"""Per-request access orchestration.

The Guard is the single entry point the routing layer calls for every
request. It owns the fail-closed boundary: whatever goes wrong inside rule
evaluation, the caller receives a deny, never an exception and never an
allow.

Request Flow:
    1. skip_global_guards → allow (nothing recorded)
    2. Merge route rules over the global policy; skip_guard → allow
    3. Resolve the strategy: route → handler → group → configured default
    4. Run the strategy (awaiting once if it is asynchronous)
    5. Unexpected exception → deny "access evaluation failed"
    6. Hand an AccessEventEntry to the audit queue unless skip_access_log
    7. Return the decision

Recording never waits on persistence and recording failures never change
the decision.

Dependencies:
    - pydantic: For the AccessRequest model
    - structlog: For decision and security logging

Used by:
    - sentinel.service.dependencies: FastAPI access dependency
    - sentinel.container: Guard construction
"""

from typing import TYPE_CHECKING, Any, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

from ..config import SentinelConfig
from ..errors import ErrorCode, error_for_code
from ..models.access_models import AccessRuleOptions, ClientInfo, Decision, ValidationResult
from ..models.audit_models import AccessEventEntry, AccessOutcome
from .evaluator import merge_rule_options
from .strategies import StrategyRegistry, ValidationContext

if TYPE_CHECKING:
    from ..audit.queue import AuditQueue

logger = structlog.get_logger()

EVALUATION_FAILED_REASON = "access evaluation failed"


class AccessRequest(BaseModel):
    """Request facts and resolved rule configuration supplied by the routing layer."""

    model_config = ConfigDict(frozen=True)

    client: ClientInfo
    api_key: Optional[str] = None
    rules: Optional[AccessRuleOptions] = Field(None, description="Route rules, None if the route has none")
    route_strategy: Optional[str] = Field(None, description="Explicit route-level strategy name")
    handler_strategy: Optional[str] = Field(None, description="Strategy declared on the handler")
    group_strategy: Optional[str] = Field(None, description="Strategy declared on the handler's group")
    method: Optional[str] = None
    path: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class Guard:
    """Resolve strategies, evaluate requests, fail closed and record outcomes."""

    def __init__(
        self,
        config: SentinelConfig,
        registry: StrategyRegistry,
        audit_queue: Optional["AuditQueue"] = None,
    ):
        """Validate the configuration and the strategy registry.

        Raises:
            ConfigurationError: If the configuration is unusable or the
                configured default strategy is not registered
        """
        config.validate_for_startup()
        registry.ensure_registered(config.default_strategy)
        self.config = config
        self.registry = registry
        self.audit_queue = audit_queue

    async def check(self, request: AccessRequest) -> Decision:
        """Decide on ``request``. Never raises for evaluation problems."""
        if self.config.skip_global_guards:
            return ValidationResult.allow(skipped="global")

        strategy_name: Optional[str] = None
        rules: Optional[AccessRuleOptions] = None
        try:
            rules = merge_rule_options(self.config.global_policy, request.rules)
            if rules.skip_guard:
                return ValidationResult.allow(skipped="route")

            route_strategy = request.route_strategy or rules.strategy
            strategy = self.registry.resolve(
                [
                    ("route", route_strategy),
                    ("handler", request.handler_strategy),
                    ("group", request.group_strategy),
                ],
                self.config.default_strategy,
            )
            strategy_name = strategy.name
            context = ValidationContext(
                client=request.client,
                api_key=request.api_key,
                rules=rules,
                method=request.method,
                path=request.path,
                headers=request.headers,
                metadata=request.metadata,
            )
            decision = await self.registry.run(strategy, context)
        except Exception as e:
            logger.error(
                "Access evaluation failed",
                error=str(e),
                error_type=type(e).__name__,
                path=request.path,
                ip=request.client.ip,
                exc_info=True,
            )
            decision = ValidationResult.deny(EVALUATION_FAILED_REASON, ErrorCode.EVALUATION_FAILED)

        self._log_decision(request, decision, strategy_name)
        if rules is None or not rules.skip_access_log:
            self._record(request, decision, strategy_name, rules)
        return decision

    async def enforce(self, request: AccessRequest) -> Decision:
        """Like ``check`` but raise the matching AccessValidationError on deny."""
        decision = await self.check(request)
        if not decision.allowed:
            error_class = error_for_code(decision.code)
            raise error_class(decision.reason or "access denied", dict(decision.metadata))
        return decision

    def _log_decision(
        self, request: AccessRequest, decision: Decision, strategy_name: Optional[str]
    ) -> None:
        if decision.allowed:
            logger.debug(
                "Access allowed",
                path=request.path,
                ip=request.client.ip,
                strategy=strategy_name,
                api_key_id=decision.context.api_key_id if decision.context else None,
            )
        else:
            logger.warning(
                "Access denied",
                path=request.path,
                ip=request.client.ip,
                mac=request.client.mac,
                strategy=strategy_name,
                reason=decision.reason,
                code=decision.code,
                extra={"security_event": True},
            )

    def _record(
        self,
        request: AccessRequest,
        decision: Decision,
        strategy_name: Optional[str],
        rules: Optional[AccessRuleOptions],
    ) -> None:
        if self.audit_queue is None:
            return
        rule_meta = dict(decision.metadata)
        if rules is not None and rules.note:
            rule_meta["note"] = rules.note
        try:
            entry = AccessEventEntry(
                decision=AccessOutcome.ALLOW if decision.allowed else AccessOutcome.DENY,
                reason=decision.reason,
                code=decision.code,
                client=request.client,
                api_key_id=decision.context.api_key_id if decision.context else None,
                method=request.method,
                path=request.path,
                strategy=strategy_name,
                rule_meta=rule_meta,
            )
            self.audit_queue.log_access(entry)
        except Exception as e:
            logger.error("Failed to record access event", error=str(e), error_type=type(e).__name__)
