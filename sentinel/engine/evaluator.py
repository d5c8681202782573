"""Access policy evaluation: merged allow, deny and require rules.

The evaluator turns a ``ClientInfo``, a presented API key and the rule set
for the current endpoint into a single ``ValidationResult``. Rules are
checked in a fixed order and evaluation stops at the first failing step:

Evaluation Order:
    1. skip_guard: allow immediately
    2. ip_version: deny when the client's address family differs
    3. deny list: deny on the first matching pattern
    4. allow list: deny when no pattern matches (an empty list restricts nothing)
    5. require.api_key: validate the key, then require every scope
    6. require.combined: every listed presence requirement must hold

Address checks run before key validation, so a request that is going to be
rejected on its address never pays for a key lookup. Key validation is the
only step that may suspend.

Merging:
    Fields explicitly set on a route rule replace the same-named fields of
    the global policy. Lists are replaced wholesale, never concatenated.

Dependencies:
    - structlog: For decision debug logging

Used by:
    - sentinel.engine.strategies: default and address-only strategies
"""

from typing import Optional

import structlog

from ..auth.validators import (
    ApiKeyValidator,
    effective_required_scopes,
    missing_scopes,
    missing_scopes_result,
)
from ..config import SentinelConfig
from ..errors import ErrorCode
from ..models.access_models import (
    AccessContext,
    AccessRuleOptions,
    ClientInfo,
    CombinedRequirement,
    IpVersionRule,
    RequireOptions,
    ValidationResult,
)
from ..security.address_matcher import AddressMatcher, describe_rule

logger = structlog.get_logger()

# Messages for unmet combined requirements
_COMBINED_MESSAGES = {
    CombinedRequirement.IP: "Valid IP required",
    CombinedRequirement.MAC: "MAC address required",
    CombinedRequirement.API_KEY: "Valid API key required",
    CombinedRequirement.IP_VERSION: "IP version determination required",
}


def merge_rule_options(
    global_policy: Optional[AccessRuleOptions],
    route_options: Optional[AccessRuleOptions],
) -> AccessRuleOptions:
    """Overlay the fields a route set explicitly onto the global policy.

    Args:
        global_policy: Policy applied to every route, if configured
        route_options: Rules resolved for the current endpoint, if any

    Returns:
        The effective rules. With neither input the result allows everything.
    """
    if route_options is None:
        return global_policy if global_policy is not None else AccessRuleOptions()
    if global_policy is None:
        return route_options
    updates = {name: getattr(route_options, name) for name in route_options.model_fields_set}
    return global_policy.model_copy(update=updates)


class AccessPolicyEvaluator:
    """Evaluate effective access rules for one request."""

    def __init__(
        self,
        config: SentinelConfig,
        key_validator: ApiKeyValidator,
        matcher: Optional[AddressMatcher] = None,
    ):
        self.config = config
        self.key_validator = key_validator
        self.matcher = matcher or AddressMatcher()

    async def evaluate(
        self,
        client: ClientInfo,
        rules: Optional[AccessRuleOptions],
        api_key: Optional[str] = None,
        include_requirements: bool = True,
    ) -> ValidationResult:
        """Evaluate ``rules`` for ``client``.

        Args:
            client: Facts about the caller
            rules: Effective (already merged) rules; None allows everything
            api_key: Key presented by the caller, if any
            include_requirements: False skips steps 5 and 6 (address rules only)

        Returns:
            Allowed result (with the AccessContext when a key was validated)
            or the first denied result, unchanged from the step that produced it
        """
        if rules is None:
            return ValidationResult.allow()

        if rules.skip_guard:
            return ValidationResult.allow(skipped=True)

        result = self._check_ip_version(client, rules)
        if result is not None:
            return result

        result = self._check_deny_list(client, rules)
        if result is not None:
            return result

        result = self._check_allow_list(client, rules)
        if result is not None:
            return result

        context: Optional[AccessContext] = None
        require = rules.require
        if include_requirements and require is not None:
            key_validated = False
            if require.api_key:
                result = await self._check_api_key(api_key, require)
                if not result.allowed:
                    return result
                key_validated = True
                context = result.context

            if require.combined:
                result, context = await self._check_combined(
                    client, api_key, require, context, key_validated
                )
                if result is not None:
                    return result

        return ValidationResult.allow(context=context)

    def _check_ip_version(
        self, client: ClientInfo, rules: AccessRuleOptions
    ) -> Optional[ValidationResult]:
        required = IpVersionRule(rules.ip_version)
        if required == IpVersionRule.ANY:
            return None
        actual = client.ip_version.value if client.ip_version is not None else None
        if actual == required.value:
            return None
        return ValidationResult.deny(
            f"IP version {actual or 'unknown'} not allowed, {required.value} required",
            ErrorCode.IP_VERSION_MISMATCH,
            rule="ipVersion",
            required=required.value,
            actual=actual,
        )

    def _check_deny_list(
        self, client: ClientInfo, rules: AccessRuleOptions
    ) -> Optional[ValidationResult]:
        if not rules.deny:
            return None
        matched = self.matcher.first_match(client, rules.deny)
        if matched is None:
            return None
        pattern = describe_rule(matched)
        logger.warning(
            "Request matched deny rule",
            ip=client.ip,
            mac=client.mac,
            pattern=pattern,
            extra={"security_event": True},
        )
        return ValidationResult.deny(
            f"deny rule matched: {pattern}",
            ErrorCode.IP_BLACKLISTED,
            rule="deny",
            pattern=pattern,
        )

    def _check_allow_list(
        self, client: ClientInfo, rules: AccessRuleOptions
    ) -> Optional[ValidationResult]:
        if not rules.allow:
            return None
        if self.matcher.first_match(client, rules.allow) is not None:
            return None
        return ValidationResult.deny(
            "IP/MAC not in allow list",
            ErrorCode.IP_NOT_ALLOWED,
            rule="allow",
            patterns=[describe_rule(rule) for rule in rules.allow],
        )

    async def _check_api_key(
        self, api_key: Optional[str], require: RequireOptions
    ) -> ValidationResult:
        if not api_key:
            return ValidationResult.deny(
                "API key required but not provided",
                ErrorCode.API_KEY_MISSING,
                rule="apiKey",
                header=self.config.api_key_header,
            )

        result = await self.key_validator.validate(api_key, require.scopes, require.key_validation)
        if not result.allowed:
            return result

        # Strategies without a key record (static, function) grant no scopes
        context = result.context
        if not result.metadata.get("scopes_verified"):
            owner_type = context.owner_type if context is not None else None
            required = effective_required_scopes(self.config, require.scopes, owner_type)
            granted = context.scopes if context is not None else frozenset()
            missing = missing_scopes(required, granted)
            if missing:
                return missing_scopes_result(missing, rule="scopes")
        return result

    async def _check_combined(
        self,
        client: ClientInfo,
        api_key: Optional[str],
        require: RequireOptions,
        context: Optional[AccessContext],
        key_validated: bool,
    ) -> tuple[Optional[ValidationResult], Optional[AccessContext]]:
        for requirement in require.combined:
            requirement = CombinedRequirement(requirement)
            if requirement == CombinedRequirement.IP:
                satisfied = bool(client.ip)
            elif requirement == CombinedRequirement.MAC:
                satisfied = bool(client.mac)
            elif requirement == CombinedRequirement.IP_VERSION:
                satisfied = client.ip_version is not None
            else:
                if not key_validated and api_key:
                    # Presence of a key alone is not enough, it must validate
                    result = await self.key_validator.validate(api_key, (), require.key_validation)
                    key_validated = result.allowed
                    if result.allowed:
                        context = result.context
                satisfied = key_validated

            if not satisfied:
                message = _COMBINED_MESSAGES[requirement]
                return (
                    ValidationResult.deny(
                        f"Combined requirement '{requirement.value}' not met: {message}",
                        ErrorCode.COMBINED_REQUIREMENT_UNMET,
                        rule="combined",
                        requirement=requirement.value,
                    ),
                    context,
                )
        return None, context
