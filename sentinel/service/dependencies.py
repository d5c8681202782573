"""FastAPI dependencies connecting routes to the Guard.

Routes declare their access rules as a plain ``AccessRuleOptions`` value
passed to ``require_access``. The dependency derives the request facts, asks
the Guard for a decision and turns a deny into an HTTP error:

    - API_KEY_MISSING / API_KEY_INVALID / API_KEY_EXPIRED → 401 with
      ``WWW-Authenticate: ApiKey``
    - every other deny → 403

The decision and the effective rules are left on ``request.state`` so the
traffic middleware can attribute the request and honour ``skip_traffic_log``.
"""

from typing import Any, Callable, Optional

import structlog
from fastapi import HTTPException, Request

from ..config import SentinelConfig
from ..container import Container
from ..engine.evaluator import merge_rule_options
from ..engine.guard import AccessRequest, Guard
from ..errors import CREDENTIAL_ERROR_CODES
from ..models.access_models import AccessRuleOptions, ClientInfo, Decision
from ..security.network import derive_client_info, sanitize_headers

logger = structlog.get_logger()


def get_container_from_request(request: Request) -> Container:
    return request.app.state.container


def get_config(request: Request) -> SentinelConfig:
    return get_container_from_request(request).get("config")


def get_guard(request: Request) -> Guard:
    return get_container_from_request(request).get("guard")


def client_info_from_request(request: Request, config: SentinelConfig) -> ClientInfo:
    """Derive ClientInfo from the request headers and the peer address."""
    remote_addr = request.client.host if request.client else None
    return derive_client_info(
        request.headers,
        remote_addr,
        trust_proxy=config.trust_proxy,
        mac_header=config.client_mac_header,
    )


def _http_error(decision: Decision) -> HTTPException:
    detail = {"reason": decision.reason or "access denied", "code": decision.code}
    if decision.code in CREDENTIAL_ERROR_CODES:
        return HTTPException(
            status_code=401,
            detail=detail,
            headers={"WWW-Authenticate": "ApiKey"},
        )
    return HTTPException(status_code=403, detail=detail)


def require_access(
    rule: Optional[AccessRuleOptions] = None,
    strategy: Optional[str] = None,
    handler_strategy: Optional[str] = None,
    group_strategy: Optional[str] = None,
) -> Callable[..., Any]:
    """Build a dependency enforcing ``rule`` on a route.

    Args:
        rule: Route-level access rules; None means only the global policy applies
        strategy: Route-level strategy name
        handler_strategy: Strategy name declared for the handler
        group_strategy: Strategy name declared for the handler's group

    Returns:
        Async dependency returning the allowed Decision

    Example:
        >>> @app.get("/reports", dependencies=[Depends(require_access(
        ...     AccessRuleOptions(require={"api_key": True, "scopes": ["reports:read"]})))])
    """

    async def dependency(request: Request) -> Decision:
        config = get_config(request)
        guard = get_guard(request)

        client = client_info_from_request(request, config)
        api_key = request.headers.get(config.api_key_header) or None

        request.state.client_info = client
        request.state.access_rules = merge_rule_options(config.global_policy, rule)

        access_request = AccessRequest(
            client=client,
            api_key=api_key,
            rules=rule,
            route_strategy=strategy,
            handler_strategy=handler_strategy,
            group_strategy=group_strategy,
            method=request.method,
            path=request.url.path,
            headers=sanitize_headers(request.headers, extra_sensitive=(config.api_key_header,)),
        )
        decision = await guard.check(access_request)
        request.state.access_decision = decision

        if not decision.allowed:
            raise _http_error(decision)
        return decision

    return dependency
