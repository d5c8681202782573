"""Traffic logging middleware.

Wraps every HTTP request, measures its duration and hands a
``TrafficLogEntry`` to the audit queue once the response is known. Logging
happens after the response is produced and never changes it; a failure to
build or queue the entry is logged and swallowed.

Attribution:
    The access context left on ``request.state`` by ``require_access``
    supplies the key id and the owner (user or service). The optional
    ``identify_user_from_request`` hook may override both owner ids.
"""

import time
from typing import Any, Optional

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from ..auth.models import OwnerType
from ..config import SentinelConfig
from ..models.audit_models import TrafficLogEntry
from ..security.network import sanitize_headers, sanitize_query
from ..utils import maybe_await
from .dependencies import client_info_from_request, get_container_from_request

logger = structlog.get_logger()


def _identity_field(identification: Any, name: str) -> Optional[str]:
    if identification is None:
        return None
    if isinstance(identification, dict):
        value = identification.get(name)
    else:
        value = getattr(identification, name, None)
    return str(value) if value else None


def _route_name(request: Request) -> Optional[str]:
    route = request.scope.get("route")
    if route is not None and getattr(route, "name", None):
        return route.name
    endpoint = request.scope.get("endpoint")
    return getattr(endpoint, "__name__", None)


def _response_size(response: Optional[Response]) -> Optional[int]:
    if response is None:
        return None
    length = response.headers.get("content-length")
    if length is None or not length.isdigit():
        return None
    return int(length)


class TrafficLoggingMiddleware(BaseHTTPMiddleware):
    """Record one TrafficLogEntry per handled request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        start = time.perf_counter()
        response: Optional[Response] = None
        try:
            response = await call_next(request)
            return response
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            # No response means the application raised; log it as a 500
            status_code = response.status_code if response is not None else 500
            await self._record(request, response, status_code, duration_ms)

    async def _record(
        self,
        request: Request,
        response: Optional[Response],
        status_code: int,
        duration_ms: float,
    ) -> None:
        try:
            container = get_container_from_request(request)
            config: SentinelConfig = container.get("config")
            if not config.enable_logs:
                return

            rules = getattr(request.state, "access_rules", None) or config.global_policy
            if rules is not None and rules.skip_traffic_log:
                return

            client = getattr(request.state, "client_info", None)
            if client is None:
                client = client_info_from_request(request, config)

            decision = getattr(request.state, "access_decision", None)
            context = decision.context if decision is not None else None
            user_id, service_id = await self._identify(request, config, context)

            entry = TrafficLogEntry(
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_ms=duration_ms,
                client=client,
                api_key_id=context.api_key_id if context is not None else None,
                user_id=user_id,
                service_id=service_id,
                headers=sanitize_headers(
                    request.headers, extra_sensitive=(config.api_key_header,)
                ),
                query=sanitize_query(
                    request.query_params, extra_sensitive=(config.api_key_header,)
                ),
                user_agent=request.headers.get("user-agent"),
                response_size=_response_size(response),
                route_name=_route_name(request),
            )
            container.get("audit_queue").log_traffic(entry)
        except Exception as e:
            logger.error(
                "Failed to record traffic",
                path=request.url.path,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _identify(
        self, request: Request, config: SentinelConfig, context
    ) -> tuple[Optional[str], Optional[str]]:
        user_id: Optional[str] = None
        service_id: Optional[str] = None
        if context is not None:
            if context.owner_type == OwnerType.USER.value:
                user_id = context.owner_id
            elif context.owner_type == OwnerType.SERVICE.value:
                service_id = context.owner_id

        if config.identify_user_from_request is not None:
            try:
                identification = await maybe_await(config.identify_user_from_request(request))
            except Exception as e:
                logger.warning("User identification hook failed", error=str(e))
                return user_id, service_id
            user_id = _identity_field(identification, "user_id") or user_id
            service_id = _identity_field(identification, "service_id") or service_id

        return user_id, service_id
