"""Admin API for Sentinel Access.

Exposes key management, audit log queries and summary statistics on top of
the engine. Every ``/admin`` route is itself protected by ``require_access``
with the admin rule (by default: an API key granting ``sentinel:admin``).

Endpoints:
    GET    /healthz                    Liveness plus audit queue depths
    POST   /admin/keys                 Create a key (raw key returned once)
    GET    /admin/keys                 List keys, optionally by owner
    DELETE /admin/keys/{key_id}        Invalidate a key permanently
    POST   /admin/keys/{key_id}/rotate Replace a key, invalidating the old one
    GET    /admin/traffic              Query traffic entries
    GET    /admin/access-events        Query access events
    GET    /admin/stats                Traffic and access summaries
"""

from collections.abc import Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from ..audit.stats import access_event_stats, traffic_stats
from ..auth.models import OwnerType
from ..config import SentinelConfig, load_config
from ..container import Container, configure_services, container_lifespan
from ..models.access_models import AccessRuleOptions
from ..models.audit_models import AccessOutcome, LogKind, LogQuery
from .dependencies import get_container_from_request, require_access
from .middleware import TrafficLoggingMiddleware

logger = structlog.get_logger()

ADMIN_SCOPE = "sentinel:admin"
STATS_SAMPLE_LIMIT = 10000


def default_admin_rule() -> AccessRuleOptions:
    return AccessRuleOptions(require={"api_key": True, "scopes": [ADMIN_SCOPE]})


class CreateKeyRequest(BaseModel):
    """Request model for creating an API key."""

    owner_type: OwnerType = Field(..., description="user or service")
    owner_id: str = Field(..., min_length=1, description="Identifier of the owning principal")
    scopes: list[str] = Field(default_factory=list, description="Scopes granted to the key")
    name: Optional[str] = Field(None, description="Human-readable name")
    expires_at: Optional[datetime] = Field(None, description="Expiry instant, if any")


def _issued_key(record, raw_key: str, **extra: Any) -> dict[str, Any]:
    return {"key": raw_key, "record": record.public_view(), **extra}


def _log_query(
    kind: LogKind,
    ip: Optional[str],
    api_key_id: Optional[str],
    route: Optional[str],
    since: Optional[datetime],
    limit: int,
    decision: Optional[AccessOutcome] = None,
) -> LogQuery:
    return LogQuery(
        kind=kind,
        ip=ip,
        api_key_id=api_key_id,
        route=route,
        since=since,
        limit=limit,
        decision=decision,
    )


def create_app(
    config: Optional[SentinelConfig] = None,
    admin_rule: Optional[AccessRuleOptions] = None,
    strategies: Iterable[Any] = (),
) -> FastAPI:
    """Build the admin application around a freshly wired container.

    Args:
        config: Engine configuration; loaded from the environment when omitted
        admin_rule: Access rule protecting ``/admin`` routes
        strategies: Extra AccessStrategy instances to register

    Raises:
        ConfigurationError: If the configuration or strategy setup is invalid
    """
    config = config or load_config()
    container = configure_services(config, Container(), strategies)
    # Fail at construction, not on the first request
    container.get("guard")
    admin_access = require_access(admin_rule or default_admin_rule())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Sentinel Access API")
        async with container_lifespan(container):
            yield
        logger.info("Sentinel Access API stopped")

    app = FastAPI(
        title="Sentinel Access API",
        description="Access decisions, API key management and audit logs",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.container = container
    app.add_middleware(TrafficLoggingMiddleware)

    @app.get("/healthz")
    async def health_check(request: Request):
        """Health check endpoint for container orchestration."""
        services = get_container_from_request(request)
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "strategies": services.get("strategy_registry").names(),
            "audit": services.get("audit_queue").stats(),
        }

    @app.post("/admin/keys", status_code=201, dependencies=[Depends(admin_access)])
    async def create_key(request: Request, body: CreateKeyRequest) -> dict[str, Any]:
        store = get_container_from_request(request).get("key_store")
        try:
            record, raw_key = await store.create_key(
                body.owner_type, body.owner_id, body.scopes, body.name, body.expires_at
            )
        except Exception as e:
            logger.error("Failed to create API key", error=str(e), owner_id=body.owner_id)
            raise HTTPException(status_code=500, detail="Failed to create API key") from e
        logger.info(
            "API key created",
            key_id=record.id,
            owner_type=record.owner_type.value,
            owner_id=record.owner_id,
            extra={"security_event": True},
        )
        return _issued_key(record, raw_key)

    @app.get("/admin/keys", dependencies=[Depends(admin_access)])
    async def list_keys(
        request: Request,
        owner_type: Optional[OwnerType] = None,
        owner_id: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        store = get_container_from_request(request).get("key_store")
        if owner_type is not None and owner_id is not None:
            records = await store.list_by_owner(owner_type, owner_id)
        else:
            records = await store.list_keys()
        return [record.public_view() for record in records]

    @app.delete("/admin/keys/{key_id}", dependencies=[Depends(admin_access)])
    async def invalidate_key(request: Request, key_id: str) -> dict[str, Any]:
        store = get_container_from_request(request).get("key_store")
        if not await store.invalidate_key(key_id):
            raise HTTPException(status_code=404, detail=f"Active API key {key_id} not found")
        logger.info("API key invalidated", key_id=key_id, extra={"security_event": True})
        return {"id": key_id, "invalidated": True}

    @app.post("/admin/keys/{key_id}/rotate", dependencies=[Depends(admin_access)])
    async def rotate_key(request: Request, key_id: str) -> dict[str, Any]:
        store = get_container_from_request(request).get("key_store")
        rotated = await store.rotate_key(key_id)
        if rotated is None:
            raise HTTPException(status_code=404, detail=f"Active API key {key_id} not found")
        record, raw_key = rotated
        return _issued_key(record, raw_key, replaced=key_id)

    @app.get("/admin/traffic", dependencies=[Depends(admin_access)])
    async def query_traffic(
        request: Request,
        ip: Optional[str] = None,
        api_key_id: Optional[str] = None,
        route: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = Query(100, ge=1, le=10000),
    ) -> list[dict[str, Any]]:
        sink = get_container_from_request(request).get("audit_sink")
        query = _log_query(LogKind.TRAFFIC, ip, api_key_id, route, since, limit)
        try:
            entries = await sink.query(query)
        except Exception as e:
            logger.error("Traffic query failed", error=str(e))
            raise HTTPException(status_code=500, detail="Failed to query traffic logs") from e
        return [entry.model_dump(mode="json") for entry in entries]

    @app.get("/admin/access-events", dependencies=[Depends(admin_access)])
    async def query_access_events(
        request: Request,
        ip: Optional[str] = None,
        api_key_id: Optional[str] = None,
        route: Optional[str] = None,
        decision: Optional[AccessOutcome] = None,
        since: Optional[datetime] = None,
        limit: int = Query(100, ge=1, le=10000),
    ) -> list[dict[str, Any]]:
        sink = get_container_from_request(request).get("audit_sink")
        query = _log_query(LogKind.ACCESS, ip, api_key_id, route, since, limit, decision)
        try:
            entries = await sink.query(query)
        except Exception as e:
            logger.error("Access event query failed", error=str(e))
            raise HTTPException(status_code=500, detail="Failed to query access events") from e
        return [entry.model_dump(mode="json") for entry in entries]

    @app.get("/admin/stats", dependencies=[Depends(admin_access)])
    async def get_stats(request: Request, since: Optional[datetime] = None) -> dict[str, Any]:
        services = get_container_from_request(request)
        sink = services.get("audit_sink")
        try:
            traffic = await sink.query(
                LogQuery(kind=LogKind.TRAFFIC, since=since, limit=STATS_SAMPLE_LIMIT)
            )
            events = await sink.query(
                LogQuery(kind=LogKind.ACCESS, since=since, limit=STATS_SAMPLE_LIMIT)
            )
        except Exception as e:
            logger.error("Failed to compute stats", error=str(e))
            raise HTTPException(status_code=500, detail="Failed to retrieve stats") from e
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "traffic": traffic_stats(traffic),
            "access_events": access_event_stats(events),
            "queue": services.get("audit_queue").stats(),
        }

    return app


if __name__ == "__main__":
    import os

    import uvicorn

    from ..logging_config import configure_logging

    configure_logging()
    uvicorn.run(
        create_app(),
        host=os.getenv("SENTINEL_HOST", "0.0.0.0"),
        port=int(os.getenv("SENTINEL_PORT", "8000")),
    )
