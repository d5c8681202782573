"""Test the FastAPI integration: route protection, traffic logging and the admin API."""

import asyncio

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient

from sentinel.auth.models import OwnerType
from sentinel.config import AuditSettings, SentinelConfig
from sentinel.engine.strategies import FunctionStrategy
from sentinel.models.access_models import AccessRuleOptions
from sentinel.models.audit_models import AccessEventEntry, AccessOutcome, LogKind, TrafficLogEntry
from sentinel.security.network import REDACTED
from sentinel.service.dependencies import require_access
from sentinel.service.main import ADMIN_SCOPE, create_app

READ_RULE = AccessRuleOptions(require={"api_key": True, "scopes": ["read"]})


def build_app(config, **kwargs):
    """Admin app plus a few protected routes."""
    app = create_app(config, **kwargs)

    @app.get("/items", dependencies=[Depends(require_access(READ_RULE))])
    async def list_items():
        return {"items": [1, 2, 3]}

    @app.get("/blocked", dependencies=[Depends(require_access(AccessRuleOptions(deny=["10.0.0.5"])))])
    async def blocked():
        return {"ok": True}

    @app.get("/quiet", dependencies=[Depends(require_access(AccessRuleOptions(skip_traffic_log=True)))])
    async def quiet():
        return {"ok": True}

    @app.get("/closed", dependencies=[Depends(require_access(strategy="closed"))])
    async def closed():
        return {"ok": True}

    @app.get("/broken")
    async def broken():
        raise RuntimeError("handler bug")

    return app


def services(app):
    return app.state.container


@pytest.fixture
def service_config() -> SentinelConfig:
    return SentinelConfig(
        key_hash_iterations=1000,
        audit=AuditSettings(flush_interval_seconds=3600),
    )


@pytest.fixture
def app(service_config):
    return build_app(service_config, strategies=[FunctionStrategy("closed", lambda context: False)])


@pytest.fixture
def key_store(app):
    return services(app).get("key_store")


@pytest.fixture
def audit_sink(app):
    return services(app).get("audit_sink")


@pytest.fixture
def admin_headers(key_store):
    _, raw_key = asyncio.run(key_store.create_key(OwnerType.SERVICE, "ops", [ADMIN_SCOPE]))
    return {"X-API-Key": raw_key}


@pytest.fixture
def reader(key_store):
    """(record, raw key) for a user key granting read."""
    return asyncio.run(key_store.create_key(OwnerType.USER, "alice", ["read"]))


def traffic_for(sink, path):
    return [entry for entry in sink.all_entries(LogKind.TRAFFIC) if entry.path == path]


class TestRouteProtection:
    """Test HTTP mapping of access decisions."""

    def test_missing_key_is_401(self, app):
        with TestClient(app) as client:
            response = client.get("/items")

        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "ApiKey"
        assert response.json()["detail"] == {
            "reason": "API key required but not provided",
            "code": "API_KEY_MISSING",
        }

    def test_invalid_key_is_401(self, app):
        with TestClient(app) as client:
            response = client.get("/items", headers={"X-API-Key": "ak_wrong"})
        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "API_KEY_INVALID"

    def test_valid_key(self, app, reader):
        _, raw_key = reader
        with TestClient(app) as client:
            response = client.get("/items", headers={"X-API-Key": raw_key})
        assert response.status_code == 200
        assert response.json() == {"items": [1, 2, 3]}

    def test_missing_scope_is_403(self, app, key_store):
        _, raw_key = asyncio.run(key_store.create_key(OwnerType.USER, "bob", ["write"]))
        with TestClient(app) as client:
            response = client.get("/items", headers={"X-API-Key": raw_key})
        assert response.status_code == 403
        assert response.json()["detail"] == {
            "reason": "Missing required scopes: read",
            "code": "SCOPE_MISSING",
        }

    def test_deny_rule_is_403(self, app):
        with TestClient(app) as client:
            denied = client.get("/blocked", headers={"X-Forwarded-For": "10.0.0.5"})
            allowed = client.get("/blocked", headers={"X-Forwarded-For": "10.0.0.6"})

        assert denied.status_code == 403
        assert denied.json()["detail"]["reason"] == "deny rule matched: 10.0.0.5"
        assert allowed.status_code == 200

    def test_route_strategy(self, app):
        with TestClient(app) as client:
            response = client.get("/closed")
        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "ACCESS_DENIED"

    def test_skip_global_guards(self, service_config):
        config = service_config.model_copy(update={"skip_global_guards": True})
        with TestClient(build_app(config)) as client:
            assert client.get("/items").status_code == 200

    def test_global_policy(self, service_config):
        config = service_config.model_copy(
            update={"global_policy": AccessRuleOptions(allow=["192.168.0.0/16"])}
        )
        with TestClient(build_app(config)) as client:
            response = client.get("/quiet", headers={"X-Forwarded-For": "10.0.0.5"})
        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "IP_NOT_ALLOWED"

    def test_access_events_recorded(self, app, audit_sink):
        with TestClient(app) as client:
            client.get("/blocked", headers={"X-Forwarded-For": "10.0.0.5"})

        events = [e for e in audit_sink.all_entries(LogKind.ACCESS) if e.path == "/blocked"]
        assert len(events) == 1
        assert events[0].decision == AccessOutcome.DENY
        assert events[0].method == "GET"


class TestTrafficLogging:
    """Test the traffic logging middleware."""

    def test_request_is_logged(self, app, audit_sink, reader):
        record, raw_key = reader
        with TestClient(app) as client:
            client.get(
                "/items?page=2",
                headers={"X-API-Key": raw_key, "User-Agent": "pytest", "X-Forwarded-For": "203.0.113.7"},
            )

        (entry,) = traffic_for(audit_sink, "/items")
        assert entry.method == "GET"
        assert entry.status_code == 200
        assert entry.duration_ms >= 0
        assert entry.client.ip == "203.0.113.7"
        assert entry.api_key_id == record.id
        assert entry.user_id == "alice"
        assert entry.service_id is None
        assert entry.headers["x-api-key"] == REDACTED
        assert raw_key not in entry.model_dump_json()
        assert entry.query == {"page": "2"}
        assert entry.user_agent == "pytest"
        assert entry.route_name == "list_items"
        assert entry.response_size is not None

    def test_query_credentials_are_redacted(self, app, audit_sink, reader):
        _, raw_key = reader
        with TestClient(app) as client:
            client.get(f"/items?page=2&api_key={raw_key}", headers={"X-API-Key": raw_key})

        (entry,) = traffic_for(audit_sink, "/items")
        assert entry.query == {"page": "2", "api_key": REDACTED}
        assert raw_key not in entry.model_dump_json()

    def test_denied_request_is_logged(self, app, audit_sink):
        with TestClient(app) as client:
            client.get("/items")

        (entry,) = traffic_for(audit_sink, "/items")
        assert entry.status_code == 401
        assert entry.api_key_id is None

    def test_skip_traffic_log(self, app, audit_sink):
        with TestClient(app) as client:
            assert client.get("/quiet").status_code == 200
        assert traffic_for(audit_sink, "/quiet") == []

    def test_handler_exception_logged_as_500(self, app, audit_sink):
        with TestClient(app, raise_server_exceptions=False) as client:
            assert client.get("/broken").status_code == 500

        (entry,) = traffic_for(audit_sink, "/broken")
        assert entry.status_code == 500

    def test_logs_disabled(self, service_config):
        app = build_app(service_config.model_copy(update={"enable_logs": False}))
        sink = services(app).get("audit_sink")
        with TestClient(app) as client:
            client.get("/quiet")
            client.get("/blocked")
        assert sink.all_entries(LogKind.TRAFFIC) == []
        assert sink.all_entries(LogKind.ACCESS) == []

    def test_identify_hook(self, service_config):
        async def identify(request):
            return {"user_id": request.headers.get("x-user-id")}

        app = build_app(service_config.model_copy(update={"identify_user_from_request": identify}))
        sink = services(app).get("audit_sink")
        with TestClient(app) as client:
            client.get("/blocked", headers={"X-User-Id": "u-42"})

        (entry,) = traffic_for(sink, "/blocked")
        assert entry.user_id == "u-42"

    def test_failing_identify_hook_still_logs(self, service_config):
        def identify(request):
            raise RuntimeError("directory offline")

        app = build_app(service_config.model_copy(update={"identify_user_from_request": identify}))
        sink = services(app).get("audit_sink")
        with TestClient(app) as client:
            assert client.get("/blocked").status_code == 200

        (entry,) = traffic_for(sink, "/blocked")
        assert entry.user_id is None


class TestAdminKeys:
    """Test key management endpoints."""

    def test_admin_requires_admin_scope(self, app, reader):
        _, raw_key = reader
        with TestClient(app) as client:
            anonymous = client.get("/admin/keys")
            non_admin = client.get("/admin/keys", headers={"X-API-Key": raw_key})
        assert anonymous.status_code == 401
        assert non_admin.status_code == 403

    def test_custom_admin_rule(self, service_config):
        app = build_app(service_config, admin_rule=AccessRuleOptions(allow=["127.0.0.1"]))
        with TestClient(app) as client:
            local = client.get("/admin/keys", headers={"X-Forwarded-For": "127.0.0.1"})
            remote = client.get("/admin/keys", headers={"X-Forwarded-For": "10.0.0.5"})
        assert local.status_code == 200
        assert remote.status_code == 403

    def test_create_and_use_key(self, app, admin_headers):
        with TestClient(app) as client:
            created = client.post(
                "/admin/keys",
                json={"owner_type": "service", "owner_id": "billing", "scopes": ["read"]},
                headers=admin_headers,
            )
            raw_key = created.json()["key"]
            used = client.get("/items", headers={"X-API-Key": raw_key})

        assert created.status_code == 201
        body = created.json()
        assert raw_key.startswith("ak_")
        assert body["record"]["owner_id"] == "billing"
        assert body["record"]["scopes"] == ["read"]
        assert "hashed_key" not in body["record"]
        assert used.status_code == 200

    def test_create_rejects_bad_owner(self, app, admin_headers):
        with TestClient(app) as client:
            response = client.post(
                "/admin/keys", json={"owner_type": "robot", "owner_id": "x"}, headers=admin_headers
            )
        assert response.status_code == 422

    def test_list_keys(self, app, admin_headers, reader, key_store):
        asyncio.run(key_store.create_key(OwnerType.USER, "bob"))
        with TestClient(app) as client:
            everything = client.get("/admin/keys", headers=admin_headers).json()
            owned = client.get(
                "/admin/keys",
                params={"owner_type": "user", "owner_id": "alice"},
                headers=admin_headers,
            ).json()

        assert len(everything) == 3
        assert [key["id"] for key in owned] == [reader[0].id]

    def test_invalidate_key(self, app, admin_headers, reader):
        record, raw_key = reader
        with TestClient(app) as client:
            first = client.delete(f"/admin/keys/{record.id}", headers=admin_headers)
            second = client.delete(f"/admin/keys/{record.id}", headers=admin_headers)
            used = client.get("/items", headers={"X-API-Key": raw_key})

        assert first.json() == {"id": record.id, "invalidated": True}
        assert second.status_code == 404
        assert used.status_code == 401

    def test_rotate_key(self, app, admin_headers, reader):
        record, old_key = reader
        with TestClient(app) as client:
            rotated = client.post(f"/admin/keys/{record.id}/rotate", headers=admin_headers)
            new_key = rotated.json()["key"]
            old = client.get("/items", headers={"X-API-Key": old_key})
            new = client.get("/items", headers={"X-API-Key": new_key})
            missing = client.post("/admin/keys/nope/rotate", headers=admin_headers)

        assert rotated.json()["replaced"] == record.id
        assert rotated.json()["record"]["scopes"] == ["read"]
        assert old.status_code == 401
        assert new.status_code == 200
        assert missing.status_code == 404


class TestAdminLogs:
    """Test audit query and stats endpoints."""

    @pytest.fixture
    def seeded(self, audit_sink):
        asyncio.run(
            audit_sink.append_batch(
                [
                    TrafficLogEntry(method="GET", path="/seeded/a", status_code=200, duration_ms=4.0),
                    TrafficLogEntry(method="GET", path="/seeded/b", status_code=404, duration_ms=2.0),
                    AccessEventEntry(decision=AccessOutcome.ALLOW, path="/seeded/a"),
                    AccessEventEntry(
                        decision=AccessOutcome.DENY,
                        path="/seeded/b",
                        reason="IP/MAC not in allow list",
                    ),
                ]
            )
        )

    def test_query_traffic(self, app, admin_headers, seeded):
        with TestClient(app) as client:
            response = client.get(
                "/admin/traffic", params={"route": "/seeded", "limit": 1}, headers=admin_headers
            )
        assert response.status_code == 200
        assert len(response.json()) == 1
        assert response.json()[0]["path"].startswith("/seeded")

    def test_query_access_events(self, app, admin_headers, seeded):
        with TestClient(app) as client:
            response = client.get(
                "/admin/access-events", params={"decision": "deny"}, headers=admin_headers
            )
        (event,) = response.json()
        assert event["reason"] == "IP/MAC not in allow list"

    def test_limit_is_validated(self, app, admin_headers):
        with TestClient(app) as client:
            response = client.get("/admin/traffic", params={"limit": 0}, headers=admin_headers)
        assert response.status_code == 422

    def test_stats(self, app, admin_headers, seeded):
        with TestClient(app) as client:
            response = client.get("/admin/stats", headers=admin_headers)

        data = response.json()
        assert response.status_code == 200
        assert data["traffic"]["total_requests"] == 2
        assert data["traffic"]["status_code_distribution"] == {"200": 1, "404": 1}
        assert data["access_events"]["denied"] == 1
        assert data["access_events"]["top_denied_reasons"] == [
            {"reason": "IP/MAC not in allow list", "count": 1}
        ]
        assert "traffic_queued" in data["queue"]


class TestHealthEndpoint:
    """Test the unauthenticated health check."""

    def test_health(self, app):
        with TestClient(app) as client:
            response = client.get("/healthz")

        data = response.json()
        assert response.status_code == 200
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert "default" in data["strategies"]
        assert "closed" in data["strategies"]
        assert data["audit"]["traffic_dropped"] == 0
