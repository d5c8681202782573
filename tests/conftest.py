"""Global test configuration and fixtures."""

from datetime import datetime, timedelta, timezone

import pytest

from sentinel.audit.queue import AuditQueue
from sentinel.audit.sinks import InMemoryAuditSink
from sentinel.auth.key_store import InMemoryApiKeyStore
from sentinel.auth.validators import ApiKeyValidator
from sentinel.config import AuditSettings, SentinelConfig
from sentinel.engine.evaluator import AccessPolicyEvaluator
from sentinel.engine.guard import Guard
from sentinel.engine.strategies import create_default_registry
from sentinel.models.access_models import ClientInfo, IpVersion

# PBKDF2 at production strength makes the suite needlessly slow
TEST_HASH_ITERATIONS = 1000


@pytest.fixture
def config() -> SentinelConfig:
    """Engine configuration with cheap key hashing."""
    return SentinelConfig(key_hash_iterations=TEST_HASH_ITERATIONS)


@pytest.fixture
def key_store() -> InMemoryApiKeyStore:
    return InMemoryApiKeyStore(hash_iterations=TEST_HASH_ITERATIONS)


@pytest.fixture
def key_validator(config, key_store) -> ApiKeyValidator:
    return ApiKeyValidator(config, key_store)


@pytest.fixture
def evaluator(config, key_validator) -> AccessPolicyEvaluator:
    return AccessPolicyEvaluator(config, key_validator)


@pytest.fixture
def strategy_registry(evaluator):
    return create_default_registry(evaluator)


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def audit_queue(audit_sink) -> AuditQueue:
    """Queue with default sizing; timers are not started."""
    return AuditQueue(audit_sink, settings=AuditSettings())


@pytest.fixture
def guard(config, strategy_registry, audit_queue) -> Guard:
    return Guard(config, strategy_registry, audit_queue)


@pytest.fixture
def ipv4_client() -> ClientInfo:
    return ClientInfo(ip="10.0.0.5", ip_version=IpVersion.IPV4)


@pytest.fixture
def ipv6_client() -> ClientInfo:
    return ClientInfo(ip="2001:db8::1", ip_version=IpVersion.IPV6)


@pytest.fixture
def mac_client() -> ClientInfo:
    return ClientInfo(ip="192.168.1.10", ip_version=IpVersion.IPV4, mac="AA-BB-CC-DD-EE-FF")


@pytest.fixture
def past() -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=1)


@pytest.fixture
def future() -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=30)
