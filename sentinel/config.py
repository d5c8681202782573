"""Configuration for the Sentinel access-decision engine and audit logging.

Configuration is a single pydantic model, ``SentinelConfig``, built either in
code by the embedding application (hooks and custom predicates can only be
supplied this way) or from environment variables via ``load_config()``.

Environment Variables:
    - SENTINEL_API_KEY_HEADER: Header carrying the API key (default x-api-key)
    - SENTINEL_CLIENT_MAC_HEADER: Header carrying the client MAC (default x-client-mac)
    - SENTINEL_TRUST_PROXY: Honour forwarding headers (default true)
    - SENTINEL_RETENTION_DAYS: Audit retention window in days, <=0 disables (default 90)
    - SENTINEL_SKIP_GLOBAL_GUARDS: Bypass the engine entirely (default false)
    - SENTINEL_DEFAULT_STRATEGY: Final fallback strategy name (default "default")
    - SENTINEL_KEY_STRATEGY: Global API key strategy: static, function or store
    - SENTINEL_VALID_API_KEYS: Comma separated keys for the static strategy
    - SENTINEL_SERVICE_AUTH_ENABLED: Enforce baseline scopes for service keys
    - SENTINEL_SERVICE_REQUIRED_SCOPES: Comma separated baseline scopes
    - SENTINEL_ENABLE_LOGS: Master switch for traffic and access logging
    - SENTINEL_FLUSH_INTERVAL: Seconds between background audit flushes
    - SENTINEL_DB_PATH: SQLite file for keys and audit logs (unset = in memory)
    - SENTINEL_KEY_HASH_ITERATIONS: PBKDF2 iterations for stored keys
    - SENTINEL_LOG_LEVEL: Log level for configure_logging

Dependencies:
    - pydantic: For typed, validated configuration
    - python-dotenv: For .env file support
    - structlog: For configuration logging

Used by:
    - sentinel.container: Service wiring
    - sentinel.engine.guard: Startup validation
    - sentinel.audit.queue: Queue sizing and retention
"""

import os
from typing import Any, Callable, Optional

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigurationError
from .models.access_models import AccessRuleOptions, KeyStrategyName

logger = structlog.get_logger()


class ServiceAuthConfig(BaseModel):
    """Baseline scope requirement applied to service-owned API keys."""

    enabled: bool = Field(True, description="Apply required_scopes to service keys")
    required_scopes: list[str] = Field(
        default_factory=list, description="Scopes every service key must grant"
    )


class StaticKeyOptions(BaseModel):
    """Global defaults of the static key strategy."""

    case_sensitive: bool = True
    allow_partial_match: bool = False


class AuditSettings(BaseModel):
    """Sizing and cadence of the audit queue."""

    flush_interval_seconds: float = Field(5.0, gt=0)
    traffic_batch_size: int = Field(50, ge=1)
    access_batch_size: int = Field(25, ge=1)
    traffic_high_water: int = Field(100, ge=1)
    access_high_water: int = Field(50, ge=1)
    max_queue_size: int = Field(10000, ge=1)
    retention_initial_delay_seconds: float = Field(300.0, ge=0)
    retention_interval_seconds: float = Field(86400.0, gt=0)


class SentinelConfig(BaseModel):
    """Complete engine configuration.

    Callable options (hooks, predicates, identity resolution) accept either
    plain functions or coroutine functions; the engine awaits results that
    are awaitable.
    """

    api_key_header: str = Field("x-api-key", description="Header carrying the API key")
    client_mac_header: str = Field("x-client-mac", description="Header carrying the client MAC")
    trust_proxy: bool = Field(True, description="Honour X-Forwarded-For and X-Real-IP")
    traffic_retention_days: int = Field(90, description="Retention window; <=0 disables the sweep")
    skip_global_guards: bool = Field(False, description="Bypass the engine for every request")
    enable_logs: bool = Field(True, description="Record traffic and access events")

    service_auth: ServiceAuthConfig = Field(default_factory=ServiceAuthConfig)
    default_strategy: str = Field("default", description="Final fallback strategy name")
    strategies: list[Any] = Field(
        default_factory=list, description="Custom AccessStrategy instances registered at startup"
    )
    global_policy: Optional[AccessRuleOptions] = Field(
        None, description="Rules merged underneath every route rule"
    )

    api_key_validation_strategy: KeyStrategyName = Field(KeyStrategyName.STORE)
    global_valid_api_keys: list[str] = Field(default_factory=list)
    global_api_key_options: StaticKeyOptions = Field(default_factory=StaticKeyOptions)
    global_api_key_validation: Optional[Callable[..., Any]] = Field(
        None, description="Predicate used by the function key strategy"
    )
    validate_api_key: Optional[Callable[..., Any]] = Field(
        None, description="Full override of the store key lookup"
    )

    identify_user_from_request: Optional[Callable[..., Any]] = None
    on_access_event: Optional[Callable[..., Any]] = None
    on_traffic_log: Optional[Callable[..., Any]] = None

    audit: AuditSettings = Field(default_factory=AuditSettings)
    key_hash_iterations: int = Field(100_000, ge=1)
    database_path: Optional[str] = Field(None, description="SQLite file; None keeps state in memory")

    def validate_for_startup(self) -> None:
        """Reject settings the engine cannot start with.

        Raises:
            ConfigurationError: On empty header names or an empty default strategy
        """
        if not self.api_key_header or not self.api_key_header.strip():
            raise ConfigurationError("api_key_header must not be empty")
        if not self.client_mac_header or not self.client_mac_header.strip():
            raise ConfigurationError("client_mac_header must not be empty")
        if not self.default_strategy or not self.default_strategy.strip():
            raise ConfigurationError("default_strategy must not be empty")
        if (
            self.api_key_validation_strategy == KeyStrategyName.FUNCTION
            and self.global_api_key_validation is None
        ):
            logger.warning(
                "Function key strategy selected without a global predicate; "
                "rules must supply their own validation_function"
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")


def _env_list(name: str) -> Optional[list[str]]:
    value = os.getenv(name)
    if value is None:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


def _env_number(name: str, cast: Callable[[str], Any]) -> Optional[Any]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    try:
        return cast(value.strip())
    except ValueError as e:
        raise ConfigurationError(f"{name} must be numeric, got {value!r}") from e


def load_config(**overrides: Any) -> SentinelConfig:
    """Build a SentinelConfig from the environment (and .env), then apply overrides.

    Args:
        **overrides: Field values taking precedence over the environment,
            typically hooks and predicates that cannot come from env vars

    Returns:
        Validated SentinelConfig

    Raises:
        ConfigurationError: If an environment value cannot be parsed or the
            resulting configuration is invalid
    """
    load_dotenv()

    values: dict[str, Any] = {}
    audit: dict[str, Any] = {}
    service_auth: dict[str, Any] = {}

    if os.getenv("SENTINEL_API_KEY_HEADER") is not None:
        values["api_key_header"] = os.getenv("SENTINEL_API_KEY_HEADER", "").strip()
    if os.getenv("SENTINEL_CLIENT_MAC_HEADER") is not None:
        values["client_mac_header"] = os.getenv("SENTINEL_CLIENT_MAC_HEADER", "").strip()
    if os.getenv("SENTINEL_DEFAULT_STRATEGY"):
        values["default_strategy"] = os.getenv("SENTINEL_DEFAULT_STRATEGY", "").strip()
    if os.getenv("SENTINEL_KEY_STRATEGY"):
        values["api_key_validation_strategy"] = os.getenv("SENTINEL_KEY_STRATEGY", "").strip().lower()
    if os.getenv("SENTINEL_DB_PATH"):
        values["database_path"] = os.getenv("SENTINEL_DB_PATH")

    values["trust_proxy"] = _env_bool("SENTINEL_TRUST_PROXY", True)
    values["skip_global_guards"] = _env_bool("SENTINEL_SKIP_GLOBAL_GUARDS", False)
    values["enable_logs"] = _env_bool("SENTINEL_ENABLE_LOGS", True)

    retention_days = _env_number("SENTINEL_RETENTION_DAYS", int)
    if retention_days is not None:
        values["traffic_retention_days"] = retention_days
    iterations = _env_number("SENTINEL_KEY_HASH_ITERATIONS", int)
    if iterations is not None:
        values["key_hash_iterations"] = iterations

    valid_keys = _env_list("SENTINEL_VALID_API_KEYS")
    if valid_keys is not None:
        values["global_valid_api_keys"] = valid_keys

    service_auth["enabled"] = _env_bool("SENTINEL_SERVICE_AUTH_ENABLED", True)
    required_scopes = _env_list("SENTINEL_SERVICE_REQUIRED_SCOPES")
    if required_scopes is not None:
        service_auth["required_scopes"] = required_scopes
    values["service_auth"] = service_auth

    flush_interval = _env_number("SENTINEL_FLUSH_INTERVAL", float)
    if flush_interval is not None:
        audit["flush_interval_seconds"] = flush_interval
    values["audit"] = audit

    values.update(overrides)

    try:
        config = SentinelConfig(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid Sentinel configuration: {e}") from e

    config.validate_for_startup()
    logger.info(
        "Sentinel configuration loaded",
        api_key_header=config.api_key_header,
        trust_proxy=config.trust_proxy,
        retention_days=config.traffic_retention_days,
        key_strategy=config.api_key_validation_strategy.value,
        default_strategy=config.default_strategy,
        durable_storage=config.database_path is not None,
    )
    return config


