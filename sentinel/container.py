"""Dependency injection container wiring the Sentinel engine together.

A small service registry with singleton and transient lifetimes. The engine
components are built once per process from a ``SentinelConfig`` and resolved
by name from the FastAPI layer.

Service Graph:
    config
    key_store       ← config (SQLite when database_path is set, else memory)
    audit_sink      ← config (SQLite when database_path is set, else memory)
    audit_queue     ← config, audit_sink
    key_validator   ← config, key_store
    evaluator       ← config, key_validator
    strategy_registry ← evaluator
    guard           ← config, strategy_registry, audit_queue

Lifecycle:
    ``container_lifespan()`` starts the audit queue on entry and, on exit,
    stops it (flushing what is queued) before closing every service that
    exposes an async ``close()``.

Dependencies:
    - structlog: For resolution and lifecycle logging

Used by:
    - sentinel.service.main: Application lifespan
    - sentinel.service.dependencies: Guard resolution
"""

import asyncio
from collections.abc import Iterable
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

import structlog

from .config import SentinelConfig

logger = structlog.get_logger()


class ServiceLifetime:
    SINGLETON = "singleton"
    TRANSIENT = "transient"


class ServiceDescriptor:
    """Factory, lifetime and dependency names of one registered service."""

    def __init__(
        self,
        name: str,
        factory: Callable[..., Any],
        lifetime: str = ServiceLifetime.SINGLETON,
        dependencies: Optional[list[str]] = None,
    ):
        self.name = name
        self.factory = factory
        self.lifetime = lifetime
        self.dependencies = dependencies or []


class Container:
    """Name-keyed service registry with dependency resolution.

    Dependencies are resolved recursively before a factory is called, in the
    order they were declared. A service that (indirectly) depends on itself
    raises ValueError instead of recursing forever.
    """

    def __init__(self):
        self._services: dict[str, ServiceDescriptor] = {}
        self._instances: dict[str, Any] = {}
        self._resolving: set[str] = set()

    def register_singleton(
        self, name: str, factory: Callable[..., Any], dependencies: Optional[list[str]] = None
    ) -> "Container":
        self._services[name] = ServiceDescriptor(
            name, factory, ServiceLifetime.SINGLETON, dependencies
        )
        self._instances.pop(name, None)
        return self

    def register_transient(
        self, name: str, factory: Callable[..., Any], dependencies: Optional[list[str]] = None
    ) -> "Container":
        self._services[name] = ServiceDescriptor(
            name, factory, ServiceLifetime.TRANSIENT, dependencies
        )
        self._instances.pop(name, None)
        return self

    def register_instance(self, name: str, instance: Any) -> "Container":
        """Register an already-built object, e.g. a config or a test double."""
        self._instances[name] = instance
        return self

    def get(self, name: str) -> Any:
        """Resolve ``name``, building it and its dependencies if needed.

        Raises:
            ValueError: If the service is not registered or the dependency
                graph is circular
        """
        if name in self._resolving:
            raise ValueError(f"Circular dependency detected for {name}")

        if name in self._instances:
            return self._instances[name]

        if name not in self._services:
            raise ValueError(f"Service {name} is not registered")

        descriptor = self._services[name]
        self._resolving.add(name)
        try:
            resolved = [self.get(dep) for dep in descriptor.dependencies]
            instance = descriptor.factory(*resolved)
            if descriptor.lifetime == ServiceLifetime.SINGLETON:
                self._instances[name] = instance
            logger.debug(
                "Service resolved successfully",
                service=name,
                lifetime=descriptor.lifetime,
                dependencies=descriptor.dependencies,
            )
            return instance
        finally:
            self._resolving.discard(name)

    def try_get(self, name: str) -> Optional[Any]:
        try:
            return self.get(name)
        except ValueError:
            return None

    def is_registered(self, name: str) -> bool:
        return name in self._services or name in self._instances

    async def dispose_async(self) -> None:
        """Close every built service exposing an async ``close()``, then forget it.

        Instances added with ``register_instance`` are kept.
        """
        for name, instance in list(self._instances.items()):
            if name not in self._services:
                continue
            close = getattr(instance, "close", None)
            if close is not None and asyncio.iscoroutinefunction(close):
                try:
                    await close()
                except Exception as e:
                    logger.error("Error disposing service", service=name, error=str(e))
            del self._instances[name]
        logger.info("Container disposed successfully")

    def get_service_info(self) -> dict[str, Any]:
        info: dict[str, Any] = {
            "registered_services": len(self._services),
            "active_instances": len(self._instances),
            "services": {},
        }
        for name, descriptor in self._services.items():
            info["services"][name] = {
                "lifetime": descriptor.lifetime,
                "dependencies": list(descriptor.dependencies),
                "instantiated": name in self._instances,
            }
        return info


_container: Optional[Container] = None


def get_container() -> Container:
    """Process-wide container, created on first use."""
    global _container
    if _container is None:
        _container = Container()
    return _container


def reset_container() -> None:
    """Forget the process-wide container (tests and app factories)."""
    global _container
    _container = None


def configure_services(
    config: SentinelConfig,
    container: Optional[Container] = None,
    strategies: Iterable[Any] = (),
) -> Container:
    """Register every engine service built from ``config``.

    Args:
        config: Engine configuration
        container: Target container; the process-wide one when omitted
        strategies: Extra AccessStrategy instances added to the registry

    Returns:
        The configured container
    """
    from .audit.queue import AuditQueue
    from .audit.sinks import InMemoryAuditSink
    from .audit.sqlite_sink import SqliteAuditSink
    from .auth.key_store import InMemoryApiKeyStore
    from .auth.sqlite_key_store import SqliteApiKeyStore
    from .auth.validators import ApiKeyValidator
    from .engine.evaluator import AccessPolicyEvaluator
    from .engine.guard import Guard
    from .engine.strategies import create_default_registry

    container = container or get_container()
    custom_strategies = [*config.strategies, *strategies]

    def build_key_store(cfg: SentinelConfig):
        if cfg.database_path:
            return SqliteApiKeyStore(cfg.database_path, hash_iterations=cfg.key_hash_iterations)
        return InMemoryApiKeyStore(hash_iterations=cfg.key_hash_iterations)

    def build_audit_sink(cfg: SentinelConfig):
        if cfg.database_path:
            return SqliteAuditSink(cfg.database_path)
        return InMemoryAuditSink()

    container.register_instance("config", config)
    container.register_singleton("key_store", build_key_store, ["config"])
    container.register_singleton("audit_sink", build_audit_sink, ["config"])
    container.register_singleton("audit_queue", AuditQueue.from_config, ["config", "audit_sink"])
    container.register_singleton("key_validator", ApiKeyValidator, ["config", "key_store"])
    container.register_singleton("evaluator", AccessPolicyEvaluator, ["config", "key_validator"])
    container.register_singleton(
        "strategy_registry",
        lambda evaluator: create_default_registry(evaluator, custom_strategies),
        ["evaluator"],
    )
    container.register_singleton("guard", Guard, ["config", "strategy_registry", "audit_queue"])

    logger.info(
        "Service container configured successfully",
        durable_storage=config.database_path is not None,
        custom_strategies=[strategy.name for strategy in custom_strategies],
    )
    return container


@asynccontextmanager
async def container_lifespan(container: Optional[Container] = None):
    """Start background audit work on entry; flush and dispose on exit."""
    container = container or get_container()
    audit_queue = container.try_get("audit_queue")
    try:
        logger.info("Starting service container")
        # Building the guard validates the config and the default strategy
        container.get("guard")
        if audit_queue is not None:
            audit_queue.start()
        yield container
    finally:
        logger.info("Disposing service container")
        if audit_queue is not None:
            await audit_queue.stop(flush=True)
        await container.dispose_async()
