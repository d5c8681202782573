"""API key storage and validation for Sentinel."""

from .key_store import (
    ApiKeyStore,
    InMemoryApiKeyStore,
    generate_raw_key,
    hash_api_key,
    verify_api_key_hash,
)
from .models import ApiKeyRecord, OwnerType
from .sqlite_key_store import SqliteApiKeyStore
from .validators import (
    ApiKeyValidator,
    FunctionKeyStrategy,
    StaticKeyStrategy,
    StoreKeyStrategy,
    missing_scopes,
)

__all__ = [
    "ApiKeyStore",
    "InMemoryApiKeyStore",
    "SqliteApiKeyStore",
    "generate_raw_key",
    "hash_api_key",
    "verify_api_key_hash",
    "ApiKeyRecord",
    "OwnerType",
    "ApiKeyValidator",
    "FunctionKeyStrategy",
    "StaticKeyStrategy",
    "StoreKeyStrategy",
    "missing_scopes",
]
