"""API key record models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models.audit_models import utc_now


class OwnerType(str, Enum):
    """Kind of principal owning an API key.

    Service keys are additionally subject to the baseline scopes configured
    under ``service_auth``.
    """

    # Interactive or end-user principal
    USER = "user"

    # Machine-to-machine principal
    SERVICE = "service"


class ApiKeyRecord(BaseModel):
    """Stored API key. Holds only the one-way hash, never the raw key.

    Records are immutable values; stores replace them wholesale when the
    active flag or ``last_used_at`` changes.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Unique identifier for the key")
    name: str = Field(..., description="Human-readable name")
    hashed_key: str = Field(..., description="Encoded PBKDF2 hash of the raw key")
    owner_type: OwnerType = Field(..., description="Type of principal owning the key")
    owner_id: str = Field(..., description="Identifier of the owning principal")
    scopes: frozenset[str] = Field(default_factory=frozenset, description="Granted scopes")
    is_active: bool = Field(True, description="False once invalidated, permanently")
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: Optional[datetime] = Field(None, description="Expiry instant, if any")
    last_used_at: Optional[datetime] = Field(None, description="Last successful validation")

    @field_validator("created_at", "expires_at", "last_used_at")
    @classmethod
    def ensure_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Naive timestamps are taken as UTC
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utc_now())

    def public_view(self) -> dict:
        """Serializable view without the hash, for admin listings."""
        data = self.model_dump(exclude={"hashed_key"}, mode="json")
        data["scopes"] = sorted(self.scopes)
        return data
