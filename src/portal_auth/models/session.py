import time
from typing import Any

from pydantic import BaseModel, Field


class SessionTokens(BaseModel):
    access_token: str
    id_token: str
    token_type: str = "Bearer"
    scope: str | None = None


class PortalSession(BaseModel):
    user_id: str
    expires_at: int = Field(description="Epoch seconds")
    linked_providers: set[str] = Field(default_factory=set)
    provider: str | None = None
    connection: str | None = None
    primary_claims: dict[str, Any] = Field(default_factory=dict)
    tokens: SessionTokens | None = None

    def remaining_lifetime(self, now: float | None = None) -> int:
        now = time.time() if now is None else now

        return max(0, int(self.expires_at - now))

    @property
    def is_expired(self) -> bool:
        return self.remaining_lifetime() <= 0
