from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, Field


class TokenResponse(BaseModel):
    token_type: str = Field(
        "Bearer", description="The type of token, usually 'Bearer'"
    )

    access_token: str | None = Field(None, description="The issued access token")
    id_token: str | None = Field(
        None,
        description="OpenID Connect ID token returned alongside access token",
    )
    expires_in: int | None = Field(
        None, description="Lifetime of the access token in seconds"
    )
    refresh_token: str | None = Field(
        None, description="Token used to obtain new access tokens"
    )
    scope: str | None = Field(
        None,
        description="Space-delimited list of scopes associated with the access token",
    )

    @property
    def access_token_expires_at(self) -> datetime | None:
        if self.expires_in:
            return datetime.now(tz=timezone.utc) + timedelta(seconds=self.expires_in)

        return None
