from typing import Literal

from pydantic import BaseModel, Field

Intent = Literal["login", "link"]


class AuthorizationTransaction(BaseModel):
    """In-flight authorization state, carried by the browser between
    /auth/start and /auth/callback."""

    state: str = Field(description="Anti-CSRF token echoed back by the provider")
    verifier: str = Field(description="PKCE code verifier")
    redirect_target: str = Field(
        alias="redirect", description="In-application path to resume after login"
    )
    intent: Intent = "login"
    provider_hint: str | None = Field(default=None, alias="provider")
    connection: str | None = None

    model_config = {"populate_by_name": True}
