from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import TypedDict

from pydantic import BaseModel, ValidationError, field_validator
from typing_extensions import NotRequired

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class ProviderSpec(TypedDict):
    id: str
    label: str
    # IdP connection used when starting a flow for this provider
    connection: NotRequired[str]


DEFAULT_REQUIRED_PROVIDERS: list[ProviderSpec] = [
    {"id": "discord", "label": "Discord", "connection": "discord"},
    {"id": "roblox", "label": "Roblox", "connection": "roblox"},
]


class Config(TypedDict, total=False):
    required_providers: list[ProviderSpec]
    login_path: str
    completion_path: str
    default_redirect: str
    protected_prefixes: list[str]
    start_path: str
    callback_path: str
    allow_placeholder_email: bool
    placeholder_email_domain: str


class SessionConfig(TypedDict, total=False):
    cookie_name: str
    transaction_cookie_name: str
    cookie_secure: bool
    cookie_samesite: str
    cookie_path: str
    transaction_max_age: int


DEFAULT_CONFIG: Config = {
    "required_providers": DEFAULT_REQUIRED_PROVIDERS,
    "login_path": "/auth/login",
    "completion_path": "/auth/complete",
    "default_redirect": "/profile",
    "protected_prefixes": ["/profile", "/owner", "/staff"],
    "start_path": "/auth/start",
    "callback_path": "/auth/callback",
    "allow_placeholder_email": True,
    "placeholder_email_domain": "auth.portal.invalid",
}

DEFAULT_SESSION_CONFIG: SessionConfig = {
    "cookie_name": "portal_session",
    "transaction_cookie_name": "portal_pkce",
    "cookie_secure": True,
    "cookie_samesite": "lax",
    "cookie_path": "/",
    "transaction_max_age": 60 * 5,
}


class ProviderConfig(BaseModel):
    """Identity provider settings, normalized."""

    domain: str
    client_id: str
    client_secret: str
    audience: str | None = None
    connection: str | None = None

    @field_validator("domain", "client_id", "client_secret", mode="before")
    @classmethod
    def _required(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("audience", "connection", mode="before")
    @classmethod
    def _optional(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.strip()
        return value or None

    @field_validator("domain")
    @classmethod
    def _normalize_domain(cls, value: str) -> str:
        value = value.rstrip("/")

        if not value.lower().startswith(("http://", "https://")):
            value = f"https://{value}"

        return value

    @property
    def issuer(self) -> str:
        return f"{self.domain}/"


ENV_KEYS = {
    "domain": "AUTH0_DOMAIN",
    "client_id": "AUTH0_CLIENT_ID",
    "client_secret": "AUTH0_CLIENT_SECRET",
    "audience": "AUTH0_AUDIENCE",
    "connection": "AUTH0_CONNECTION",
}


def resolve_provider_config(env: Mapping[str, str] | None = None) -> ProviderConfig:
    """Build a ProviderConfig from environment variables.

    Raises ConfigurationError when a required value is missing or blank.
    """
    source = os.environ if env is None else env

    values = {field: source.get(key) for field, key in ENV_KEYS.items()}

    try:
        return ProviderConfig.model_validate(values)
    except ValidationError as e:
        missing = sorted(
            ENV_KEYS[str(error["loc"][0])] for error in e.errors() if error["loc"]
        )
        logger.error("Identity provider is not configured, invalid: %s", missing)

        raise ConfigurationError(
            "Identity provider environment variables are not fully configured"
        ) from None
