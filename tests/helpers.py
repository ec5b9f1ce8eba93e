import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any
from unittest.mock import MagicMock

import jwt
from cross_web import AsyncHTTPRequest, Response

from portal_auth._context import Context
from portal_auth.exceptions import UniqueViolationError
from portal_auth.models.session import PortalSession, SessionTokens

DOMAIN = "https://tenant.example.com"
ISSUER = f"{DOMAIN}/"
JWKS_URI = f"{DOMAIN}/.well-known/jwks.json"
TOKEN_URI = f"{DOMAIN}/oauth/token"
CLIENT_ID = "portal-client"
KEY_ID = "test-key"

ENV = {
    "AUTH0_DOMAIN": "tenant.example.com",
    "AUTH0_CLIENT_ID": CLIENT_ID,
    "AUTH0_CLIENT_SECRET": "portal-secret",
    "AUTH0_AUDIENCE": "https://api.portal.test",
}


@dataclass
class Identity:
    id: str
    user_id: str
    provider: str
    provider_user_id: str
    identity_data: dict[str, Any]


@dataclass
class User:
    id: str
    email: str
    email_verified: bool
    metadata: dict[str, Any]
    storage: "MemoryAccountsStorage" = field(repr=False)

    @property
    def identities(self) -> list[Identity]:
        return [i for i in self.storage.identities.values() if i.user_id == self.id]


class MemoryAccountsStorage:
    """In-memory accounts storage enforcing the same uniqueness as a database."""

    def __init__(self):
        self.users: dict[str, User] = {}
        self.identities: dict[str, Identity] = {}

    def find_user_by_id(self, id: Any) -> User | None:
        return self.users.get(str(id))

    def find_user_by_email(self, email: str) -> User | None:
        return next((u for u in self.users.values() if u.email == email), None)

    def find_identity(self, *, provider: str, provider_user_id: str) -> Identity | None:
        return next(
            (
                i
                for i in self.identities.values()
                if i.provider == provider and i.provider_user_id == provider_user_id
            ),
            None,
        )

    def create_user(
        self, *, email: str, email_verified: bool, metadata: dict[str, Any]
    ) -> User:
        if self.find_user_by_email(email) is not None:
            raise UniqueViolationError(email)

        user = User(
            id=str(uuid.uuid4()),
            email=email,
            email_verified=email_verified,
            metadata=dict(metadata),
            storage=self,
        )
        self.users[user.id] = user

        return user

    def update_user_metadata(self, user_id: Any, metadata: dict[str, Any]) -> User:
        user = self.users[str(user_id)]
        user.metadata = dict(metadata)

        return user

    def create_identity(
        self,
        *,
        user_id: Any,
        provider: str,
        provider_user_id: str,
        identity_data: dict[str, Any],
    ) -> Identity:
        if self.find_identity(provider=provider, provider_user_id=provider_user_id):
            raise UniqueViolationError(f"{provider}:{provider_user_id}")

        identity = Identity(
            id=str(uuid.uuid4()),
            user_id=str(user_id),
            provider=provider,
            provider_user_id=provider_user_id,
            identity_data=dict(identity_data),
        )
        self.identities[identity.id] = identity

        return identity

    def update_identity(
        self, identity_id: Any, *, identity_data: dict[str, Any]
    ) -> Identity:
        identity = self.identities[str(identity_id)]
        identity.identity_data = dict(identity_data)

        return identity

    def delete_identity(self, identity_id: Any) -> None:
        del self.identities[str(identity_id)]

    def add_user(self, email: str, providers: tuple[str, ...] = ()) -> User:
        user = self.create_user(email=email, email_verified=True, metadata={})

        for provider in providers:
            self.create_identity(
                user_id=user.id,
                provider=provider,
                provider_user_id=f"{provider}|{user.id}",
                identity_data={},
            )

        return user


def make_request(
    path: str = "/auth/callback",
    method: str = "GET",
    cookies: dict[str, str] | None = None,
    query_params: dict[str, str] | None = None,
) -> AsyncHTTPRequest:
    request = MagicMock(spec=AsyncHTTPRequest)
    request.url = f"http://localhost{path}"
    request.method = method
    request.cookies = cookies or {}
    request.headers = {}
    request.query_params = query_params or {}

    return request


def parse_json_body(response: Response) -> dict[str, Any]:
    assert response.body is not None, "Response body should not be None"
    return json.loads(response.body)


def get_cookie(response: Response, name: str):
    assert response.cookies is not None, "Response should have cookies"
    for cookie in response.cookies:
        if cookie.name == name:
            return cookie
    raise AssertionError(f"Cookie '{name}' not found")


def cookie_jar(cookies: list[Any]) -> dict[str, str]:
    return {cookie.name: cookie.value for cookie in cookies if cookie.value}


def session_cookies(context: Context, user: User, lifetime: int = 3600) -> dict[str, str]:
    session = PortalSession(
        user_id=user.id,
        expires_at=int(time.time()) + lifetime,
        linked_providers={i.provider for i in user.identities},
        provider="discord",
        tokens=SessionTokens(access_token="access", id_token="id", scope="openid"),
    )

    return cookie_jar(context.session_transport.persist(session))


def make_id_token(private_key: Any, kid: str | None = KEY_ID, **claims: Any) -> str:
    now = int(time.time())
    payload = {
        "sub": "discord|1234",
        "iss": ISSUER,
        "aud": CLIENT_ID,
        "iat": now,
        "exp": now + 3600,
        "email": "player@example.com",
        "email_verified": True,
        "name": "Player One",
        "nickname": "player1",
        "picture": "https://cdn.example.com/player1.png",
    }
    payload.update(claims)
    payload = {key: value for key, value in payload.items() if value is not None}

    return jwt.encode(
        payload,
        private_key,
        algorithm="RS256",
        headers={"kid": kid} if kid else None,
    )
