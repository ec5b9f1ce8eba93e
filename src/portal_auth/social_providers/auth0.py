from typing import Any

from .._context import Context
from ..models.authorization_transaction import AuthorizationTransaction
from .oidc import OIDCProvider


def subject_provider(subject: str) -> str | None:
    """Return the upstream provider encoded in an Auth0 subject.

    Auth0 prefixes subjects with the connection strategy, e.g.
    ``discord|123`` or ``oauth2|roblox|123`` for custom OAuth2 connections.
    """
    parts = subject.split("|")

    if len(parts) < 2:
        return None

    if parts[0] == "oauth2" and len(parts) >= 3:
        return parts[1]

    return parts[0]


class Auth0Provider(OIDCProvider):
    id = "auth0"
    authorization_path = "/authorize"
    token_path = "/oauth/token"
    jwks_path = "/.well-known/jwks.json"

    def resolve_provider_id(
        self,
        context: Context,
        transaction: AuthorizationTransaction,
        claims: dict[str, Any],
    ) -> str:
        if context.get_provider_spec(transaction.provider_hint) is not None:
            assert transaction.provider_hint is not None
            return transaction.provider_hint

        upstream = subject_provider(str(claims.get("sub", "")))

        for spec in context.required_providers:
            if upstream in (spec["id"], spec.get("connection")):
                return spec["id"]

        if transaction.connection:
            for spec in context.required_providers:
                if spec.get("connection") == transaction.connection:
                    return spec["id"]

        return self.id
