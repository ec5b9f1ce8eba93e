from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Claims that map onto named fields; everything else lands in extra_claims
KNOWN_CLAIMS = frozenset(
    {
        "sub",
        "email",
        "email_verified",
        "name",
        "nickname",
        "picture",
        "iss",
        "aud",
        "exp",
        "iat",
        "nbf",
        "azp",
        "nonce",
        "sid",
    }
)


class VerifiedExternalIdentity(BaseModel):
    """Claims of an ID token whose signature, issuer and audience checked out."""

    model_config = ConfigDict(frozen=True)

    subject: str
    provider_id: str
    connection_id: str | None = None
    email: str | None = None
    email_verified: bool | None = None
    display_name: str | None = None
    nickname: str | None = None
    picture_url: str | None = None
    expires_at: int | None = None
    extra_claims: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_claims(
        cls,
        claims: dict[str, Any],
        *,
        provider_id: str,
        connection_id: str | None = None,
    ) -> "VerifiedExternalIdentity":
        email_verified = claims.get("email_verified")

        return cls(
            subject=str(claims["sub"]),
            provider_id=provider_id,
            connection_id=connection_id,
            email=claims.get("email") or None,
            email_verified=(
                email_verified if isinstance(email_verified, bool) else None
            ),
            display_name=claims.get("name") or claims.get("nickname"),
            nickname=claims.get("nickname"),
            picture_url=claims.get("picture"),
            expires_at=claims.get("exp"),
            extra_claims={
                key: value for key, value in claims.items() if key not in KNOWN_CLAIMS
            },
        )

    @property
    def public_claims(self) -> dict[str, Any]:
        claims = {
            "sub": self.subject,
            "email": self.email,
            "email_verified": self.email_verified,
            "name": self.display_name,
            "nickname": self.nickname,
            "picture": self.picture_url,
        }

        return {key: value for key, value in claims.items() if value is not None}


class UserMetadata(BaseModel):
    """Portal user profile metadata.

    Unknown keys written by other providers or by the application are kept
    as extra fields and survive every merge.
    """

    model_config = ConfigDict(extra="allow")

    name: str | None = None
    nickname: str | None = None
    picture: str | None = None
    email_verified: bool | None = None

    def merge_identity(self, identity: VerifiedExternalIdentity) -> "UserMetadata":
        updates: dict[str, Any] = {
            "name": identity.display_name,
            "nickname": identity.nickname,
            "picture": identity.picture_url,
            "email_verified": identity.email_verified,
            f"{identity.provider_id}_sub": identity.subject,
            f"{identity.provider_id}_connection": identity.connection_id,
        }

        merged = self.model_dump()
        merged.update({key: value for key, value in updates.items() if value is not None})

        return UserMetadata.model_validate(merged)
