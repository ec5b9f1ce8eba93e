from typing import Any, Iterable

from typing_extensions import Protocol


class Identity(Protocol):
    """An external identity attached to a portal user."""

    id: Any
    user_id: Any
    provider: str
    provider_user_id: str
    identity_data: dict[str, Any]


class User(Protocol):
    id: Any
    email: str
    email_verified: bool
    metadata: dict[str, Any]

    @property
    def identities(self) -> Iterable[Identity]: ...


class AccountsStorage(Protocol):
    """Portal user and identity store.

    Implementations must enforce uniqueness of users by email and of
    identities by (provider, provider_user_id), raising
    ``UniqueViolationError`` when a write would break either.
    """

    def find_user_by_id(self, id: Any) -> User | None: ...

    def find_user_by_email(self, email: str) -> User | None: ...

    def find_identity(
        self,
        *,
        provider: str,
        provider_user_id: str,
    ) -> Identity | None: ...

    def create_user(
        self,
        *,
        email: str,
        email_verified: bool,
        metadata: dict[str, Any],
    ) -> User: ...

    def update_user_metadata(self, user_id: Any, metadata: dict[str, Any]) -> User: ...

    def create_identity(
        self,
        *,
        user_id: Any,
        provider: str,
        provider_user_id: str,
        identity_data: dict[str, Any],
    ) -> Identity: ...

    def update_identity(
        self,
        identity_id: Any,
        *,
        identity_data: dict[str, Any],
    ) -> Identity: ...

    def delete_identity(self, identity_id: Any) -> None: ...
