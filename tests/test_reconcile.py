import time
from collections.abc import Callable
from typing import Any

import pytest

from portal_auth._reconcile import (
    IdentityLinkingReconciler,
    derive_placeholder_email,
    normalize_email,
)
from portal_auth.exceptions import (
    EmailMissing,
    IdentityConflict,
    LinkFailed,
    UserNotFound,
)
from portal_auth.models.identity import VerifiedExternalIdentity
from portal_auth.models.session import PortalSession

from tests.helpers import MemoryAccountsStorage


def make_identity(**overrides) -> VerifiedExternalIdentity:
    values = {
        "subject": "discord|1234",
        "provider_id": "discord",
        "connection_id": "discord",
        "email": "Player@Example.com",
        "email_verified": True,
        "display_name": "Player One",
        "nickname": "player1",
        "picture_url": "https://cdn.example.com/p.png",
        "expires_at": int(time.time()) + 3600,
    }
    values.update(overrides)

    return VerifiedExternalIdentity(**values)


def session_for(user_id: str) -> PortalSession:
    return PortalSession(user_id=user_id, expires_at=int(time.time()) + 3600)


@pytest.fixture
def reconciler(accounts_storage: MemoryAccountsStorage) -> IdentityLinkingReconciler:
    return IdentityLinkingReconciler(accounts_storage)


def test_first_sign_in_creates_user_and_identity(
    reconciler: IdentityLinkingReconciler, accounts_storage: MemoryAccountsStorage
):
    identity = make_identity()

    session = reconciler.reconcile(identity, "login", None)

    user = accounts_storage.find_user_by_id(session.user_id)
    assert user is not None
    assert user.email == "player@example.com"
    assert user.email_verified is True
    assert session.linked_providers == {"discord"}
    assert session.provider == "discord"
    assert session.expires_at == identity.expires_at
    assert session.primary_claims["sub"] == "discord|1234"


def test_sign_in_is_idempotent(
    reconciler: IdentityLinkingReconciler, accounts_storage: MemoryAccountsStorage
):
    first = reconciler.reconcile(make_identity(), "login", None)
    second = reconciler.reconcile(make_identity(), "login", None)

    assert first.user_id == second.user_id
    assert len(accounts_storage.users) == 1
    assert len(accounts_storage.identities) == 1


def test_sign_in_reuses_user_with_same_verified_email(
    reconciler: IdentityLinkingReconciler, accounts_storage: MemoryAccountsStorage
):
    existing = accounts_storage.add_user("player@example.com")

    session = reconciler.reconcile(make_identity(), "login", None)

    assert session.user_id == existing.id
    assert session.linked_providers == {"discord"}


def test_unverified_email_cannot_take_over_existing_user(
    reconciler: IdentityLinkingReconciler, accounts_storage: MemoryAccountsStorage
):
    accounts_storage.add_user("player@example.com")

    with pytest.raises(IdentityConflict):
        reconciler.reconcile(make_identity(email_verified=False), "login", None)

    assert accounts_storage.identities == {}


def test_missing_email_gets_a_stable_placeholder(
    reconciler: IdentityLinkingReconciler, accounts_storage: MemoryAccountsStorage
):
    first = reconciler.reconcile(
        make_identity(email=None, subject="oauth2|roblox|42", provider_id="roblox"),
        "login",
        None,
    )
    user = accounts_storage.find_user_by_id(first.user_id)

    assert user is not None
    assert user.email == derive_placeholder_email(
        "oauth2|roblox|42", "roblox", "auth.portal.invalid"
    )
    assert user.email.endswith("@roblox.auth.portal.invalid")


def test_placeholder_email_can_be_disabled(accounts_storage: MemoryAccountsStorage):
    reconciler = IdentityLinkingReconciler(
        accounts_storage, allow_placeholder_email=False
    )

    with pytest.raises(EmailMissing):
        reconciler.reconcile(make_identity(email=None), "login", None)


def test_placeholder_email_is_unique_per_subject():
    assert derive_placeholder_email("a|1", "discord", "x.invalid") != (
        derive_placeholder_email("a-1", "discord", "x.invalid")
    )


def test_normalize_email():
    assert normalize_email("  Player@Example.COM ") == "player@example.com"


def test_link_attaches_identity_to_session_user(
    reconciler: IdentityLinkingReconciler,
    accounts_storage: MemoryAccountsStorage,
):
    user = accounts_storage.add_user("player@example.com", providers=("discord",))
    identity = make_identity(
        subject="oauth2|roblox|42",
        provider_id="roblox",
        connection_id="roblox",
        email=None,
    )

    session = reconciler.reconcile(identity, "link", session_for(user.id))

    assert session.user_id == user.id
    assert session.linked_providers == {"discord", "roblox"}


def test_linking_twice_is_idempotent(
    reconciler: IdentityLinkingReconciler,
    accounts_storage: MemoryAccountsStorage,
):
    user = accounts_storage.add_user("player@example.com", providers=("discord",))
    identity = make_identity(subject="oauth2|roblox|42", provider_id="roblox")

    reconciler.reconcile(identity, "link", session_for(user.id))
    reconciler.reconcile(identity, "link", session_for(user.id))

    assert len(user.identities) == 2


def test_linking_identity_owned_by_another_user_conflicts(
    reconciler: IdentityLinkingReconciler,
    accounts_storage: MemoryAccountsStorage,
):
    owner = reconciler.reconcile(make_identity(), "login", None)
    other = accounts_storage.add_user("other@example.com", providers=("roblox",))

    with pytest.raises(IdentityConflict):
        reconciler.reconcile(make_identity(), "link", session_for(other.id))

    identity = accounts_storage.find_identity(
        provider="discord", provider_user_id="discord|1234"
    )
    assert identity is not None
    assert identity.user_id == owner.user_id
    assert {i.provider for i in other.identities} == {"roblox"}
    owner_user = accounts_storage.find_user_by_id(owner.user_id)
    assert owner_user is not None
    assert {i.provider for i in owner_user.identities} == {"discord"}


def test_link_without_session_fails(reconciler: IdentityLinkingReconciler):
    with pytest.raises(LinkFailed):
        reconciler.reconcile(make_identity(), "link", None)


def test_link_for_deleted_user_fails(reconciler: IdentityLinkingReconciler):
    with pytest.raises(UserNotFound):
        reconciler.reconcile(make_identity(), "link", session_for("gone"))


def test_metadata_is_merged_not_replaced(
    reconciler: IdentityLinkingReconciler,
    accounts_storage: MemoryAccountsStorage,
):
    user = accounts_storage.add_user("player@example.com", providers=("discord",))
    user.metadata = {"favorite_color": "green", "name": "Old Name"}

    reconciler.reconcile(
        make_identity(
            subject="oauth2|roblox|42",
            provider_id="roblox",
            connection_id="roblox",
            nickname=None,
        ),
        "link",
        session_for(user.id),
    )

    assert user.metadata["favorite_color"] == "green"
    assert user.metadata["name"] == "Player One"
    assert user.metadata["roblox_sub"] == "oauth2|roblox|42"
    assert user.metadata["roblox_connection"] == "roblox"
    assert "nickname" not in user.metadata


class RacingAccountsStorage(MemoryAccountsStorage):
    """Runs a competing write right before the next insert of each kind."""

    def __init__(self):
        super().__init__()
        self.before_create_user: Callable[[], object] | None = None
        self.before_create_identity: Callable[[], object] | None = None

    def create_user(self, **kwargs: Any):
        if self.before_create_user is not None:
            competing, self.before_create_user = self.before_create_user, None
            competing()

        return super().create_user(**kwargs)

    def create_identity(self, **kwargs: Any):
        if self.before_create_identity is not None:
            competing, self.before_create_identity = self.before_create_identity, None
            competing()

        return super().create_identity(**kwargs)


@pytest.fixture
def racing_storage() -> RacingAccountsStorage:
    return RacingAccountsStorage()


def test_concurrent_user_creation_reuses_winner(racing_storage: RacingAccountsStorage):
    reconciler = IdentityLinkingReconciler(racing_storage)
    racing_storage.before_create_user = lambda: racing_storage.add_user(
        "player@example.com"
    )

    session = reconciler.reconcile(make_identity(), "login", None)

    (user,) = racing_storage.users.values()
    assert session.user_id == user.id
    assert [i.provider for i in user.identities] == ["discord"]


def test_concurrent_identity_attach_is_not_duplicated(
    racing_storage: RacingAccountsStorage,
):
    reconciler = IdentityLinkingReconciler(racing_storage)

    def attach_same_identity():
        (user,) = racing_storage.users.values()
        racing_storage.create_identity(
            user_id=user.id,
            provider="discord",
            provider_user_id="discord|1234",
            identity_data={},
        )

    racing_storage.before_create_identity = attach_same_identity

    first = reconciler.reconcile(make_identity(), "login", None)
    second = reconciler.reconcile(make_identity(), "login", None)

    assert first.user_id == second.user_id
    assert len(racing_storage.users) == 1
    assert len(racing_storage.identities) == 1


def test_concurrent_attach_to_another_user_conflicts(
    racing_storage: RacingAccountsStorage,
):
    reconciler = IdentityLinkingReconciler(racing_storage)

    def attach_to_other_user():
        other = racing_storage.add_user("other@example.com")
        racing_storage.create_identity(
            user_id=other.id,
            provider="discord",
            provider_user_id="discord|1234",
            identity_data={},
        )

    racing_storage.before_create_identity = attach_to_other_user

    with pytest.raises(IdentityConflict):
        reconciler.reconcile(make_identity(), "login", None)

    identity = racing_storage.find_identity(
        provider="discord", provider_user_id="discord|1234"
    )
    assert identity is not None
    owner = racing_storage.find_user_by_email("other@example.com")
    assert owner is not None
    assert identity.user_id == owner.id
