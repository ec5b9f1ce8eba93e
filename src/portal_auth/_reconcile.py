"""Reconciliation of verified external identities with portal users."""

import hashlib
import logging
import re
from typing import Any

from typing_extensions import Protocol

from ._storage import AccountsStorage, Identity, User
from .exceptions import (
    EmailMissing,
    IdentityConflict,
    LinkFailed,
    ReconciliationError,
    UniqueViolationError,
    UserNotFound,
)
from .models.authorization_transaction import Intent
from .models.identity import UserMetadata, VerifiedExternalIdentity
from .models.session import PortalSession

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^a-zA-Z0-9]+")


class Reconciler(Protocol):
    def reconcile(
        self,
        identity: VerifiedExternalIdentity,
        intent: Intent,
        current_session: PortalSession | None,
    ) -> PortalSession: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


def derive_placeholder_email(
    subject: str, provider_id: str, domain: str = "auth.portal.invalid"
) -> str:
    """Deterministic stand-in email for identities without one.

    The digest keeps subjects that only differ in punctuation apart.
    """
    local = _UNSAFE.sub("-", subject).strip("-").lower() or "user"
    suffix = _UNSAFE.sub("-", provider_id).strip("-").lower() or "external"
    digest = hashlib.sha256(f"{provider_id}:{subject}".encode()).hexdigest()[:12]

    return f"{local}-{digest}@{suffix}.{domain}"


class IdentityLinkingReconciler:
    """Maps external identities onto portal users via the identity store.

    One (provider, subject) pair belongs to at most one user. Sign-in reuses
    the user owning the identity, then a user with the same verified email,
    and otherwise creates one. Linking attaches the identity to the user of
    the current session.
    """

    def __init__(
        self,
        accounts_storage: AccountsStorage,
        allow_placeholder_email: bool = True,
        placeholder_email_domain: str = "auth.portal.invalid",
    ):
        self.accounts_storage = accounts_storage
        self.allow_placeholder_email = allow_placeholder_email
        self.placeholder_email_domain = placeholder_email_domain

    def resolve_email(self, identity: VerifiedExternalIdentity) -> tuple[str, bool]:
        """Return the email to use and whether it may be trusted for lookup."""
        if identity.email:
            return normalize_email(identity.email), identity.email_verified is True

        if not self.allow_placeholder_email:
            raise EmailMissing("Identity provider did not return an email")

        email = derive_placeholder_email(
            identity.subject, identity.provider_id, self.placeholder_email_domain
        )

        return email, True

    def reconcile(
        self,
        identity: VerifiedExternalIdentity,
        intent: Intent,
        current_session: PortalSession | None,
    ) -> PortalSession:
        if intent == "link":
            user = self._link(identity, current_session)
        else:
            user = self._sign_in(identity)

        user = self._merge_metadata(user, identity)

        return PortalSession(
            user_id=str(user.id),
            expires_at=identity.expires_at or 0,
            linked_providers={i.provider for i in user.identities},
            provider=identity.provider_id,
            connection=identity.connection_id,
            primary_claims=identity.public_claims,
        )

    def _identity_data(self, identity: VerifiedExternalIdentity) -> dict[str, Any]:
        return {
            "connection": identity.connection_id,
            **identity.public_claims,
        }

    def _find_identity(self, identity: VerifiedExternalIdentity) -> Identity | None:
        return self.accounts_storage.find_identity(
            provider=identity.provider_id,
            provider_user_id=identity.subject,
        )

    def _attach(self, user: User, identity: VerifiedExternalIdentity) -> Identity:
        """Attach identity to user, tolerating a concurrent identical attach."""
        try:
            return self.accounts_storage.create_identity(
                user_id=user.id,
                provider=identity.provider_id,
                provider_user_id=identity.subject,
                identity_data=self._identity_data(identity),
            )
        except UniqueViolationError:
            existing = self._find_identity(identity)

            if existing is None:
                raise ReconciliationError("Identity could not be attached") from None

            if str(existing.user_id) != str(user.id):
                raise IdentityConflict(
                    "This account is already linked to another user"
                ) from None

            return existing

    def _link(
        self,
        identity: VerifiedExternalIdentity,
        current_session: PortalSession | None,
    ) -> User:
        if current_session is None:
            raise LinkFailed("Sign in before linking another account")

        user = self.accounts_storage.find_user_by_id(current_session.user_id)

        if user is None:
            raise UserNotFound("Signed-in user no longer exists")

        existing = self._find_identity(identity)

        if existing is not None:
            if str(existing.user_id) != str(user.id):
                logger.info(
                    "Refusing to link %s identity owned by user %s to user %s",
                    identity.provider_id,
                    existing.user_id,
                    user.id,
                )
                raise IdentityConflict("This account is already linked to another user")

            self.accounts_storage.update_identity(
                existing.id, identity_data=self._identity_data(identity)
            )
        else:
            self._attach(user, identity)

        return self._reload(user.id)

    def _sign_in(self, identity: VerifiedExternalIdentity) -> User:
        existing = self._find_identity(identity)

        if existing is not None:
            user = self.accounts_storage.find_user_by_id(existing.user_id)

            if user is None:
                logger.error(
                    "Identity %s points at missing user %s", existing.id, existing.user_id
                )
                raise ReconciliationError("Account for this identity is missing")

            self.accounts_storage.update_identity(
                existing.id, identity_data=self._identity_data(identity)
            )

            return self._reload(user.id)

        email, trusted = self.resolve_email(identity)
        user = self.accounts_storage.find_user_by_email(email)

        if user is not None and not trusted:
            # an unverified email must not take over an existing account
            raise IdentityConflict(
                "An account with this email exists but could not be linked"
            )

        if user is None:
            user = self._create_user(email, identity)

        attached = self._attach(user, identity)

        return self._reload(attached.user_id)

    def _create_user(self, email: str, identity: VerifiedExternalIdentity) -> User:
        metadata = UserMetadata().merge_identity(identity).model_dump(exclude_none=True)

        try:
            return self.accounts_storage.create_user(
                email=email,
                email_verified=identity.email_verified is True,
                metadata=metadata,
            )
        except UniqueViolationError:
            # lost a race with a concurrent sign-in for the same email
            user = self.accounts_storage.find_user_by_email(email)

            if user is None:
                raise ReconciliationError("User could not be created") from None

            return user

    def _merge_metadata(self, user: User, identity: VerifiedExternalIdentity) -> User:
        merged = UserMetadata.model_validate(user.metadata or {}).merge_identity(
            identity
        )

        return self.accounts_storage.update_user_metadata(
            user.id, merged.model_dump(exclude_none=True)
        )

    def _reload(self, user_id: Any) -> User:
        user = self.accounts_storage.find_user_by_id(user_id)

        if user is None:
            raise ReconciliationError("User disappeared during sign-in")

        return user
