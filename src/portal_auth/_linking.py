"""Provider link state and the page-access gate built on it."""

import enum
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from ._config import ProviderSpec
from ._storage import AccountsStorage, User
from .exceptions import LastProviderError, ProviderNotLinked, UnknownProvider
from .models.session import PortalSession
from .utils._redirect import sanitize_redirect
from .utils._url import with_query

logger = logging.getLogger(__name__)

MIN_LINKED_PROVIDERS = 1


class ProviderState(BaseModel):
    id: str
    label: str
    linked: bool
    identity_id: str | None = None


class LinkStatus(str, enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    PARTIALLY_LINKED = "partially_linked"
    FULLY_LINKED = "fully_linked"


def provider_label(provider_id: str, providers: list[ProviderSpec]) -> str:
    return next((p["label"] for p in providers if p["id"] == provider_id), provider_id)


def get_provider_states(
    user: User | None, providers: list[ProviderSpec]
) -> dict[str, ProviderState]:
    identities = list(user.identities) if user is not None else []
    states = {}

    for provider in providers:
        identity = next(
            (i for i in identities if i.provider == provider["id"]),
            None,
        )
        states[provider["id"]] = ProviderState(
            id=provider["id"],
            label=provider["label"],
            linked=identity is not None,
            identity_id=str(identity.id) if identity is not None else None,
        )

    return states


def missing_providers(user: User | None, providers: list[ProviderSpec]) -> list[str]:
    return [
        state.id
        for state in get_provider_states(user, providers).values()
        if not state.linked
    ]


def requires_linking(user: User | None, providers: list[ProviderSpec]) -> bool:
    return bool(missing_providers(user, providers))


def is_fully_linked(user: User | None, providers: list[ProviderSpec]) -> bool:
    return user is not None and not requires_linking(user, providers)


def get_link_status(
    session: PortalSession | None,
    user: User | None,
    providers: list[ProviderSpec],
) -> LinkStatus:
    if session is None or session.is_expired or user is None:
        return LinkStatus.UNAUTHENTICATED

    if is_fully_linked(user, providers):
        return LinkStatus.FULLY_LINKED

    return LinkStatus.PARTIALLY_LINKED


def dump_provider_states(states: Mapping[str, ProviderState]) -> dict[str, Any]:
    return {key: state.model_dump(mode="json") for key, state in states.items()}


def unlink_provider(
    accounts_storage: AccountsStorage,
    user: User,
    provider_id: str,
    providers: list[ProviderSpec],
) -> dict[str, ProviderState]:
    """Detach the user's identity for provider_id and return the new states.

    Nothing is written when the provider is not linked or when it is the
    last linked provider.
    """
    states = get_provider_states(user, providers)
    target = states.get(provider_id)

    if target is None:
        raise UnknownProvider(f"Unknown provider: {provider_id}")

    if not target.linked or target.identity_id is None:
        raise ProviderNotLinked(f"{target.label} is not linked.")

    linked = [state for state in states.values() if state.linked]

    if len(linked) <= MIN_LINKED_PROVIDERS:
        raise LastProviderError("At least one provider must remain linked.")

    identity = next(i for i in user.identities if str(i.id) == target.identity_id)
    accounts_storage.delete_identity(identity.id)

    logger.info("Unlinked %s from user %s", provider_id, user.id)

    refreshed = accounts_storage.find_user_by_id(user.id)

    return get_provider_states(refreshed, providers)


@dataclass
class GateDecision:
    """Where to send a request; ``location`` is None when it may proceed."""

    location: str | None = None
    clear_session: bool = False

    @property
    def allowed(self) -> bool:
        return self.location is None


class RouteGate:
    def __init__(
        self,
        protected_prefixes: list[str],
        login_path: str,
        completion_path: str,
        default_redirect: str,
    ):
        self.protected_prefixes = protected_prefixes
        self.login_path = login_path
        self.completion_path = completion_path
        self.default_redirect = default_redirect

    def _matches(self, path: str, prefix: str) -> bool:
        prefix = prefix.rstrip("/")

        return path == prefix or path.startswith(f"{prefix}/")

    def is_completion_page(self, path: str) -> bool:
        return self._matches(path, self.completion_path)

    def is_protected(self, path: str) -> bool:
        return self.is_completion_page(path) or any(
            self._matches(path, prefix) for prefix in self.protected_prefixes
        )

    def decide(
        self,
        path: str,
        query: str,
        status: LinkStatus,
        query_params: Mapping[str, str] | None = None,
    ) -> GateDecision:
        if not self.is_protected(path):
            return GateDecision()

        requested = f"{path}?{query}" if query else path
        query_params = query_params or {}

        if status is LinkStatus.UNAUTHENTICATED:
            return GateDecision(
                location=with_query(self.login_path, {"redirect": requested}),
                clear_session=True,
            )

        if self.is_completion_page(path):
            if status is LinkStatus.FULLY_LINKED:
                target = sanitize_redirect(
                    query_params.get("redirect"), self.default_redirect
                )

                if self.is_completion_page(target.split("?", 1)[0]):
                    target = self.default_redirect

                return GateDecision(location=target)

            return GateDecision()

        if status is LinkStatus.PARTIALLY_LINKED:
            return GateDecision(
                location=with_query(self.completion_path, {"redirect": requested})
            )

        return GateDecision()
