"""Provider linking routes.

- POST /providers/{provider}/link - Where to send the browser to link
- DELETE /providers/{provider}/unlink - Detach a linked provider
"""

import logging
from urllib.parse import urlparse

from cross_web import AsyncHTTPRequest

from ._context import Context
from ._linking import (
    dump_provider_states,
    get_provider_states,
    missing_providers,
    requires_linking,
    unlink_provider,
)
from ._route import Route
from .exceptions import (
    LastProviderError,
    PortalAuthException,
    ProviderAlreadyLinked,
    ProviderNotLinked,
    UnknownProvider,
)
from .utils._redirect import sanitize_redirect
from .utils._response import NO_STORE_HEADERS, Response
from .utils._url import with_query

logger = logging.getLogger(__name__)

STATUS_CODES: dict[type[PortalAuthException], int] = {
    UnknownProvider: 400,
    LastProviderError: 400,
    ProviderAlreadyLinked: 409,
    ProviderNotLinked: 409,
}


def _provider_from_path(request: AsyncHTTPRequest) -> str:
    # Path format: .../providers/{provider}/{action}
    parts = urlparse(str(request.url)).path.rstrip("/").split("/")

    return parts[-2] if len(parts) >= 2 else ""


class ProviderLinkManager:
    """Manager for linking and unlinking the required providers."""

    def _error(self, e: PortalAuthException) -> Response:
        return Response.error(
            e.error,
            error_description=e.error_description,
            status_code=STATUS_CODES.get(type(e), 400),
            headers=NO_STORE_HEADERS,
        )

    def _unauthorized(self) -> Response:
        return Response.error(
            "unauthorized",
            error_description="Not authenticated",
            status_code=401,
            headers=NO_STORE_HEADERS,
        )

    async def link(self, request: AsyncHTTPRequest, context: Context) -> Response:
        """Return the URL that starts a link flow for the provider."""
        provider_id = _provider_from_path(request)
        spec = context.get_provider_spec(provider_id)

        if spec is None:
            return self._error(UnknownProvider(f"Unknown provider: {provider_id}"))

        session = context.get_session_from_request(request)
        user = context.get_user(session)

        if session is None or user is None:
            return self._unauthorized()

        states = get_provider_states(user, context.required_providers)

        if states[provider_id].linked:
            return self._error(ProviderAlreadyLinked(f"{spec['label']} is already linked."))

        redirect = sanitize_redirect(
            request.query_params.get("redirect"), context.default_redirect
        )
        redirect_url = with_query(
            context.absolute_url(request, context.config["start_path"]),
            {"intent": "link", "provider": provider_id, "redirect": redirect},
        )

        return Response.json_response(
            {"redirectUrl": redirect_url}, headers=NO_STORE_HEADERS
        )

    async def unlink(self, request: AsyncHTTPRequest, context: Context) -> Response:
        provider_id = _provider_from_path(request)

        if context.get_provider_spec(provider_id) is None:
            return self._error(UnknownProvider(f"Unknown provider: {provider_id}"))

        session = context.get_session_from_request(request)
        user = context.get_user(session)

        if session is None or user is None:
            return self._unauthorized()

        try:
            states = unlink_provider(
                context.accounts_storage,
                user,
                provider_id,
                context.required_providers,
            )
        except (UnknownProvider, ProviderNotLinked, LastProviderError) as e:
            logger.info("Refusing to unlink %s for user %s: %s", provider_id, user.id, e)

            return self._error(e)

        refreshed = context.accounts_storage.find_user_by_id(user.id)

        return Response.json_response(
            {
                "providers": dump_provider_states(states),
                "requireLinking": requires_linking(
                    refreshed, context.required_providers
                ),
                "missingProviders": missing_providers(
                    refreshed, context.required_providers
                ),
            },
            headers=NO_STORE_HEADERS,
        )

    @property
    def routes(self) -> list[Route]:
        return [
            Route(
                path="/providers/{provider}/link",
                methods=["POST"],
                function=self.link,
                operation_id="link_provider",
                summary="Start linking a provider",
            ),
            Route(
                path="/providers/{provider}/unlink",
                methods=["DELETE"],
                function=self.unlink,
                operation_id="unlink_provider",
                summary="Unlink a provider",
            ),
        ]
