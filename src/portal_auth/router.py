import logging
from collections.abc import Awaitable, Callable, Mapping
from itertools import chain
from typing import Any

import httpx
from fastapi import APIRouter, Request
from fastapi import Response as FastAPIResponse
from fastapi.responses import RedirectResponse

from ._config import Config, SessionConfig
from ._context import Context
from ._jwks import JWKSCache
from ._linking import LinkStatus
from ._providers import ProviderLinkManager
from ._reconcile import Reconciler
from ._session import SessionManager
from ._storage import AccountsStorage, User
from .models.session import PortalSession
from .social_providers.auth0 import Auth0Provider
from .social_providers.oidc import OIDCProvider

logger = logging.getLogger(__name__)


class AuthRouter(APIRouter):
    _context: Context

    def __init__(
        self,
        accounts_storage: AccountsStorage,
        session_secret: str,
        provider: OIDCProvider | None = None,
        env: Mapping[str, str] | None = None,
        http_client: httpx.Client | None = None,
        jwks_cache: JWKSCache | None = None,
        reconciler: Reconciler | None = None,
        sign_out: Callable[[PortalSession], None] | None = None,
        base_url: str | None = None,
        config: Config | None = None,
        session_config: SessionConfig | None = None,
        prefix: str = "/auth",
    ):
        super().__init__(prefix=prefix)

        self.provider = provider or Auth0Provider()
        self.session_manager = SessionManager()
        self.provider_link_manager = ProviderLinkManager()

        self._context = Context(
            accounts_storage=accounts_storage,
            session_secret=session_secret,
            env=env,
            http_client=http_client,
            jwks_cache=jwks_cache,
            reconciler=reconciler,
            sign_out=sign_out,
            base_url=base_url,
            config=config,
            session_config=session_config,
        )

        routes = list(
            chain(
                self.provider.routes,
                self.session_manager.routes,
                self.provider_link_manager.routes,
            )
        )

        for route in routes:
            self.add_api_route(
                route.path,
                route.to_fastapi_endpoint(self._context),
                methods=route.methods,
                operation_id=route.operation_id,
                summary=route.summary,
                include_in_schema=route.include_in_schema,
            )

    @property
    def context(self) -> Context:
        return self._context

    def get_authenticated_session(
        self, request: Request
    ) -> tuple[PortalSession, User] | None:
        """Helper for page handlers that need the signed-in user.

        Returns None when there is no valid session or its user is gone.

        Example:
            @app.get("/profile")
            async def profile(request: Request):
                current = auth_router.get_authenticated_session(request)
                ...
        """
        session = self._context.session_transport.read(request.cookies)
        user = self._context.get_user(session)

        if session is None or user is None:
            return None

        return session, user

    def get_link_status(self, request: Request) -> LinkStatus:
        session = self._context.session_transport.read(request.cookies)

        return self._context.get_link_status(session)[0]

    async def link_gate_middleware(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Any]],
    ) -> Any:
        """HTTP middleware enforcing the two-provider policy on page routes.

        Example:
            app.middleware("http")(auth_router.link_gate_middleware)
        """
        gate = self._context.route_gate
        path = request.url.path

        if not gate.is_protected(path):
            return await call_next(request)

        status = self.get_link_status(request)
        decision = gate.decide(
            path, request.url.query, status, dict(request.query_params)
        )

        if decision.allowed:
            return await call_next(request)

        logger.debug("Gate redirecting %s (%s) to %s", path, status.value, decision.location)

        assert decision.location is not None
        response = RedirectResponse(decision.location, status_code=307)

        if decision.clear_session:
            _apply_cookies(response, self._context.session_transport.clear())

        return response


def _apply_cookies(response: FastAPIResponse, cookies: list[Any]) -> None:
    for cookie in cookies:
        response.set_cookie(
            key=cookie.name,
            value=cookie.value,
            max_age=cookie.max_age,
            path=cookie.path or "/",
            secure=cookie.secure,
            httponly=cookie.httponly,
            samesite=cookie.samesite,
        )

