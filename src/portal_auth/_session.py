"""Session routes for the portal.

- GET /session - Current session info (401 when signed out)
- HEAD /session - Same status code, no body
- POST /logout - Clear the session cookies
"""

import logging

from cross_web import AsyncHTTPRequest

from ._context import Context
from ._linking import missing_providers, requires_linking
from ._route import Route
from .utils._response import NO_STORE_HEADERS, Response

logger = logging.getLogger(__name__)


class SessionManager:
    """Manager for the portal session routes."""

    def _unauthenticated(self, context: Context, clear: bool = False) -> Response:
        return Response.json_response(
            {"authenticated": False},
            status_code=401,
            headers=NO_STORE_HEADERS,
            cookies=context.session_transport.clear() if clear else [],
        )

    async def get_current_session(
        self, request: AsyncHTTPRequest, context: Context
    ) -> Response:
        """Get the current session info.

        Tokens never leave the server; only their type and scope are
        reported.
        """
        session = context.get_session_from_request(request)

        if session is None:
            return self._unauthenticated(context)

        user = context.get_user(session)

        if user is None:
            logger.warning("Session refers to missing user %s", session.user_id)

            return self._unauthenticated(context, clear=True)

        linked = sorted(identity.provider for identity in user.identities)
        tokens = session.tokens

        return Response.json_response(
            {
                "authenticated": True,
                "session": {
                    "userId": session.user_id,
                    "expiresAt": session.expires_at,
                    "provider": session.provider,
                    "connection": session.connection,
                    "scope": tokens.scope if tokens else None,
                    "tokenType": tokens.token_type if tokens else None,
                    "linkedProviders": linked,
                    "requireLinking": requires_linking(
                        user, context.required_providers
                    ),
                    "missingProviders": missing_providers(
                        user, context.required_providers
                    ),
                },
            },
            headers=NO_STORE_HEADERS,
        )

    async def head_current_session(
        self, request: AsyncHTTPRequest, context: Context
    ) -> Response:
        response = await self.get_current_session(request, context)

        return Response(
            status_code=response.status_code,
            body="",
            headers=NO_STORE_HEADERS,
            cookies=response.cookies,
        )

    async def logout(self, request: AsyncHTTPRequest, context: Context) -> Response:
        """Clear the session.

        Upstream sign-out is attempted first; the cookies are cleared whether
        or not it succeeds.
        """
        session = context.get_session_from_request(request)

        if session is not None and context.sign_out is not None:
            try:
                context.sign_out(session)
            except Exception:
                logger.exception("Upstream sign-out failed for user %s", session.user_id)

        return Response.json_response(
            {"success": True},
            headers=NO_STORE_HEADERS,
            cookies=context.session_transport.clear(),
        )

    @property
    def routes(self) -> list[Route]:
        return [
            Route(
                path="/session",
                methods=["GET"],
                function=self.get_current_session,
                operation_id="get_current_session",
                summary="Get current session info",
            ),
            Route(
                path="/session",
                methods=["HEAD"],
                function=self.head_current_session,
                operation_id="head_current_session",
                summary="Check whether a session exists",
            ),
            Route(
                path="/logout",
                methods=["POST"],
                function=self.logout,
                operation_id="logout",
                summary="Sign out and clear the session",
            ),
        ]
