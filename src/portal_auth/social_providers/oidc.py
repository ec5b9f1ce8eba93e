import logging
from dataclasses import dataclass
from typing import Any, ClassVar

import httpx
import jwt
from cross_web import AsyncHTTPRequest, Cookie
from pydantic import ValidationError

from .._config import ProviderConfig
from .._context import DEFAULT_TIMEOUT, Context
from .._jwks import JWKSFetchError, SigningKeyNotFound
from .._route import Route
from .._transaction import (
    create_challenge,
    create_verifier,
    decode_transaction,
    make_clear_transaction_cookie,
    make_transaction_cookie,
)
from ..exceptions import (
    ConfigurationError,
    LinkFailed,
    MalformedTransaction,
    MissingParams,
    PortalAuthException,
    SessionExpired,
    StateMismatch,
    TokenExchangeFailed,
    TokenInvalid,
    TokenMissing,
    UserNotFound,
)
from ..models.authorization_transaction import AuthorizationTransaction, Intent
from ..models.identity import VerifiedExternalIdentity
from ..models.oauth_token_response import TokenResponse
from ..models.session import PortalSession, SessionTokens
from ..utils._pkce import generate_state
from ..utils._redirect import sanitize_redirect
from ..utils._response import Response

logger = logging.getLogger(__name__)


@dataclass
class AuthorizationResult:
    identity: VerifiedExternalIdentity
    tokens: TokenResponse
    transaction: AuthorizationTransaction


class OIDCProvider:
    """Authorization Code + PKCE client for an OpenID Connect provider.

    The provider domain comes from ProviderConfig; subclasses set the
    endpoint paths.
    """

    id: ClassVar[str] = "oidc"
    authorization_path: ClassVar[str] = "/authorize"
    token_path: ClassVar[str] = "/token"
    jwks_path: ClassVar[str] = "/.well-known/jwks.json"
    scopes: ClassVar[list[str]] = ["openid", "profile"]
    algorithms: ClassVar[list[str]] = ["RS256"]
    # clock skew tolerated on exp/iat/nbf, in seconds
    leeway: ClassVar[int] = 60

    def authorization_endpoint(self, config: ProviderConfig) -> str:
        return f"{config.domain}{self.authorization_path}"

    def token_endpoint(self, config: ProviderConfig) -> str:
        return f"{config.domain}{self.token_path}"

    def jwks_uri(self, config: ProviderConfig) -> str:
        return f"{config.domain}{self.jwks_path}"

    def resolve_connection(
        self,
        context: Context,
        config: ProviderConfig,
        provider_hint: str | None,
        override: str | None = None,
    ) -> str | None:
        if override and override.strip():
            return override.strip()

        spec = context.get_provider_spec(provider_hint)

        if spec is not None and spec.get("connection"):
            return spec["connection"]

        return config.connection

    def resolve_provider_id(
        self,
        context: Context,
        transaction: AuthorizationTransaction,
        claims: dict[str, Any],
    ) -> str:
        if context.get_provider_spec(transaction.provider_hint) is not None:
            assert transaction.provider_hint is not None
            return transaction.provider_hint

        return self.id

    def build_authorization_params(
        self,
        config: ProviderConfig,
        state: str,
        redirect_uri: str,
        code_challenge: str,
        connection: str | None = None,
    ) -> dict[str, str | None]:
        """Build authorization request parameters.

        Override this method to customize authorization parameters.
        """
        return {
            "response_type": "code",
            "client_id": config.client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "audience": config.audience,
            "connection": connection,
        }

    def build_token_exchange_params(
        self,
        config: ProviderConfig,
        code: str,
        redirect_uri: str,
        code_verifier: str,
    ) -> dict[str, str]:
        """Build token exchange request parameters.

        Override this method to customize token exchange parameters.
        """
        params = {
            "grant_type": "authorization_code",
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
        }

        if config.audience:
            params["audience"] = config.audience

        return params

    def send_token_request(
        self, context: Context, config: ProviderConfig, data: dict[str, str]
    ) -> httpx.Response:
        return context.http_client.post(
            self.token_endpoint(config),
            headers={
                "Accept": "application/json",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            data=data,
            timeout=DEFAULT_TIMEOUT,
        )

    def exchange_code(
        self,
        context: Context,
        config: ProviderConfig,
        code: str,
        redirect_uri: str,
        code_verifier: str,
    ) -> TokenResponse:
        """Exchange an authorization code for tokens.

        Raises:
            TokenExchangeFailed: on network errors, timeouts, non-2xx
                responses or unparseable bodies.
            TokenMissing: if the ID token or access token is absent.
        """
        params = self.build_token_exchange_params(
            config, code, redirect_uri, code_verifier
        )

        try:
            response = self.send_token_request(context, config, params)
        except httpx.TimeoutException as e:
            logger.error("Token exchange timed out: %s", e)
            raise TokenExchangeFailed("Token exchange timed out") from e
        except httpx.RequestError as e:
            logger.error("Failed to exchange code for token: %s", e)
            raise TokenExchangeFailed("Failed to exchange code for token") from e

        if not response.is_success:
            logger.error(
                "Token exchange failed: %s - %s", response.status_code, response.text
            )
            raise TokenExchangeFailed("Token exchange failed")

        try:
            token_response = TokenResponse.model_validate_json(response.text)
        except ValidationError as e:
            logger.error("Failed to parse token response: %s", e)
            raise TokenExchangeFailed("Failed to parse token response") from e

        if not token_response.id_token or not token_response.access_token:
            logger.error(
                "Token response missing fields (id_token=%s, access_token=%s)",
                bool(token_response.id_token),
                bool(token_response.access_token),
            )
            raise TokenMissing("Token response is missing the ID or access token")

        return token_response

    def verify_id_token(
        self, context: Context, config: ProviderConfig, id_token: str
    ) -> dict[str, Any]:
        """Verify the ID token signature, issuer, audience and lifetime.

        A signature failure with a cached key is retried once against a
        freshly fetched key set.
        """
        try:
            header = jwt.get_unverified_header(id_token)
        except jwt.PyJWTError as e:
            logger.warning("ID token is malformed: %s", e)
            raise TokenInvalid("ID token is malformed") from e

        if header.get("alg") not in self.algorithms:
            logger.warning("ID token uses unsupported algorithm: %s", header.get("alg"))
            raise TokenInvalid("ID token algorithm not allowed")

        jwks_uri = self.jwks_uri(config)
        # a key set fetched for this call is not fetched again
        fetched = not context.jwks_cache.is_cached(jwks_uri)

        for force_refresh in (False, True):
            try:
                signing_key = context.jwks_cache.get_signing_key(
                    jwks_uri, header.get("kid"), force_refresh=force_refresh
                )
            except SigningKeyNotFound as e:
                logger.warning("No signing key for ID token (header=%s)", header)
                raise TokenInvalid("No matching signing key") from e
            except JWKSFetchError as e:
                raise TokenExchangeFailed("Could not load provider keys") from e

            try:
                return jwt.decode(
                    id_token,
                    signing_key.key,
                    algorithms=self.algorithms,
                    audience=config.client_id,
                    issuer=config.issuer,
                    leeway=self.leeway,
                    options={"require": ["exp", "iat", "iss", "aud", "sub"]},
                )
            except jwt.InvalidSignatureError as e:
                if force_refresh or fetched:
                    logger.warning("ID token signature invalid (header=%s)", header)
                    raise TokenInvalid("ID token signature invalid") from e

                logger.info("ID token signature check failed, refreshing key set")
            except jwt.PyJWTError as e:
                logger.warning("ID token rejected: %s (header=%s)", e, header)
                raise TokenInvalid("ID token rejected") from e

        raise TokenInvalid("ID token signature invalid")  # pragma: no cover

    def _read_transaction(
        self, request: AsyncHTTPRequest, context: Context
    ) -> AuthorizationTransaction:
        cookies = request.cookies or {}
        raw = cookies.get(context.session_config["transaction_cookie_name"])

        if not raw:
            raise SessionExpired("Authorization transaction cookie missing")

        return decode_transaction(raw)

    def _peek_transaction(
        self, request: AsyncHTTPRequest, context: Context
    ) -> AuthorizationTransaction | None:
        try:
            return self._read_transaction(request, context)
        except (SessionExpired, MalformedTransaction):
            return None

    def complete(
        self, request: AsyncHTTPRequest, context: Context
    ) -> AuthorizationResult:
        """Turn the provider's callback into a verified external identity."""
        code = request.query_params.get("code")
        state = request.query_params.get("state")

        if not code or not state:
            if error := request.query_params.get("error"):
                logger.warning(
                    "Identity provider returned an error: %s (%s)",
                    error,
                    request.query_params.get("error_description"),
                )
            raise MissingParams("Callback requires code and state")

        try:
            transaction = self._read_transaction(request, context)
        except MalformedTransaction:
            logger.error("Failed to parse authorization transaction cookie")
            raise

        if transaction.state != state:
            logger.error("State mismatch in callback")
            raise StateMismatch("State does not match the authorization transaction")

        config = context.get_provider_config()

        tokens = self.exchange_code(
            context,
            config,
            code,
            context.callback_url(request),
            transaction.verifier,
        )
        assert tokens.id_token is not None

        claims = self.verify_id_token(context, config, tokens.id_token)

        identity = VerifiedExternalIdentity.from_claims(
            claims,
            provider_id=self.resolve_provider_id(context, transaction, claims),
            connection_id=transaction.connection,
        )

        return AuthorizationResult(
            identity=identity, tokens=tokens, transaction=transaction
        )

    def build_session(
        self, session: PortalSession, result: AuthorizationResult
    ) -> PortalSession:
        """Attach the issued tokens and cap expiry at the shortest lifetime."""
        tokens = result.tokens
        assert tokens.access_token is not None and tokens.id_token is not None

        expiries = [session.expires_at] if session.expires_at else []

        if expires_at := tokens.access_token_expires_at:
            expiries.append(int(expires_at.timestamp()))

        return session.model_copy(
            update={
                "expires_at": min(expiries) if expiries else 0,
                "tokens": SessionTokens(
                    access_token=tokens.access_token,
                    id_token=tokens.id_token,
                    token_type=tokens.token_type,
                    scope=tokens.scope,
                ),
            }
        )

    def _failure_redirect(
        self,
        request: AsyncHTTPRequest,
        context: Context,
        error: str,
        intent: Intent,
        redirect: str | None,
        cookies: list[Cookie],
    ) -> Response:
        path = (
            context.config["completion_path"]
            if intent == "link"
            else context.config["login_path"]
        )

        return Response.error_redirect(
            context.absolute_url(request, path),
            error=error,
            redirect=redirect,
            cookies=cookies,
        )

    async def begin(self, request: AsyncHTTPRequest, context: Context) -> Response:
        """Start the flow: persist the transaction and redirect to the provider."""
        redirect = sanitize_redirect(
            request.query_params.get("redirect"), context.default_redirect
        )
        intent: Intent = "link" if request.query_params.get("intent") == "link" else "login"

        provider_hint = request.query_params.get("provider") or None

        if provider_hint and context.get_provider_spec(provider_hint) is None:
            logger.warning("Ignoring unknown provider hint %r", provider_hint)
            provider_hint = None

        if intent == "link" and context.get_session_from_request(request) is None:
            logger.error("User must be signed in to start a link flow")

            return self._failure_redirect(
                request, context, LinkFailed.error, "login", redirect, cookies=[]
            )

        try:
            config = context.get_provider_config()
        except ConfigurationError as e:
            return self._failure_redirect(
                request, context, e.error, "login", redirect, cookies=[]
            )

        verifier = create_verifier()
        transaction = AuthorizationTransaction(
            state=generate_state(),
            verifier=verifier,
            redirect_target=redirect,
            intent=intent,
            provider_hint=provider_hint,
            connection=self.resolve_connection(
                context, config, provider_hint, request.query_params.get("connection")
            ),
        )

        query_params = self.build_authorization_params(
            config,
            state=transaction.state,
            redirect_uri=context.callback_url(request),
            code_challenge=create_challenge(verifier),
            connection=transaction.connection,
        )

        return Response.redirect_to(
            self.authorization_endpoint(config),
            query_params=query_params,
            cookies=[make_transaction_cookie(transaction, context.session_config)],
        )

    async def callback(self, request: AsyncHTTPRequest, context: Context) -> Response:
        """
        Complete the flow: verify the identity, reconcile it with a portal
        user and persist the session. The transaction cookie is cleared on
        every outcome.
        """
        clear_transaction = make_clear_transaction_cookie(context.session_config)

        pending = self._peek_transaction(request, context)
        intent: Intent = pending.intent if pending else "login"
        redirect = pending.redirect_target if pending else None

        try:
            result = self.complete(request, context)

            current_session = (
                context.get_session_from_request(request)
                if result.transaction.intent == "link"
                else None
            )

            session = context.reconciler.reconcile(
                result.identity, result.transaction.intent, current_session
            )
            session = self.build_session(session, result)
        except UserNotFound as e:
            logger.warning("Session user no longer exists, signing out: %s", e)

            return self._failure_redirect(
                request,
                context,
                e.error,
                "login",
                redirect,
                cookies=context.session_transport.clear(),
            )
        except PortalAuthException as e:
            logger.warning("Authorization callback failed: %s (%s)", e.error, e)

            return self._failure_redirect(
                request, context, e.error, intent, redirect, cookies=[clear_transaction]
            )
        except Exception:
            logger.exception("Unexpected error during authorization callback")

            return Response.error(
                "server_error",
                error_description="Unexpected error",
                status_code=500,
                cookies=[clear_transaction],
            )

        target = sanitize_redirect(
            result.transaction.redirect_target, context.default_redirect
        )

        return Response.redirect_to(
            context.absolute_url(request, target),
            cookies=[clear_transaction, *context.session_transport.persist(session)],
        )

    @property
    def routes(self) -> list[Route]:
        return [
            Route(
                path="/start",
                methods=["GET"],
                function=self.begin,
                operation_id="start_authorization",
                summary="Redirect to the identity provider",
            ),
            Route(
                path="/callback",
                methods=["GET"],
                function=self.callback,
                operation_id="authorization_callback",
                summary="Complete sign-in or linking",
            ),
        ]
