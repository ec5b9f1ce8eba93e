from collections.abc import Callable, Mapping
from urllib.parse import urlparse

import httpx
from cross_web import AsyncHTTPRequest

from ._config import (
    DEFAULT_CONFIG,
    DEFAULT_SESSION_CONFIG,
    Config,
    ProviderConfig,
    ProviderSpec,
    SessionConfig,
    resolve_provider_config,
)
from ._jwks import JWKSCache
from ._linking import LinkStatus, RouteGate, get_link_status
from ._reconcile import IdentityLinkingReconciler, Reconciler
from ._storage import AccountsStorage, User
from ._transport import SessionCookieTransport
from .models.session import PortalSession
from .utils._url import build_absolute_url

DEFAULT_TIMEOUT = 10.0


class Context:
    def __init__(
        self,
        accounts_storage: AccountsStorage,
        session_secret: str,
        env: Mapping[str, str] | None = None,
        http_client: httpx.Client | None = None,
        jwks_cache: JWKSCache | None = None,
        reconciler: Reconciler | None = None,
        # upstream sign-out, called on logout; failures never block logout
        sign_out: Callable[[PortalSession], None] | None = None,
        base_url: str | None = None,
        config: Config | None = None,
        session_config: SessionConfig | None = None,
    ):
        self.accounts_storage = accounts_storage
        self.env = env
        self.base_url = base_url
        self.sign_out = sign_out
        self.config: Config = {**DEFAULT_CONFIG, **(config or {})}
        self.session_config: SessionConfig = {
            **DEFAULT_SESSION_CONFIG,
            **(session_config or {}),
        }
        self.http_client = http_client or httpx.Client(timeout=DEFAULT_TIMEOUT)
        self.jwks_cache = jwks_cache or JWKSCache(
            self.http_client, timeout=DEFAULT_TIMEOUT
        )
        self.reconciler: Reconciler = reconciler or IdentityLinkingReconciler(
            accounts_storage,
            allow_placeholder_email=self.config["allow_placeholder_email"],
            placeholder_email_domain=self.config["placeholder_email_domain"],
        )
        self.session_transport = SessionCookieTransport(
            session_secret, self.session_config
        )
        self.route_gate = RouteGate(
            protected_prefixes=self.config["protected_prefixes"],
            login_path=self.config["login_path"],
            completion_path=self.config["completion_path"],
            default_redirect=self.config["default_redirect"],
        )

    @property
    def required_providers(self) -> list[ProviderSpec]:
        return self.config["required_providers"]

    @property
    def default_redirect(self) -> str:
        return self.config["default_redirect"]

    def get_provider_spec(self, provider_id: str | None) -> ProviderSpec | None:
        if not provider_id:
            return None

        return next((p for p in self.required_providers if p["id"] == provider_id), None)

    def get_provider_config(self) -> ProviderConfig:
        """Raises ConfigurationError when the environment is incomplete."""
        return resolve_provider_config(self.env)

    def get_session_from_request(self, request: AsyncHTTPRequest) -> PortalSession | None:
        return self.session_transport.read(request.cookies)

    def get_user(self, session: PortalSession | None) -> User | None:
        if session is None:
            return None

        return self.accounts_storage.find_user_by_id(session.user_id)

    def get_link_status(
        self, session: PortalSession | None
    ) -> tuple[LinkStatus, User | None]:
        user = self.get_user(session)

        return get_link_status(session, user, self.required_providers), user

    def absolute_url(self, request: AsyncHTTPRequest, path: str) -> str:
        return build_absolute_url(str(request.url), path, self.base_url)

    def callback_url(self, request: AsyncHTTPRequest) -> str:
        return self.absolute_url(request, self.config["callback_path"])

    def request_path(self, request: AsyncHTTPRequest) -> str:
        return urlparse(str(request.url)).path
