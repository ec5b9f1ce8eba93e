from portal_auth._config import Config, ProviderConfig, ProviderSpec, SessionConfig
from portal_auth._context import Context
from portal_auth._linking import LinkStatus, RouteGate
from portal_auth._reconcile import IdentityLinkingReconciler, Reconciler
from portal_auth.models.identity import VerifiedExternalIdentity
from portal_auth.models.session import PortalSession
from portal_auth.router import AuthRouter

__all__ = [
    "AuthRouter",
    "Config",
    "Context",
    "IdentityLinkingReconciler",
    "LinkStatus",
    "PortalSession",
    "ProviderConfig",
    "ProviderSpec",
    "Reconciler",
    "RouteGate",
    "SessionConfig",
    "VerifiedExternalIdentity",
]
