class PortalAuthException(Exception):
    error: str = "server_error"

    def __init__(
        self, error_description: str | None = None, error: str | None = None
    ) -> None:
        super().__init__(error_description or self.error)
        if error is not None:
            self.error = error
        self.error_description = error_description


class ConfigurationError(PortalAuthException):
    error = "not_configured"


class MissingParams(PortalAuthException):
    error = "missing_params"


class SessionExpired(PortalAuthException):
    error = "session_expired"


class StateMismatch(PortalAuthException):
    error = "state_mismatch"


class MalformedTransaction(StateMismatch):
    pass


class TokenExchangeFailed(PortalAuthException):
    error = "token_exchange_failed"


class TokenInvalid(PortalAuthException):
    error = "invalid_token"


class TokenMissing(TokenInvalid):
    error = "token_missing"


class ReconciliationError(PortalAuthException):
    error = "sign_in_failed"


class EmailMissing(ReconciliationError):
    error = "email_missing"


class IdentityConflict(ReconciliationError):
    error = "identity_conflict"


class LinkFailed(ReconciliationError):
    error = "link_failed"


class UserNotFound(ReconciliationError):
    """The portal user backing a session no longer exists."""


class UnknownProvider(PortalAuthException):
    error = "unknown_provider"


class ProviderAlreadyLinked(PortalAuthException):
    error = "already_linked"


class ProviderNotLinked(PortalAuthException):
    error = "not_linked"


class LastProviderError(PortalAuthException):
    error = "last_provider"


class UniqueViolationError(Exception):
    """Raised by storage adapters when a uniqueness constraint is hit.

    Covers (provider, provider_user_id) for identities and email for users.
    """
