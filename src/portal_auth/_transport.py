"""Signed cookie transport for portal sessions.

A session is split across two cookies: the session cookie (user, expiry,
provider, linked providers, claims) and the tokens cookie (access and ID
tokens). Both are HMAC-SHA256 signed with the application secret, carry the
same user id and expiry, and expire exactly when the tokens do.
"""

import binascii
import hashlib
import hmac
import json
import logging
import time
from collections.abc import Mapping
from typing import Any

from cross_web import Cookie
from pydantic import ValidationError

from ._config import SessionConfig
from ._transaction import make_clear_transaction_cookie
from .models.session import PortalSession, SessionTokens
from .utils._b64 import b64url_decode, b64url_encode

logger = logging.getLogger(__name__)


class SessionCookieTransport:
    def __init__(self, secret: str, config: SessionConfig):
        if not secret:
            raise ValueError("A session signing secret is required")

        self._key = secret.encode("utf-8")
        self.config = config

    @property
    def session_cookie_name(self) -> str:
        return self.config["cookie_name"]

    @property
    def tokens_cookie_name(self) -> str:
        return f"{self.config['cookie_name']}_tokens"

    def _signature(self, body: str) -> str:
        digest = hmac.new(self._key, body.encode("ascii"), hashlib.sha256).digest()

        return b64url_encode(digest)

    def sign(self, payload: dict[str, Any]) -> str:
        body = b64url_encode(
            json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
        )

        return f"{body}.{self._signature(body)}"

    def unsign(self, value: str) -> dict[str, Any] | None:
        body, _, signature = value.partition(".")

        if not body or not signature or not value.isascii():
            return None

        if not hmac.compare_digest(signature, self._signature(body)):
            logger.warning("Session cookie signature mismatch")
            return None

        try:
            payload = json.loads(b64url_decode(body))
        except (binascii.Error, ValueError):
            return None

        return payload if isinstance(payload, dict) else None

    def _make_cookie(self, name: str, value: str, max_age: int) -> Cookie:
        return Cookie(
            name=name,
            value=value,
            secure=self.config["cookie_secure"],
            path=self.config["cookie_path"],
            max_age=max_age,
            httponly=True,
            samesite=self.config["cookie_samesite"],
        )

    def persist(self, session: PortalSession) -> list[Cookie]:
        if session.tokens is None:
            raise ValueError("Cannot persist a session without tokens")

        max_age = session.remaining_lifetime()

        session_payload = session.model_dump(mode="json", exclude={"tokens"})
        tokens_payload = {
            "user_id": session.user_id,
            "expires_at": session.expires_at,
            **session.tokens.model_dump(mode="json"),
        }

        return [
            self._make_cookie(
                self.session_cookie_name, self.sign(session_payload), max_age
            ),
            self._make_cookie(
                self.tokens_cookie_name, self.sign(tokens_payload), max_age
            ),
        ]

    def read(self, cookies: Mapping[str, str] | None) -> PortalSession | None:
        """Rebuild the session from request cookies.

        Returns None when a cookie is missing, tampered with, unparseable, or
        the session has expired.
        """
        if not cookies:
            return None

        raw_session = cookies.get(self.session_cookie_name)
        raw_tokens = cookies.get(self.tokens_cookie_name)

        if not raw_session or not raw_tokens:
            return None

        session_payload = self.unsign(raw_session)
        tokens_payload = self.unsign(raw_tokens)

        if session_payload is None or tokens_payload is None:
            return None

        if tokens_payload.get("user_id") != session_payload.get(
            "user_id"
        ) or tokens_payload.get("expires_at") != session_payload.get("expires_at"):
            logger.warning("Session and token cookies do not belong together")
            return None

        try:
            session = PortalSession.model_validate(
                {
                    **session_payload,
                    "tokens": SessionTokens.model_validate(tokens_payload),
                }
            )
        except ValidationError as e:
            logger.warning("Failed to parse session cookie: %s", e)
            return None

        if session.expires_at <= time.time():
            return None

        return session

    def clear(self) -> list[Cookie]:
        return [
            self._make_cookie(self.session_cookie_name, "", 0),
            self._make_cookie(self.tokens_cookie_name, "", 0),
            make_clear_transaction_cookie(self.config),
        ]
