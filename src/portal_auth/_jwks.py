import logging
import time

import httpx
from jwt import PyJWK, PyJWKSet
from jwt.exceptions import PyJWKSetError

logger = logging.getLogger(__name__)


class JWKSError(Exception):
    pass


class JWKSFetchError(JWKSError):
    """The key set could not be retrieved from the provider."""


class SigningKeyNotFound(JWKSError):
    """No key in the (refreshed) key set matches the token."""


class JWKSCache:
    """Caches provider key sets per URL for a bounded time.

    A lookup for an unknown key id forces one refresh before giving up, so
    key rotation at the provider is picked up without waiting for the TTL.
    """

    def __init__(
        self,
        http_client: httpx.Client,
        ttl: int = 600,
        timeout: float = 10.0,
    ):
        self.http_client = http_client
        self.ttl = ttl
        self.timeout = timeout
        self._entries: dict[str, tuple[float, PyJWKSet]] = {}

    def _fetch(self, jwks_uri: str) -> PyJWKSet:
        try:
            response = self.http_client.get(
                jwks_uri,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            jwk_set = PyJWKSet.from_dict(response.json())
        except httpx.HTTPStatusError as e:
            logger.error(
                "Key set fetch failed: %s - %s",
                e.response.status_code,
                e.response.text,
            )
            raise JWKSFetchError("Key set fetch failed") from e
        except (httpx.RequestError, ValueError, PyJWKSetError) as e:
            logger.error("Failed to load key set from %s: %s", jwks_uri, e)
            raise JWKSFetchError("Failed to load key set") from e

        self._entries[jwks_uri] = (time.monotonic() + self.ttl, jwk_set)

        return jwk_set

    def is_cached(self, jwks_uri: str) -> bool:
        entry = self._entries.get(jwks_uri)

        return entry is not None and entry[0] > time.monotonic()

    def get_key_set(self, jwks_uri: str, force_refresh: bool = False) -> PyJWKSet:
        if not force_refresh and self.is_cached(jwks_uri):
            return self._entries[jwks_uri][1]

        return self._fetch(jwks_uri)

    def get_signing_key(
        self, jwks_uri: str, kid: str | None, force_refresh: bool = False
    ) -> PyJWK:
        fetched = force_refresh or not self.is_cached(jwks_uri)
        key = self._select(self.get_key_set(jwks_uri, force_refresh=force_refresh), kid)

        if key is None and not fetched:
            logger.info("Signing key %s not cached, refreshing key set", kid)
            key = self._select(self.get_key_set(jwks_uri, force_refresh=True), kid)

        if key is None:
            raise SigningKeyNotFound(f"Signing key {kid!r} not found in key set")

        return key

    def invalidate(self, jwks_uri: str) -> None:
        self._entries.pop(jwks_uri, None)

    def _select(self, jwk_set: PyJWKSet, kid: str | None) -> PyJWK | None:
        if kid is None:
            signing_keys = [
                key
                for key in jwk_set.keys
                if getattr(key, "public_key_use", None) in (None, "sig")
            ]
            return signing_keys[0] if len(signing_keys) == 1 else None

        return next((key for key in jwk_set.keys if key.key_id == kid), None)
