import json
from typing import Any

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from portal_auth._context import Context
from portal_auth.social_providers.auth0 import Auth0Provider
from tests.helpers import ENV, KEY_ID, MemoryAccountsStorage, User


@pytest.fixture(scope="session")
def private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def jwks(private_key: rsa.RSAPrivateKey) -> dict[str, Any]:
    jwk = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
    jwk.update({"kid": KEY_ID, "use": "sig", "alg": "RS256"})

    return {"keys": [jwk]}


@pytest.fixture
def accounts_storage() -> MemoryAccountsStorage:
    return MemoryAccountsStorage()


@pytest.fixture
def context(accounts_storage: MemoryAccountsStorage) -> Context:
    return Context(
        accounts_storage=accounts_storage,
        session_secret="test-session-secret",
        env=ENV,
    )


@pytest.fixture
def provider() -> Auth0Provider:
    return Auth0Provider()


@pytest.fixture
def partially_linked_user(accounts_storage: MemoryAccountsStorage) -> User:
    return accounts_storage.add_user("partial@example.com", providers=("discord",))


@pytest.fixture
def fully_linked_user(accounts_storage: MemoryAccountsStorage) -> User:
    return accounts_storage.add_user(
        "complete@example.com", providers=("discord", "roblox")
    )
