from collections.abc import Generator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from portal_auth.router import AuthRouter

from tests.helpers import ENV, MemoryAccountsStorage


@pytest.fixture
def auth_router(accounts_storage: MemoryAccountsStorage) -> AuthRouter:
    return AuthRouter(
        accounts_storage=accounts_storage,
        session_secret="test-session-secret",
        env=ENV,
        session_config={"cookie_secure": False},
    )


@pytest.fixture
def test_app(auth_router: AuthRouter) -> FastAPI:
    app = FastAPI()

    app.include_router(auth_router)
    app.middleware("http")(auth_router.link_gate_middleware)

    @app.get("/profile")
    def profile() -> dict[str, str]:
        return {"page": "profile"}

    @app.get("/auth/complete")
    def complete() -> dict[str, str]:
        return {"page": "complete"}

    @app.get("/businesses")
    def businesses() -> dict[str, str]:
        return {"page": "businesses"}

    return app


@pytest.fixture
def client(test_app: FastAPI) -> Generator[TestClient, None, None]:
    with TestClient(test_app, follow_redirects=False) as c:
        yield c
