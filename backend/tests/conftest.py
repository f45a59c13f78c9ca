"""
Pytest configuration and shared test fixtures.

Provides the test client, identity headers for shoppers, administrators and
sibling services, and cleanup of dependency overrides between tests.
"""

from typing import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from storefront.core.config import get_settings
from storefront.core.logging import clear_context
from storefront.main import app


def make_token(user_id: str, role: str = "customer") -> str:
    """Sign an identity token the way the identity provider would."""
    settings = get_settings()
    return jwt.encode(
        {"sub": user_id, "role": role},
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )


@pytest.fixture(scope="function")
def test_client() -> Generator[TestClient, None, None]:
    """
    Create a synchronous test client for the FastAPI application.

    The lifespan runs, so the shared HTTP client and notifier exist on
    app.state for the duration of the test.

    Yields:
        TestClient: Synchronous test client for FastAPI app
    """
    with TestClient(app) as client:
        yield client


@pytest.fixture
def user_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token('user-1')}"}


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token('admin-1', role='admin')}"}


@pytest.fixture
def session_headers() -> dict[str, str]:
    return {"X-Session-ID": "session-abc"}


@pytest.fixture
def service_headers() -> dict[str, str]:
    return {"X-Service-Token": get_settings().internal_service_token}


@pytest.fixture(autouse=True)
def reset_app_state() -> Generator[None, None, None]:
    """
    Reset application state between tests.

    Drops dependency overrides and logging context so one test's wiring
    never leaks into the next.
    """
    yield
    app.dependency_overrides.clear()
    clear_context()
