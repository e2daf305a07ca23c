"""Shared pytest fixtures."""

import os

# Settings are read at import time
os.environ.setdefault("SESSION_SECRET", "test-session-secret-0123456789abcdef0123")
os.environ.setdefault("STORE_BACKEND", "memory")

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from trustcore.config import Settings  # noqa: E402
from trustcore.container import ServiceContainer, build_services  # noqa: E402
from trustcore.main import create_app  # noqa: E402

# Start of a TOTP step (multiple of 30)
START_TIME = 1_699_999_980.0


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """Fresh fake clock at a fixed instant."""
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    """Memory-backed settings with a fast bcrypt cost."""
    return Settings(
        store_backend="memory",
        api_key_bcrypt_rounds=4,
        session_secret="test-session-secret-0123456789abcdef0123",
    )


@pytest.fixture
def services(test_settings: Settings, clock: FakeClock) -> ServiceContainer:
    """Unstarted service container over in-process storage."""
    return build_services(test_settings, clock=clock)


@pytest.fixture
async def api_client(services: ServiceContainer):
    """HTTP client bound to an app using the test services."""
    app = create_app(services=services, config=services.settings)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
