import asyncio
import inspect
import os
import sys
from pathlib import Path

# Must be set before anything imports usergate.config
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("EMAIL_DOMAIN_CHECK", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from usergate.app import create_app  # noqa: E402
from usergate.config import Settings, reset_settings_cache  # noqa: E402
from usergate.service.runtime import Runtime  # noqa: E402
from usergate.storage.memory import MemoryStore  # noqa: E402
from usergate.storage.memory_cache import MemoryCache  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-0123456789"
STRONG_PASSWORD = "Abc12345!"


class FakeClock:
    """Settable clock shared by token and cache tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDomainChecker:
    """Accepts only the domains it was given; records every lookup."""

    def __init__(self, domains=("gmail.com", "example.org", "mail.test")) -> None:
        self.domains = set(domains)
        self.lookups = []

    async def domain_receives_mail(self, domain: str) -> bool:
        self.lookups.append(domain)
        return domain in self.domains


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        use_memory_store=True,
        redis_url=None,
        jwt_secret=TEST_SECRET,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def cache_backend():
    return MemoryCache()


@pytest.fixture
def domains():
    return FakeDomainChecker()


@pytest.fixture
def runtime(settings, memory_store, cache_backend, domains):
    return Runtime(
        settings,
        store=memory_store,
        cache_backend=cache_backend,
        domain_checker=domains,
    )


@pytest.fixture
def client(runtime):
    """Create a test client for the API."""
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


@pytest.fixture
def make_user(client):
    """Register a user over HTTP and return ``(user, token)``."""

    def _make(name="bob", email="bob@gmail.com", password=STRONG_PASSWORD, role="user"):
        created = client.post(
            "/auth/users/register",
            json={"name": name, "email": email, "password": password, "role": role},
        )
        assert created.status_code == 201, created.json()
        login = client.post(
            "/auth/users/login", json={"email": email, "password": password}
        )
        assert login.status_code == 200, login.json()
        return created.json()["user"], login.json()["token"]

    return _make


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def auth_header():
    def _header(token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    return _header


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
