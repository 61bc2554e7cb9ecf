import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("TOKEN_PURGE_INTERVAL_SECONDS", "0")
# Use Redis in tests via SyncRedisCache to avoid async event loop issues
# Falls back to the in-process blacklist if Redis is not available
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authcentral.config import Settings  # noqa: E402
from authcentral.service.audit import AuditLogger  # noqa: E402
from authcentral.service.auth import AuthService  # noqa: E402
from authcentral.service.rbac import AccessControlService  # noqa: E402
from authcentral.service.revocation import RevocationRegistry  # noqa: E402
from authcentral.service.runtime import reset_runtime_for_tests  # noqa: E402
from authcentral.service.tokens import TokenIssuer, TokenVerifier  # noqa: E402
from authcentral.storage.common import BoundedStore  # noqa: E402
from authcentral.storage.memory import MemoryStore  # noqa: E402
from authcentral.storage.redis_cache import MemoryTokenCache  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"
TEST_ISSUER = "authcentral-test"


class FakeClock:
    """Settable wall clock shared by issuer, verifier and token cache."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ServiceBundle:
    """Services wired the way Runtime wires them, over a memory store."""

    def __init__(self, *, clock=None, cache=None, **overrides):
        values = {
            "jwt_secret": TEST_SECRET,
            "jwt_issuer": TEST_ISSUER,
            "use_memory_store": True,
            "test_mode": True,
        }
        values.update(overrides)
        self.settings = Settings(**values)
        self.clock = clock
        clock_kwargs = {"clock": clock} if clock is not None else {}
        self.store = MemoryStore()
        self.cache = cache if cache is not None else MemoryTokenCache(**clock_kwargs)
        self.bounded = BoundedStore(self.store, timeout_seconds=2.0)
        self.issuer = TokenIssuer(
            TEST_SECRET,
            issuer=TEST_ISSUER,
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            store=self.bounded,
            **clock_kwargs,
        )
        self.verifier = TokenVerifier(TEST_SECRET, issuer=TEST_ISSUER, **clock_kwargs)
        self.revocation = RevocationRegistry(self.cache, self.bounded, timeout_seconds=2.0)
        self.audit = AuditLogger(self.bounded)
        self.auth = AuthService(
            self.bounded, self.revocation, self.issuer, self.verifier, self.audit, self.settings
        )
        self.rbac = AccessControlService(self.bounded, self.revocation, self.audit)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def services():
    return ServiceBundle()


@pytest.fixture
def make_services():
    """Factory for bundles with a custom clock, cache or settings overrides."""
    return ServiceBundle


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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
