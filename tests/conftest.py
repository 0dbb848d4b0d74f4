import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before anything builds Settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("APP_ENV", "development")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-9876543210")
# Cheap argon2 so the suite stays fast
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("LOGIN_RATE_LIMIT_PER_MINUTE", "1000")
os.environ.setdefault("RESET_CONFIRM_RATE_LIMIT_PER_MINUTE", "1000")
os.environ.pop("REDIS_URL", None)
os.environ.pop("SMTP_HOST", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from classifieds.config import Settings  # noqa: E402
from classifieds.service.auth import AuthService  # noqa: E402
from classifieds.service.passwords import PasswordHasherGateway  # noqa: E402
from classifieds.service.runtime import reset_runtime_for_tests  # noqa: E402
from classifieds.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_access_secret="unit-access-secret-0123456789abcdef",
        jwt_refresh_secret="unit-refresh-secret-0123456789abcdef",
        argon2_memory_cost=1024,
        argon2_time_cost=1,
        jwt_refresh_ttl_days=30,
        jwt_refresh_max_ttl_days=60,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def hasher(settings):
    return PasswordHasherGateway.from_settings(settings)


@pytest.fixture
def auth_service(memory_store, settings, clock, hasher):
    return AuthService(memory_store, settings, clock=clock, hasher=hasher)


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
