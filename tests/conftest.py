import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("JWT_SECRET", "test-access-secret-key-for-testing-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-key-for-testing-only-9876543210")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from telemed_auth.config import Settings  # noqa: E402
from telemed_auth.service.auth import AuthService  # noqa: E402
from telemed_auth.service.clock import FrozenClock  # noqa: E402
from telemed_auth.service.passwords import CredentialVerifier  # noqa: E402
from telemed_auth.service.tokens import TokenCodec  # noqa: E402
from telemed_auth.storage.memory import MemoryStore  # noqa: E402

TEST_PASSWORD = "Correct-Horse-42"


def make_settings(**overrides) -> Settings:
    values = {
        "jwt_secret": os.environ["JWT_SECRET"],
        "jwt_refresh_secret": os.environ["JWT_REFRESH_SECRET"],
        # Cheap argon2 parameters keep the suite fast.
        "argon2_time_cost": 1,
        "argon2_memory_cost": 1024,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def verifier(settings):
    return CredentialVerifier(
        time_cost=settings.argon2_time_cost, memory_cost=settings.argon2_memory_cost
    )


@pytest.fixture
def codec(settings, clock):
    return TokenCodec(settings, clock)


@pytest.fixture
def auth_service(memory_store, settings, clock, verifier, codec):
    return AuthService(memory_store, settings, clock=clock, verifier=verifier, codec=codec)


@pytest.fixture
def test_user(memory_store, verifier, clock):
    return memory_store.create_user(
        "patient@example.com",
        verifier.hash(TEST_PASSWORD),
        clock.now(),
        full_name="Test Patient",
    )


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
