import asyncio
import inspect
import os

# Configure the environment before any import that may build settings
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from schoolauth.app import create_app  # noqa: E402
from schoolauth.config import Settings, reset_settings_cache  # noqa: E402
from schoolauth.service.passwords import CredentialVerifier  # noqa: E402
from schoolauth.service.runtime import Runtime  # noqa: E402
from schoolauth.storage.memory_store import MemorySessionStore  # noqa: E402
from schoolauth.storage.users import MemoryUserDirectory  # noqa: E402

SEEDED_KEY = "a@b.com"
SEEDED_PASSWORD = "Secret123!"


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    return Settings(
        app_env="test",
        use_memory_store=True,
        test_mode=True,
        jwt_secret="Access-Secret_for-Automation-Only-123456789!",
        jwt_refresh_secret="Refresh-Secret_for-Automation-Only-987654321!",
    )


@pytest.fixture
def verifier():
    # Cheap parameters keep the suite fast; the algorithm is still argon2id
    return CredentialVerifier(
        PasswordHasher(type=Type.ID, time_cost=1, memory_cost=1024, parallelism=1)
    )


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def users():
    return MemoryUserDirectory()


@pytest.fixture
def seeded_user(users, verifier):
    return users.create_user(SEEDED_KEY, verifier.hash_password(SEEDED_PASSWORD), role_id=1)


@pytest.fixture
def runtime(settings, store, users, verifier):
    return Runtime(settings, store, users, verifier=verifier)


@pytest.fixture
def sessions(runtime):
    return runtime.sessions


@pytest.fixture
def app(runtime):
    return create_app(runtime)


@pytest.fixture
def client(app):
    return TestClient(app)


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
