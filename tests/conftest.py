import asyncio
import inspect
import os

# Set before any import that might build settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from argon2 import PasswordHasher  # noqa: E402

from sessionguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from sessionguard.service.totp import TOTPService  # noqa: E402
from sessionguard.storage.memory import MemoryKVStore  # noqa: E402


class FakeClock:
    """Manually advanced epoch clock shared by stores and services."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def jwt_secret() -> str:
    return os.environ["JWT_SECRET"]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> MemoryKVStore:
    return MemoryKVStore(clock=clock)


@pytest.fixture
def totp_service(clock) -> TOTPService:
    # Minimal argon2 cost keeps backup-code hashing fast
    return TOTPService(
        clock=clock,
        hasher=PasswordHasher(time_cost=1, memory_cost=8, parallelism=1),
    )


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
