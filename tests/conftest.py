import asyncio
import inspect
import os
import sys
from pathlib import Path

# Seed the environment before anything imports settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("REVOCATION_BACKEND", "memory")
os.environ.setdefault("ACCESS_TOKEN_SECRET", "test-access-secret-do-not-use-in-production")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret-do-not-use-in-production")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tokengate.config import Settings  # noqa: E402
from tokengate.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        access_token_secret="unit-access-secret",
        refresh_token_secret="unit-refresh-secret",
        password_hash_time_cost=1,
        password_hash_memory_cost=1024,
        use_memory_store=True,
        test_mode=True,
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
