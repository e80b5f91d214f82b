import pytest

from tokengate.config import reset_settings_cache
from tokengate.service.revocation import InMemoryRevocationRegistry
from tokengate.service.runtime import (
    Runtime,
    _mask_url_password,
    get_runtime,
    reset_runtime_for_tests,
)
from tokengate.storage.memory import MemoryStore

UNREACHABLE_REDIS = "redis://127.0.0.1:1/0"


@pytest.fixture
def redis_backend(monkeypatch):
    monkeypatch.setenv("REVOCATION_BACKEND", "redis")
    monkeypatch.setenv("REDIS_URL", UNREACHABLE_REDIS)
    reset_settings_cache()
    yield monkeypatch
    reset_settings_cache()


def test_memory_backend_by_default():
    runtime = Runtime()
    assert isinstance(runtime.store, MemoryStore)
    assert isinstance(runtime.registry, InMemoryRevocationRegistry)
    assert runtime.cache is None


def test_unreachable_redis_falls_back_in_test_mode(redis_backend):
    runtime = Runtime()
    assert runtime.cache is None
    assert isinstance(runtime.registry, InMemoryRevocationRegistry)


def test_unreachable_redis_is_fatal_outside_test_mode(redis_backend):
    redis_backend.setenv("TEST_MODE", "false")
    redis_backend.setenv("ALLOW_REDIS_FALLBACK_DEV", "false")
    reset_settings_cache()

    with pytest.raises(RuntimeError, match="Redis is required"):
        Runtime()


def test_dev_fallback_flag_allows_memory_registry(redis_backend):
    redis_backend.setenv("TEST_MODE", "false")
    redis_backend.setenv("ALLOW_REDIS_FALLBACK_DEV", "true")
    reset_settings_cache()

    runtime = Runtime()
    assert isinstance(runtime.registry, InMemoryRevocationRegistry)


@pytest.mark.parametrize(
    "url,expected",
    [
        ("postgresql://user:hunter2@db:5432/app", "postgresql://user:***@db:5432/app"),
        ("redis://localhost:6379/0", "redis://localhost:6379/0"),
        (None, None),
    ],
)
def test_mask_url_password(url, expected):
    assert _mask_url_password(url) == expected


class ClosableCache:
    def __init__(self):
        self.closed = False

    async def close(self):
        self.closed = True


def test_reset_closes_cache_and_rebuilds_runtime():
    previous = get_runtime()
    cache = ClosableCache()
    previous.cache = cache

    fresh = reset_runtime_for_tests()

    assert cache.closed is True
    assert fresh is not previous
    assert get_runtime() is fresh
