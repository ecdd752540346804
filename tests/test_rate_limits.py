import pytest

from rollt.config import Settings
from rollt.service.runtime import Runtime, check_rate_limit, get_runtime
from rollt.storage.memory import MemoryStore
from rollt.storage.redis_cache import RedisCache


async def test_local_bucket_allows_up_to_limit():
    runtime = get_runtime()
    results = [await check_rate_limit(runtime, "login:a@example.com", 3, 60) for _ in range(4)]
    assert results == [True, True, True, False]


async def test_local_bucket_keys_are_independent():
    runtime = get_runtime()
    for _ in range(2):
        await check_rate_limit(runtime, "mfa:u1", 2, 60)
    assert await check_rate_limit(runtime, "mfa:u1", 2, 60) is False
    assert await check_rate_limit(runtime, "mfa:u2", 2, 60) is True


async def test_return_remaining_reports_reset():
    runtime = get_runtime()
    allowed, remaining, reset = await check_rate_limit(
        runtime, "password:u1", 1, 60, return_remaining=True
    )
    assert (allowed, remaining, reset) == (True, 0, 0)
    allowed, remaining, reset = await check_rate_limit(
        runtime, "password:u1", 1, 60, return_remaining=True
    )
    assert allowed is False
    assert reset > 0


async def test_zero_limit_disables_limiting():
    runtime = get_runtime()
    for _ in range(5):
        assert await check_rate_limit(runtime, "anything", 0, 60) is True


async def test_invalid_window_falls_back_to_default():
    runtime = get_runtime()
    assert await check_rate_limit(runtime, "window", 1, 0) is True
    assert await check_rate_limit(runtime, "window", 1, 0) is False


def test_runtime_requires_redis_outside_test_mode(tmp_path):
    settings = Settings(
        jwt_secret="x" * 40,
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=False,
        allow_redis_fallback_dev=False,
    )
    with pytest.raises(RuntimeError):
        Runtime(settings, store=MemoryStore(fs_root=str(tmp_path)))


def test_runtime_allows_dev_fallback(tmp_path):
    settings = Settings(
        jwt_secret="x" * 40,
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        allow_redis_fallback_dev=True,
    )
    runtime = Runtime(settings)
    assert runtime.cache is None
    assert isinstance(runtime.store, MemoryStore)


def test_redis_rate_key_is_hashed():
    key = RedisCache._normalize_rate_key("login:someone@example.com")
    assert key.startswith("rate:")
    assert "someone" not in key
    assert key == RedisCache._normalize_rate_key("login:someone@example.com")


async def test_redis_cache_interprets_script_result():
    calls = []

    async def fake_bucket(keys, args):
        calls.append((keys, args))
        return [0, "0.4", 3]

    cache = RedisCache.__new__(RedisCache)
    cache._token_bucket = fake_bucket

    result = await cache.check_rate_limit("login:x", 10, 60, return_remaining=True)

    assert result == (False, 0, 3)
    keys, args = calls[0]
    assert keys[0].startswith("rate:")
    assert args[1:] == [10 / 60, 10]
