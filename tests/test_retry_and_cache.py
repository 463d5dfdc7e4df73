import asyncio

import pytest

from tvbooking.cache import MemoizedLoader, TTLCache
from tvbooking.exceptions import ExternalServiceError, ExternalTimeoutError, StateConflictError
from tvbooking.retry import Failed, Succeeded, TimedOut, invoke_with_retry


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


# --------------------------------------------------------------------
# invoke_with_retry
# --------------------------------------------------------------------
async def test_succeeds_after_transient_errors():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ExternalServiceError("stripe", "HTTP 503")
        return "ok"

    result = await invoke_with_retry(flaky, timeout=1, max_attempts=3, retry_delay=0)
    assert isinstance(result, Succeeded)
    assert result.value == "ok"
    assert result.attempts == 3


async def test_times_out_when_every_attempt_hangs():
    async def hang():
        await asyncio.sleep(5)

    result = await invoke_with_retry(hang, timeout=0.01, max_attempts=2, retry_delay=0)
    assert isinstance(result, TimedOut)
    assert result.attempts == 2
    error = result.as_error("stripe")
    assert isinstance(error, ExternalTimeoutError)
    assert "taking longer than expected" in error.public_message


async def test_reported_timeout_counts_as_timeout():
    calls = []

    async def slow_provider():
        calls.append(1)
        raise ExternalTimeoutError("stripe", 30)

    result = await invoke_with_retry(slow_provider, timeout=1, max_attempts=3, retry_delay=0)
    assert isinstance(result, TimedOut)
    assert len(calls) == 3


async def test_state_conflict_is_not_retried():
    calls = []

    async def conflict():
        calls.append(1)
        raise StateConflictError("already captured", current_state="succeeded")

    result = await invoke_with_retry(conflict, timeout=1, max_attempts=3, retry_delay=0)
    assert isinstance(result, Failed)
    assert result.attempts == 1
    assert len(calls) == 1


async def test_gives_up_after_max_attempts():
    async def down():
        raise ExternalServiceError("twilio", "HTTP 500")

    result = await invoke_with_retry(down, timeout=1, max_attempts=2, retry_delay=0)
    assert isinstance(result, Failed)
    assert result.attempts == 2
    assert "HTTP 500" in str(result.error)


# --------------------------------------------------------------------
# TTLCache
# --------------------------------------------------------------------
def test_ttl_cache_expires_entries():
    clock = FakeClock()
    cache = TTLCache(ttl=60, clock=clock)
    cache.set("services", ["mount"])
    assert cache.get("services") == ["mount"]

    clock.now += 61
    assert cache.get("services") is None
    assert len(cache) == 0


def test_ttl_cache_invalidate():
    cache = TTLCache(ttl=60)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.invalidate("a")
    assert cache.get("a", "missing") == "missing"
    cache.invalidate()
    assert len(cache) == 0


# --------------------------------------------------------------------
# MemoizedLoader
# --------------------------------------------------------------------
async def test_concurrent_callers_share_one_load():
    started = asyncio.Event()
    release = asyncio.Event()

    async def load():
        started.set()
        await release.wait()
        return {"features": 3}

    loader = MemoizedLoader(load, name="test dataset")
    first = asyncio.ensure_future(loader.get())
    second = asyncio.ensure_future(loader.get())
    await started.wait()
    release.set()

    assert await first == {"features": 3}
    assert await second == {"features": 3}
    assert loader.load_count == 1
    assert await loader.get() == {"features": 3}
    assert loader.load_count == 1


async def test_failed_load_is_retried_on_next_call():
    attempts = []

    async def load():
        attempts.append(1)
        if len(attempts) == 1:
            raise OSError("file missing")
        return "loaded"

    loader = MemoizedLoader(load)
    with pytest.raises(OSError):
        await loader.get()
    assert loader.peek() is None
    assert await loader.get() == "loaded"
    assert loader.load_count == 2


async def test_loader_ttl_reloads():
    clock = FakeClock()
    values = iter(["v1", "v2"])

    async def load():
        return next(values)

    loader = MemoizedLoader(load, ttl=10, clock=clock)
    assert await loader.get() == "v1"
    clock.now += 11
    assert await loader.get() == "v2"
