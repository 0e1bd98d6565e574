import asyncio
import itertools
import threading

import pytest

from paywizard.errors import RateLimitError
from paywizard.infra.ratelimit import RateLimiter


async def _ok():
    return "done"


def test_rejects_bad_configuration():
    with pytest.raises(ValueError):
        RateLimiter(min_interval=0)
    with pytest.raises(ValueError):
        RateLimiter(min_interval=1000, max_concurrent=0)


def test_fresh_limiter_can_proceed(limiter):
    assert limiter.can_proceed()
    assert limiter.remaining_wait_time() == 0


async def test_wait_time_decays_after_execute(limiter, clock):
    assert await limiter.execute(_ok) == "done"

    assert not limiter.can_proceed()
    assert limiter.remaining_wait_time() == pytest.approx(5000)

    clock.advance(2000)
    assert limiter.remaining_wait_time() == pytest.approx(3000)

    clock.advance(3000)
    assert limiter.can_proceed()
    assert limiter.remaining_wait_time() == 0


async def test_second_call_inside_interval_is_rejected(limiter, clock):
    calls = []

    async def op():
        calls.append(1)

    await limiter.execute(op)
    clock.advance(1200)
    with pytest.raises(RateLimitError) as exc:
        await limiter.execute(op)

    assert calls == [1]
    assert exc.value.wait_ms == pytest.approx(3800)
    assert exc.value.retry_after_s == 4
    assert "4 seconds" in str(exc.value)


async def test_concurrency_cap_ignores_elapsed_time(clock):
    limiter = RateLimiter(min_interval=10, max_concurrent=1, clock=clock)
    release = asyncio.Event()

    async def slow():
        await release.wait()
        return "slow"

    first = asyncio.create_task(limiter.execute(slow))
    await asyncio.sleep(0)
    assert limiter.active_requests == 1

    clock.advance(60_000)
    with pytest.raises(RateLimitError):
        await limiter.execute(_ok)

    release.set()
    assert await first == "slow"
    assert limiter.active_requests == 0
    assert await limiter.execute(_ok) == "done"


async def test_counter_released_when_operation_fails(limiter):
    async def boom():
        raise RuntimeError("collaborator down")

    with pytest.raises(RuntimeError):
        await limiter.execute(boom)
    assert limiter.active_requests == 0


async def test_block_and_unblock(limiter):
    limiter.block()
    assert limiter.blocked
    assert not limiter.can_proceed()
    with pytest.raises(RateLimitError):
        await limiter.execute(_ok)

    limiter.unblock()
    assert await limiter.execute(_ok) == "done"


def test_snapshot(limiter):
    snap = limiter.snapshot()
    assert snap["can_proceed"] is True
    assert snap["remaining_ms"] == 0
    assert snap["active_requests"] == 0
    assert snap["min_interval_ms"] == 5000
    assert snap["max_concurrent"] is None
    assert snap["blocked"] is False


def ticking_clock(step: float = 1000):
    ticks = itertools.count(0, step)
    return lambda: next(ticks)


async def test_in_flight_count_never_exceeds_cap():
    limiter = RateLimiter(
        min_interval=1, max_concurrent=3, clock=ticking_clock()
    )
    release = asyncio.Event()
    peak = 0

    async def op():
        nonlocal peak
        peak = max(peak, limiter.active_requests)
        await release.wait()
        return "ok"

    calls = [asyncio.create_task(limiter.execute(op)) for _ in range(10)]
    await asyncio.sleep(0)
    assert limiter.active_requests == 3

    release.set()
    results = await asyncio.gather(*calls, return_exceptions=True)
    assert results.count("ok") == 3
    assert sum(isinstance(r, RateLimitError) for r in results) == 7
    assert peak == 3
    assert limiter.active_requests == 0


def test_in_flight_count_is_consistent_across_threads():
    limiter = RateLimiter(
        min_interval=1, max_concurrent=4, clock=ticking_clock()
    )
    lock = threading.Lock()
    peak = 0
    accepted = 0

    async def op():
        nonlocal peak
        with lock:
            peak = max(peak, limiter.active_requests)
        await asyncio.sleep(0.002)

    def worker():
        nonlocal accepted
        for _ in range(20):
            try:
                asyncio.run(limiter.execute(op))
            except RateLimitError:
                continue
            with lock:
                accepted += 1

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert accepted > 0
    assert 1 <= peak <= 4
    assert limiter.active_requests == 0
