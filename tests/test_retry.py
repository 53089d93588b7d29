# tests/test_retry.py
import asyncio

import pytest

from app.credentials import Credential, CredentialPool
from app.errors import (
    AllCredentialsExhaustedError,
    EmptyPoolError,
    ProviderError,
    RateLimitedError,
    RetryableProviderError,
)
from app.retry import RotatingRetryExecutor


class SpyPool(CredentialPool):
    """Records every index handed to get()."""

    def __init__(self, values):
        super().__init__(values)
        self.requested: list[int] = []

    def get(self, index):
        self.requested.append(index)
        return super().get(index)


def make_executor(n, max_cycles=1):
    sleeps: list[float] = []

    async def fake_sleep(s):
        sleeps.append(s)

    pool = SpyPool([f"key-{i}" for i in range(n)])
    ex = RotatingRetryExecutor(pool, max_cycles=max_cycles, cooldown_s=2.0, backoff_s=1.0, sleep=fake_sleep)
    return ex, pool, sleeps


def always(exc_factory):
    seen: list[Credential] = []

    async def work(cred):
        seen.append(cred)
        raise exc_factory()

    return work, seen


# --------------------------------------------------------------------
# Credential pool
# --------------------------------------------------------------------
def test_empty_pool_refuses():
    with pytest.raises(EmptyPoolError):
        CredentialPool([])
    with pytest.raises(EmptyPoolError):
        CredentialPool.from_csv(" , ,")

def test_pool_wraps_any_index():
    pool = CredentialPool(["a", "b", "c"])
    assert pool.size() == 3
    assert pool.get(0).value == "a"
    assert pool.get(4).value == "b"
    assert pool.get(-1).value == "c"
    assert pool.get(4).index == 1

def test_pool_from_csv_trims_and_drops_blanks():
    pool = CredentialPool.from_csv(" a, b,,c ")
    assert [pool.get(i).value for i in range(pool.size())] == ["a", "b", "c"]

def test_credential_repr_hides_value():
    pool = CredentialPool(["super-secret"])
    assert "super-secret" not in repr(pool.get(0))
    assert "super-secret" not in repr(pool)


# --------------------------------------------------------------------
# Executor: index safety over a grid of pool sizes and start indices
# --------------------------------------------------------------------
@pytest.mark.asyncio
@pytest.mark.parametrize("n", range(1, 7))
@pytest.mark.parametrize("start", range(-3, 10))
async def test_every_attempt_uses_a_valid_index(n, start):
    ex, pool, _ = make_executor(n, max_cycles=1)
    work, seen = always(lambda: RetryableProviderError("nope"))

    with pytest.raises(AllCredentialsExhaustedError):
        await ex.run(work, start=start)

    assert pool.requested, "executor never asked for a credential"
    assert all(0 <= i < n for i in pool.requested)
    assert [c.index for c in seen] == [i % n for i in pool.requested]

    first = start % n
    expected = list(range(first, n)) + list(range(n))
    assert [c.index for c in seen] == expected
    assert len(seen) <= ex.max_attempts


# --------------------------------------------------------------------
# Executor: concrete bounds and outcomes
# --------------------------------------------------------------------
@pytest.mark.asyncio
async def test_three_keys_one_cycle_makes_exactly_six_attempts():
    ex, _, sleeps = make_executor(3, max_cycles=1)
    work, seen = always(lambda: RetryableProviderError("500"))

    with pytest.raises(AllCredentialsExhaustedError) as ei:
        await ex.run(work, start=0)

    assert len(seen) == 6
    assert ei.value.attempts == 6
    assert isinstance(ei.value.last_error, RetryableProviderError)
    assert sleeps == [2.0]  # one cooldown between the two passes

@pytest.mark.asyncio
@pytest.mark.parametrize("n,max_cycles", [(1, 0), (1, 2), (2, 1), (4, 2), (5, 0)])
async def test_permanent_failure_hits_the_attempt_ceiling(n, max_cycles):
    ex, _, _ = make_executor(n, max_cycles=max_cycles)
    work, seen = always(lambda: RetryableProviderError("down"))
    with pytest.raises(AllCredentialsExhaustedError):
        await ex.run(work)
    assert len(seen) == n * (max_cycles + 1) == ex.max_attempts

@pytest.mark.asyncio
async def test_rate_limit_backs_off_before_next_key():
    ex, _, sleeps = make_executor(3, max_cycles=1)
    work, seen = always(lambda: RateLimitedError("429", status=429))

    with pytest.raises(AllCredentialsExhaustedError):
        await ex.run(work)

    assert len(seen) == 6
    assert sleeps == [1.0, 1.0, 1.0, 2.0, 1.0, 1.0, 1.0]

@pytest.mark.asyncio
async def test_non_retryable_error_propagates_after_one_attempt():
    ex, _, sleeps = make_executor(3)
    err = ValueError("bad payload")
    seen = []

    async def work(cred):
        seen.append(cred)
        raise err

    with pytest.raises(ValueError) as ei:
        await ex.run(work)

    assert ei.value is err
    assert len(seen) == 1
    assert sleeps == []

@pytest.mark.asyncio
async def test_plain_provider_error_is_not_retried():
    ex, _, _ = make_executor(3)
    work, seen = always(lambda: ProviderError("404", status=404))
    with pytest.raises(ProviderError) as ei:
        await ex.run(work)
    assert not isinstance(ei.value, AllCredentialsExhaustedError)
    assert len(seen) == 1

@pytest.mark.asyncio
async def test_succeeds_on_third_key():
    ex, _, _ = make_executor(3)
    seen = []

    async def work(cred):
        seen.append(cred.index)
        if cred.index < 2:
            raise RetryableProviderError("403", status=403)
        return f"answer via {cred.value}"

    assert await ex.run(work, start=0) == "answer via key-2"
    assert seen == [0, 1, 2]

@pytest.mark.asyncio
async def test_success_after_wrapping_to_next_cycle():
    ex, _, sleeps = make_executor(3, max_cycles=1)
    calls = []

    async def work(cred):
        calls.append(cred.index)
        if len(calls) < 3:
            raise RetryableProviderError("busy")
        return "ok"

    assert await ex.run(work, start=1) == "ok"
    assert calls == [1, 2, 0]
    assert sleeps == [2.0]

@pytest.mark.asyncio
async def test_backoff_does_not_stall_other_callers():
    pool = CredentialPool(["key-0", "key-1"])
    ex = RotatingRetryExecutor(pool, max_cycles=0, cooldown_s=0.0, backoff_s=0.2)
    finished = []

    async def rate_limited_first(cred):
        if cred.index == 0:
            raise RateLimitedError("429", status=429)
        finished.append("slow")
        return "slow"

    async def immediate(cred):
        finished.append("fast")
        return "fast"

    results = await asyncio.gather(ex.run(rate_limited_first), ex.run(immediate))
    assert results == ["slow", "fast"]
    assert finished == ["fast", "slow"]
