import random

import httpx
import pytest
from targetprocess_mcp.core.errors import (
    ClientError,
    CompileError,
    TargetProcessParseError,
    TerminalError,
    TransientAPIError,
)
from targetprocess_mcp.core.retry import (
    AttemptTrace,
    RetryExecutor,
    RetryPolicy,
    classify_failure,
)


def _error(status):
    cls = TransientAPIError if status >= 500 else ClientError
    return cls(status_code=status, method="GET", url="/Bugs", message=f"status {status}")


class Scripted:
    """Request function that plays back a list of statuses (200 = success)."""

    def __init__(self, statuses):
        self.statuses = list(statuses)
        self.calls = 0

    async def __call__(self):
        status = self.statuses[min(self.calls, len(self.statuses) - 1)]
        self.calls += 1
        if status == 200:
            return {"ok": True}
        raise _error(status)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def executor(sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    return RetryExecutor(RetryPolicy(max_attempts=3), sleep=fake_sleep, rng=random.Random(7))


@pytest.mark.asyncio
async def test_persistent_503_exhausts_budget(executor, sleeps):
    fn = Scripted([503])
    trace = AttemptTrace()

    with pytest.raises(TerminalError) as exc:
        await executor.execute(fn, context="list bugs", trace=trace)

    assert fn.calls == 3
    assert exc.value.attempts == 3
    assert exc.value.exhausted is True
    assert exc.value.status_code == 503
    assert str(exc.value).startswith("Failed to list bugs after 3 attempts")
    assert len(sleeps) == 2
    assert trace.attempts == 3 and trace.exhausted


@pytest.mark.asyncio
async def test_recovers_on_third_attempt(executor):
    fn = Scripted([503, 503, 200])
    trace = AttemptTrace()

    result = await executor.execute(fn, trace=trace)

    assert result == {"ok": True}
    assert fn.calls == 3
    assert trace.succeeded
    assert [r.outcome for r in trace.records] == ["retryable", "retryable", "success"]


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [400, 401])
async def test_bad_request_and_unauthorized_never_retry(status, sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    # even a policy that asks for them is overridden
    policy = RetryPolicy(max_attempts=5, retry_statuses=frozenset({400, 401}))
    executor = RetryExecutor(policy, sleep=fake_sleep)
    fn = Scripted([status, 200])

    with pytest.raises(TerminalError) as exc:
        await executor.execute(fn)

    assert fn.calls == 1
    assert exc.value.exhausted is False
    assert exc.value.status_code == status
    assert sleeps == []


@pytest.mark.asyncio
async def test_404_is_permanent(executor):
    fn = Scripted([404, 200])
    with pytest.raises(TerminalError):
        await executor.execute(fn)
    assert fn.calls == 1


@pytest.mark.asyncio
async def test_whitelisted_429_is_retried(executor):
    fn = Scripted([429, 200])
    policy = RetryPolicy(max_attempts=3, retry_statuses=frozenset({429}))

    assert await executor.execute(fn, policy) == {"ok": True}
    assert fn.calls == 2


@pytest.mark.asyncio
async def test_network_errors_are_transient(executor):
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 2:
            raise httpx.ConnectError("connection refused")
        return "done"

    assert await executor.execute(flaky) == "done"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_compile_errors_pass_through_unwrapped(executor):
    async def broken():
        raise CompileError("bad operator")

    with pytest.raises(CompileError):
        await executor.execute(broken)


@pytest.mark.asyncio
async def test_single_attempt_policy(executor):
    fn = Scripted([503, 200])
    with pytest.raises(TerminalError) as exc:
        await executor.execute(fn, RetryPolicy(max_attempts=1))
    assert fn.calls == 1
    assert exc.value.exhausted is True


def test_parse_errors_are_not_retryable():
    assert classify_failure(TargetProcessParseError("bad"), RetryPolicy()) is False


def test_backoff_grows_and_is_capped():
    policy = RetryPolicy(base_delay=1.0, backoff_factor=2.0, max_delay=5.0, jitter_ratio=0)
    assert [policy.delay_for(n) for n in range(1, 7)] == [0.0, 1.0, 2.0, 4.0, 5.0, 5.0]


def test_jitter_stays_within_ratio():
    policy = RetryPolicy(base_delay=2.0, jitter_ratio=0.1)
    rng = random.Random(1)
    for _ in range(200):
        assert 1.8 <= policy.delay_for(2, rng) <= 2.2


def test_custom_predicate_replaces_default_rule():
    policy = RetryPolicy(retryable_status_predicate=lambda s: s == 409)
    assert policy.is_retryable_status(409)
    assert not policy.is_retryable_status(503)
    assert not policy.is_retryable_status(400)


@pytest.mark.parametrize(
    "kwargs",
    [{"max_attempts": 0}, {"base_delay": -1}, {"backoff_factor": 0.5}, {"jitter_ratio": 1}],
)
def test_invalid_policies_rejected(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)
