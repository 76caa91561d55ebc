import random

import pytest

from topologies import FakeClock

from peering_orchestrator.core.errors import RemoteStateError, RemoteTransientError
from peering_orchestrator.execution.base import PollPolicy, RetryPolicy
from peering_orchestrator.execution.retry import PollTimeout, backoff_delay, call_with_retry, poll_until


def flaky(failures, result="ok", error=RemoteTransientError):
    """Return a callable that raises error failures times, then returns result."""
    calls = {"n": 0}

    def fn():
        calls["n"] += 1
        if calls["n"] <= failures:
            raise error(f"attempt {calls['n']}")
        return result

    fn.calls = calls
    return fn


def test_backoff_grows_and_is_capped():
    policy = RetryPolicy(base_delay=1.0, multiplier=2.0, max_delay=5.0, jitter=0.0)

    assert [backoff_delay(policy, n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_backoff_jitter_stays_in_band():
    policy = RetryPolicy(base_delay=4.0, jitter=0.5)
    rng = random.Random(7)

    for _ in range(50):
        assert 2.0 <= backoff_delay(policy, 1, rng) <= 4.0


def test_transient_errors_are_retried_until_success():
    clock = FakeClock()
    fn = flaky(2)

    assert call_with_retry(fn, RetryPolicy(jitter=0.0), sleep=clock.sleep) == "ok"
    assert fn.calls["n"] == 3
    assert clock.sleeps == [0.5, 1.0]


def test_retry_gives_up_after_max_attempts():
    clock = FakeClock()
    fn = flaky(10)
    attempts = []

    with pytest.raises(RemoteTransientError):
        call_with_retry(fn, RetryPolicy(max_attempts=3), sleep=clock.sleep, on_attempt=attempts.append)

    assert attempts == [1, 2, 3]
    assert len(clock.sleeps) == 2


def test_state_errors_are_not_retried():
    clock = FakeClock()
    fn = flaky(1, error=RemoteStateError)

    with pytest.raises(RemoteStateError):
        call_with_retry(fn, RetryPolicy(), sleep=clock.sleep)

    assert fn.calls["n"] == 1
    assert clock.sleeps == []


def test_poll_returns_once_condition_holds():
    clock = FakeClock()
    values = iter(["pending", "pending", "running"])

    result = poll_until(
        lambda: next(values),
        lambda v: v == "running",
        PollPolicy(interval=1.0, multiplier=2.0),
        sleep=clock.sleep,
        clock=clock,
    )

    assert result == "running"
    assert clock.sleeps == [1.0, 2.0]


def test_poll_treats_transient_errors_as_not_converged():
    clock = FakeClock()
    probe = flaky(2, result="available")

    assert poll_until(probe, lambda v: v == "available", PollPolicy(), sleep=clock.sleep, clock=clock) == "available"


def test_poll_stop_condition_returns_early():
    clock = FakeClock()

    result = poll_until(
        lambda: "rejected",
        lambda v: v == "active",
        PollPolicy(),
        sleep=clock.sleep,
        clock=clock,
        stop=lambda v: v == "rejected",
    )

    assert result == "rejected"
    assert clock.sleeps == []


def test_poll_has_a_hard_ceiling():
    clock = FakeClock()

    with pytest.raises(PollTimeout) as exc:
        poll_until(
            lambda: "pending",
            lambda v: v == "active",
            PollPolicy(interval=3.0, multiplier=1.0),
            timeout=10.0,
            sleep=clock.sleep,
            clock=clock,
            label="accept a-b",
        )

    assert exc.value.last == "pending"
    assert exc.value.label == "accept a-b"
    assert clock.now == 10.0
    assert clock.sleeps == [3.0, 3.0, 3.0, 1.0]
