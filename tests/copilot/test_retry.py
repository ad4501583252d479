import pytest

from src.copilot.services.retry import RetryPolicy


class Flaky(Exception):
    pass


def test_backoff_doubles_and_caps():
    sleeps = []

    def operation():
        raise Flaky("always")

    policy = RetryPolicy(max_attempts=6, backoff_seconds=0.5, max_backoff_seconds=3.0, sleep=sleeps.append)

    with pytest.raises(Flaky):
        policy.run(operation, retry_if=lambda exc: True)
    assert sleeps == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_retries_until_success_and_sleeps_between_attempts():
    sleeps = []
    calls = []

    def operation():
        calls.append(1)
        if len(calls) < 3:
            raise Flaky("not yet")
        return "done"

    policy = RetryPolicy(max_attempts=3, backoff_seconds=0.5, sleep=sleeps.append)

    assert policy.run(operation, retry_if=lambda exc: isinstance(exc, Flaky)) == "done"
    assert len(calls) == 3
    assert sleeps == [0.5, 1.0]


def test_gives_up_after_max_attempts_and_reraises_last_error():
    sleeps = []
    calls = []

    def operation():
        calls.append(1)
        raise Flaky(f"attempt {len(calls)}")

    policy = RetryPolicy(max_attempts=3, backoff_seconds=0.0, sleep=sleeps.append)

    with pytest.raises(Flaky, match="attempt 3"):
        policy.run(operation, retry_if=lambda exc: True)
    assert len(calls) == 3
    assert len(sleeps) == 2


def test_does_not_retry_errors_the_predicate_rejects():
    calls = []

    def operation():
        calls.append(1)
        raise ValueError("permanent")

    policy = RetryPolicy(max_attempts=5, sleep=lambda _: None)

    with pytest.raises(ValueError):
        policy.run(operation, retry_if=lambda exc: isinstance(exc, Flaky))
    assert len(calls) == 1
