import random

import pytest

from pipeline.backoff import RetryPolicy


def test_delay_doubles_until_cap():
    policy = RetryPolicy(base=1.0, cap=30.0, jitter=0.0)

    assert [policy.delay(n) for n in range(1, 8)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


def test_jitter_stays_in_band():
    policy = RetryPolicy(base=1.0, cap=30.0, jitter=0.2, rng=random.Random(3))

    for attempt in range(1, 6):
        raw = 2 ** (attempt - 1)
        delay = policy.delay(attempt)
        assert 0.8 * raw <= delay <= 1.2 * raw


def test_jitter_never_exceeds_cap():
    policy = RetryPolicy(base=1.0, cap=30.0, jitter=0.5, rng=random.Random(1))

    assert all(policy.delay(10) <= 30.0 for _ in range(50))


def test_zero_max_attempts_is_unbounded():
    policy = RetryPolicy(max_attempts=0)

    assert not policy.exhausted(10_000)


def test_exhausted_after_max_attempts():
    policy = RetryPolicy(max_attempts=3)

    assert not policy.exhausted(2)
    assert policy.exhausted(3)


@pytest.mark.parametrize("kwargs", [{"base": 0}, {"cap": -1}, {"jitter": 1.0}, {"jitter": -0.1}])
def test_invalid_policy_rejected(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)
