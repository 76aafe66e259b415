"""Unit tests for the retry delay curve."""

import pytest

from billflow.common.backoff import LINEAR, BackoffPolicy
from billflow.common.config import CommonSettings


def test_exponential_delays_double_from_base():
    """Each retry doubles the previous delay until the cap."""

    policy = BackoffPolicy(300000, 86400000)

    assert [policy.delay_ms(n) for n in range(4)] == [300000, 600000, 1200000, 2400000]


def test_delay_is_capped_even_for_huge_retry_counts():
    policy = BackoffPolicy(300000, 86400000)

    assert policy.delay_ms(9) == 86400000
    assert policy.delay_ms(10**6) == 86400000


def test_delay_is_bounded_and_non_decreasing():
    """No delay leaves [base, max] and none is shorter than the one before."""

    for policy in (BackoffPolicy(300000, 86400000), BackoffPolicy(1000, 5000, LINEAR)):
        delays = [policy.delay_ms(n) for n in range(80)]
        assert all(policy.base_ms <= delay <= policy.max_ms for delay in delays)
        assert delays == sorted(delays)


def test_linear_growth_adds_base_per_retry():
    policy = BackoffPolicy(1000, 5000, LINEAR)

    assert [policy.delay_ms(n) for n in range(6)] == [1000, 2000, 3000, 4000, 5000, 5000]


def test_negative_retry_count_is_treated_as_zero():
    assert BackoffPolicy(300000, 86400000).delay_ms(-3) == 300000


@pytest.mark.parametrize(
    "base_ms,max_ms,growth",
    [(0, 1000, "exponential"), (2000, 1000, "exponential"), (1000, 2000, "cubic")],
)
def test_invalid_policy_is_rejected(base_ms, max_ms, growth):
    with pytest.raises(ValueError):
        BackoffPolicy(base_ms, max_ms, growth)


def test_policy_from_settings():
    """The curve is selected by configuration."""

    config = CommonSettings(_env_file=None, backoff_base_ms=10, backoff_max_ms=100, backoff_growth="linear")

    policy = BackoffPolicy.from_settings(config)

    assert (policy.base_ms, policy.max_ms, policy.growth) == (10, 100, LINEAR)
    assert policy.delay_ms(2) == 30
