"""
Tests for RetryPolicy and backoff arithmetic.
"""

import pytest
from pydantic import ValidationError

from nodeflow.graph import RetryPolicy, delay_for, should_retry


def test_defaults():
    policy = RetryPolicy()
    assert policy.max_retries == 3
    assert policy.retry_delay == 1000
    assert policy.backoff_multiplier == 2.0
    assert policy.max_attempts == 4


@pytest.mark.parametrize(
    "attempt,expected",
    [(1, 100), (2, 200), (3, 400), (4, 800)],
)
def test_exponential_backoff(attempt, expected):
    assert delay_for(attempt, retry_delay=100, backoff_multiplier=2) == expected


def test_multiplier_of_one_is_constant_delay():
    policy = RetryPolicy(max_retries=5, retry_delay=250, backoff_multiplier=1)
    assert [policy.delay_for(n) for n in range(1, 5)] == [250, 250, 250, 250]


def test_should_retry_allows_max_retries_plus_one_attempts():
    assert should_retry(1, max_retries=2)
    assert should_retry(2, max_retries=2)
    assert not should_retry(3, max_retries=2)
    assert not should_retry(1, max_retries=0)


def test_camel_case_aliases():
    policy = RetryPolicy.model_validate(
        {"maxRetries": 1, "retryDelay": 500, "backoffMultiplier": 3}
    )
    assert policy.max_retries == 1
    assert policy.delay_for(2) == 1500


@pytest.mark.parametrize(
    "options",
    [{"max_retries": -1}, {"retry_delay": -5}, {"backoff_multiplier": 0.5}],
)
def test_out_of_range_values_rejected(options):
    with pytest.raises(ValidationError):
        RetryPolicy(**options)
