"""Tests for the reconnect delay policy."""

from __future__ import annotations

import pytest

from lifeline.connection.backoff import BackoffConfig, BackoffPolicy
from lifeline.connection.classifier import ErrorCategory


@pytest.fixture
def policy():
    return BackoffPolicy()


class TestBackoffPolicy:
    """Tests for BackoffPolicy.delay_ms."""

    @pytest.mark.parametrize(
        "attempt,expected",
        [(1, 5_000), (2, 10_000), (3, 20_000), (4, 40_000), (5, 60_000), (10, 60_000)],
    )
    def test_other_is_exponential_and_capped(self, policy, attempt, expected):
        assert policy.delay_ms(ErrorCategory.OTHER, attempt) == expected

    @pytest.mark.parametrize(
        "resets,expected",
        [(1, 30_000), (2, 60_000), (3, 90_000), (6, 180_000), (50, 180_000)],
    )
    def test_stream_reset_is_linear_and_capped(self, policy, resets, expected):
        assert policy.delay_ms(ErrorCategory.STREAM_RESET, 1, resets) == expected

    def test_conflict_is_fixed(self, policy):
        assert policy.delay_ms(ErrorCategory.SESSION_CONFLICT, 1) == 15_000
        assert policy.delay_ms(ErrorCategory.SESSION_CONFLICT, 9) == 15_000

    def test_logged_out_has_no_delay(self, policy):
        assert policy.delay_ms(ErrorCategory.LOGGED_OUT, 1) is None

    def test_counters_clamp_to_one(self, policy):
        assert policy.delay_ms(ErrorCategory.OTHER, 0) == 5_000
        assert policy.delay_ms(ErrorCategory.OTHER, -3) == 5_000
        assert policy.delay_ms(ErrorCategory.STREAM_RESET, 1, 0) == 30_000

    def test_huge_attempt_does_not_overflow(self, policy):
        assert policy.delay_ms(ErrorCategory.OTHER, 10_000) == 60_000

    def test_delays_never_exceed_caps(self, policy):
        for n in range(1, 100):
            assert policy.delay_ms(ErrorCategory.OTHER, n) <= 60_000
            assert policy.delay_ms(ErrorCategory.STREAM_RESET, 1, n) <= 180_000

    def test_custom_config(self):
        policy = BackoffPolicy(BackoffConfig(base_delay_ms=100, max_delay_ms=250))

        assert policy.delay_ms(ErrorCategory.OTHER, 1) == 100
        assert policy.delay_ms(ErrorCategory.OTHER, 2) == 200
        assert policy.delay_ms(ErrorCategory.OTHER, 3) == 250
