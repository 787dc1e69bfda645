# tests/test_retry.py
"""Backoff math and retry decisions"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from symphony.core.errors import HandlerError, NonRetryableError
from symphony.core.retry import (
    DEFAULT_RETRY_STRATEGY,
    RetryStrategyConfig,
    RetryStrategyResolver,
    decide,
    next_available_at,
)


class TestRetryStrategyConfig:
    def test_defaults(self):
        s = DEFAULT_RETRY_STRATEGY
        assert (s.max_retries, s.delay, s.multiplier, s.max_delay) == (3, 1000, 2.0, 30000)

    def test_exponential_delays(self):
        s = RetryStrategyConfig()
        assert [s.delay_for(n) for n in range(3)] == [1000, 2000, 4000]

    def test_delay_capped_at_max_delay(self):
        s = RetryStrategyConfig(delay=1000, multiplier=10, max_delay=5000)
        assert s.delay_for(1) == 5000
        assert s.delay_for(500) == 5000

    def test_delays_never_decrease(self):
        s = RetryStrategyConfig(delay=300, multiplier=1.5, max_delay=20000)
        delays = [s.delay_for(n) for n in range(30)]
        assert delays == sorted(delays)
        assert max(delays) == 20000

    def test_accepts_camel_case(self):
        s = RetryStrategyConfig.model_validate({"maxRetries": 5, "delay": 100, "maxDelay": 1000})
        assert s.max_retries == 5
        assert s.max_delay == 1000

    def test_delay_above_cap_rejected(self):
        with pytest.raises(ValidationError):
            RetryStrategyConfig(delay=10_000, max_delay=1000)

    def test_negative_retries_rejected(self):
        with pytest.raises(ValidationError):
            RetryStrategyConfig(max_retries=-1)


class TestDecide:
    def test_default_strategy_walkthrough(self):
        """Failures retry after 1000, 2000, 4000ms; the fourth goes to the failed ledger."""
        error = HandlerError("smtp down", True)
        retry_count = 0
        delays = []
        while True:
            decision = decide(DEFAULT_RETRY_STRATEGY, retry_count, error)
            if not decision.should_retry:
                break
            delays.append(decision.delay_ms)
            retry_count = decision.new_retry_count

        assert delays == [1000, 2000, 4000]
        assert retry_count == 3
        assert decision.move_to_failed

    def test_non_retryable_goes_straight_to_failed(self):
        decision = decide(DEFAULT_RETRY_STRATEGY, 0, HandlerError("bad payload", False))
        assert not decision.should_retry
        assert decision.move_to_failed
        assert decision.new_retry_count == 0

    def test_non_retryable_marker_exception(self):
        assert decide(DEFAULT_RETRY_STRATEGY, 0, NonRetryableError("nope")).move_to_failed

    def test_plain_exceptions_are_retryable(self):
        assert decide(DEFAULT_RETRY_STRATEGY, 0, RuntimeError("boom")).should_retry

    def test_zero_retries(self):
        decision = decide(RetryStrategyConfig(max_retries=0), 0, RuntimeError("boom"))
        assert decision.move_to_failed

    def test_next_available_at(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert next_available_at(DEFAULT_RETRY_STRATEGY, 1, now) == now + timedelta(milliseconds=2000)


class TestRetryStrategyResolver:
    def test_falls_back_to_default(self):
        resolver = RetryStrategyResolver()
        assert resolver.get_strategy("anything") == DEFAULT_RETRY_STRATEGY

    def test_per_type_override(self):
        fast = RetryStrategyConfig(max_retries=1, delay=10, max_delay=10)
        resolver = RetryStrategyResolver({"ping": fast})
        assert resolver.get_strategy("ping") is fast
        assert resolver.decide("ping", 1, RuntimeError()).move_to_failed
        assert resolver.decide("other", 1, RuntimeError()).should_retry
        assert resolver.list_types() == ["ping"]

    def test_explicit_default(self):
        custom = RetryStrategyConfig(max_retries=7)
        resolver = RetryStrategyResolver({"default": custom})
        assert resolver.default is custom
