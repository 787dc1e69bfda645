# symphony/core/retry.py
"""
Per-message-type exponential backoff.

    delay(n) = min(delay * multiplier ** n, max_delay)        (milliseconds)

``n`` is the number of retries already made (0 for the first failure).
With the default strategy {max_retries: 3, delay: 1000, multiplier: 2,
max_delay: 30000} failures are retried after 1000ms, 2000ms and 4000ms;
the fourth failure exhausts the budget and the envelope goes to the
failed-message ledger.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Mapping

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_STRATEGY_NAME = "default"


class RetryStrategyConfig(BaseModel):
    """Backoff policy. Accepts snake_case or the camelCase keys used in JSON env vars."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    max_retries: int = Field(default=3, ge=0, alias="maxRetries")
    delay: int = Field(default=1000, ge=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    max_delay: int = Field(default=30000, ge=0, alias="maxDelay")

    @model_validator(mode="after")
    def _delay_within_cap(self) -> RetryStrategyConfig:
        if self.delay > self.max_delay:
            raise ValueError("delay must be <= max_delay")
        return self

    def delay_for(self, retry_count: int) -> int:
        """Backoff in milliseconds before retry number ``retry_count + 1``."""
        if retry_count < 0:
            retry_count = 0
        try:
            raw = self.delay * (self.multiplier ** retry_count)
        except OverflowError:
            return self.max_delay
        return int(min(raw, self.max_delay))

    def should_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retries


DEFAULT_RETRY_STRATEGY = RetryStrategyConfig()


@dataclass(frozen=True)
class RetryDecision:
    should_retry: bool
    delay_ms: int
    new_retry_count: int
    move_to_failed: bool


def is_retryable(error: BaseException) -> bool:
    return bool(getattr(error, "retryable", True))


def decide(strategy: RetryStrategyConfig, retry_count: int, error: BaseException) -> RetryDecision:
    """
    Decide what to do with an envelope whose handler just failed.

    Retry only when the error is retryable and the budget is not spent;
    everything else is terminal and goes to the failed ledger.
    """
    if is_retryable(error) and strategy.should_retry(retry_count):
        return RetryDecision(
            should_retry=True,
            delay_ms=strategy.delay_for(retry_count),
            new_retry_count=retry_count + 1,
            move_to_failed=False,
        )
    return RetryDecision(
        should_retry=False,
        delay_ms=0,
        new_retry_count=retry_count,
        move_to_failed=True,
    )


def next_available_at(strategy: RetryStrategyConfig, retry_count: int, now: datetime) -> datetime:
    return now + timedelta(milliseconds=strategy.delay_for(retry_count))


class RetryStrategyResolver:
    """Maps message types to retry strategies, falling back to ``default``."""

    def __init__(self, strategies: Mapping[str, RetryStrategyConfig] | None = None):
        self._strategies: dict[str, RetryStrategyConfig] = dict(strategies or {})
        self._strategies.setdefault(DEFAULT_STRATEGY_NAME, DEFAULT_RETRY_STRATEGY)

    def get_strategy(self, message_type: str) -> RetryStrategyConfig:
        strategy = self._strategies.get(message_type)
        if strategy is None:
            return self._strategies[DEFAULT_STRATEGY_NAME]
        return strategy

    def decide(self, message_type: str, retry_count: int, error: BaseException) -> RetryDecision:
        return decide(self.get_strategy(message_type), retry_count, error)

    @property
    def default(self) -> RetryStrategyConfig:
        return self._strategies[DEFAULT_STRATEGY_NAME]

    def list_types(self) -> list[str]:
        return [name for name in self._strategies if name != DEFAULT_STRATEGY_NAME]
