# tests/conftest.py
"""Pytest configuration and fixtures"""
from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from symphony.config import Settings, load_config  # noqa: E402
from symphony.core.envelope import Message, MessageEnvelope, new_message_id  # noqa: E402
from symphony.core.executor import HandlerExecutor  # noqa: E402
from symphony.core.registry import HandlerRegistry  # noqa: E402
from symphony.infra.memory_store import InMemoryEnvelopeStore  # noqa: E402
from symphony.infra.metrics import get_metrics_collector  # noqa: E402


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        # A little ahead of real time so envelopes stamped with utcnow() are already due.
        self.now = start or datetime.now(timezone.utc) + timedelta(seconds=1)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: int = 0, *, seconds: float = 0) -> datetime:
        self.now = self.now + timedelta(milliseconds=ms, seconds=seconds)
        return self.now


def make_envelope(
    message_type: str = "send_email",
    payload: dict[str, Any] | None = None,
    *,
    transport_name: str = "supabase",
    queue: str = "default",
    priority: int = 5,
    idempotency_key: str | None = None,
    created_at: datetime | None = None,
    retry_count: int = 0,
) -> MessageEnvelope:
    kwargs: dict[str, Any] = {}
    if created_at is not None:
        kwargs["created_at"] = created_at
    return MessageEnvelope(
        id=new_message_id(),
        message=Message(message_type, payload if payload is not None else {"to": "a@example.com"}),
        transport_name=transport_name,
        queue=queue,
        priority=priority,
        idempotency_key=idempotency_key,
        retry_count=retry_count,
        **kwargs,
    )


def make_settings(**overrides: Any) -> Settings:
    """Settings isolated from any .env file."""
    overrides.setdefault("app_env", "test")
    return Settings(_env_file=None, **overrides)


def make_config(environ: dict[str, str] | None = None, **overrides: Any):
    return load_config(make_settings(**overrides), environ=environ or {})


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset()
    yield
    get_metrics_collector().reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> InMemoryEnvelopeStore:
    return InMemoryEnvelopeStore(clock=clock)


@pytest.fixture
def registry() -> HandlerRegistry:
    return HandlerRegistry()


@pytest.fixture
def executor(registry) -> HandlerExecutor:
    return HandlerExecutor(registry)


@pytest.fixture
def config():
    """Test profile: default priority 3, retries {max 2, delay 500ms}."""
    return make_config()
