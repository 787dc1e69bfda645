# symphony/core/deduplication.py
"""
Idempotency-key deduplication within a rolling time window.

Dedup is opt-in: envelopes without an idempotency key are never checked.
Two envelopes sharing (idempotency_key, transport_name) created within
``window_ms`` of each other are the same logical work; the later one
resolves to the earlier one's id. Once the window has elapsed the key
may be reused (e.g. a recurring daily digest).

The lookup here is only a fast path. The store enforces uniqueness on
(idempotency_key, transport_name, dedup_bucket) and a conflict on insert
goes through ``handle_duplicate`` exactly like a fast-path hit.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable

from symphony.core.envelope import DuplicateAttempt, MessageEnvelope, utcnow
from symphony.core.errors import DuplicateMessageError, TransportError
from symphony.core.ports import EnvelopeStore
from symphony.infra.logging_config import get_logger
from symphony.infra.metrics import DispatcherMetrics

logger = get_logger(__name__)

DEFAULT_WINDOW_MS = 24 * 60 * 60 * 1000

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def dedup_bucket(created_at: datetime, window_ms: int) -> int:
    """Storage-level uniqueness bucket: floor(epoch_ms / window_ms)."""
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    epoch_ms = (created_at - _EPOCH) // timedelta(milliseconds=1)
    return epoch_ms // max(1, window_ms)


class Deduplicator:
    """Checks for duplicate envelopes and resolves them to the original id."""

    def __init__(
        self,
        store: EnvelopeStore,
        *,
        window_ms: int = DEFAULT_WINDOW_MS,
        track_attempts: bool = True,
        reject_duplicates: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        self._store = store
        self.window_ms = window_ms
        self.track_attempts = track_attempts
        self.reject_duplicates = reject_duplicates
        self._clock = clock
        self._pending: set[asyncio.Task] = set()

    async def check_duplicate(self, envelope: MessageEnvelope) -> str | None:
        """
        Return the id of an existing envelope with the same key and transport
        inside the window, or None.

        Raises:
            TransportError: the store lookup failed
            DuplicateMessageError: duplicate found and ``reject_duplicates`` is on
        """
        if not envelope.idempotency_key:
            return None

        since = self._clock() - timedelta(milliseconds=self.window_ms)
        try:
            existing_id = await self._store.find_recent_by_idempotency_key(
                envelope.idempotency_key,
                envelope.transport_name,
                since,
            )
        except TransportError:
            raise
        except Exception as exc:
            DispatcherMetrics.store_error("dedup_lookup")
            raise TransportError(
                f"Failed to check for duplicate: {exc}",
                {
                    "idempotency_key": envelope.idempotency_key,
                    "transport": envelope.transport_name,
                    "error": str(exc),
                },
            ) from exc

        if existing_id is None or existing_id == envelope.id:
            return None

        return self.handle_duplicate(envelope, existing_id)

    def handle_duplicate(self, envelope: MessageEnvelope, existing_id: str) -> str:
        """Record the attempt (in the background) and resolve to ``existing_id``."""
        status = "rejected" if self.reject_duplicates else "returned"
        logger.info(
            f"Duplicate message: key={envelope.idempotency_key}, "
            f"original={existing_id[:8]}, duplicate={envelope.id[:8]}, status={status}",
            extra={"message_id": envelope.id, "transport": envelope.transport_name},
        )
        DispatcherMetrics.duplicate_detected(envelope.transport_name)

        if self.track_attempts and envelope.idempotency_key:
            self._track(DuplicateAttempt(
                idempotency_key=envelope.idempotency_key,
                original_message_id=existing_id,
                duplicate_message_id=envelope.id,
                attempted_at=self._clock(),
                status=status,
            ))

        if self.reject_duplicates:
            raise DuplicateMessageError(
                f"Duplicate message for idempotency key '{envelope.idempotency_key}'",
                existing_id,
                {"idempotency_key": envelope.idempotency_key, "transport": envelope.transport_name},
            )
        return existing_id

    def _track(self, attempt: DuplicateAttempt) -> None:
        task = asyncio.ensure_future(self._store.record_duplicate_attempt(attempt))
        self._pending.add(task)
        task.add_done_callback(self._on_track_done)

    def _on_track_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                f"Failed to track duplicate attempt: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def drain(self) -> None:
        """Wait for in-flight attempt tracking to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def get_duplicate_attempts(self, idempotency_key: str) -> list[DuplicateAttempt]:
        """Duplicate attempts recorded against envelopes carrying this key, newest first."""
        since = self._clock() - timedelta(milliseconds=self.window_ms)
        try:
            refs = await self._store.list_by_idempotency_key(idempotency_key, since)
        except Exception as exc:
            raise TransportError(
                f"Failed to get duplicate attempts: {exc}",
                {"idempotency_key": idempotency_key},
            ) from exc

        attempts: list[DuplicateAttempt] = []
        for ref in refs:
            for raw in ref.metadata.get("duplicate_attempts", []):
                attempts.append(DuplicateAttempt.from_dict(raw))
        attempts.sort(key=lambda a: a.attempted_at, reverse=True)
        return attempts
