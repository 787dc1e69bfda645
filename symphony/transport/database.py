# symphony/transport/database.py
"""
Durable queued transport backed by an EnvelopeStore (Postgres in production).

send:    dedup fast path -> insert (unique-bucket conflict == duplicate found)
receive: claim a batch with a time-limited lock for this worker
then one of acknowledge / retry / reject, each conditional on this worker
still holding the claim.
"""
from __future__ import annotations

import os
import uuid
from typing import Awaitable, Sequence, TypeVar

from symphony.core.deduplication import Deduplicator
from symphony.core.envelope import EnvelopeStatus, MessageEnvelope
from symphony.core.errors import TransportError
from symphony.core.ports import EnvelopeStore
from symphony.core.router import TransportKind
from symphony.infra.logging_config import get_logger
from symphony.infra.metrics import DispatcherMetrics
from symphony.transport.base import check_envelope

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_LOCK_SECONDS = 300


def default_worker_id() -> str:
    return f"worker-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class QueuedTransport:
    """Persists envelopes and serves them to workers."""

    kind = TransportKind.QUEUED

    def __init__(
        self,
        name: str,
        store: EnvelopeStore,
        deduplicator: Deduplicator | None = None,
        *,
        worker_id: str | None = None,
        lock_seconds: float = DEFAULT_LOCK_SECONDS,
        queue: str | None = None,
    ):
        self.name = name
        self._store = store
        self._dedup = deduplicator or Deduplicator(store)
        self.worker_id = worker_id or default_worker_id()
        self.lock_seconds = lock_seconds
        self.queue = queue  # restrict receive() to one queue; None = all

    @property
    def deduplicator(self) -> Deduplicator:
        return self._dedup

    async def _call(self, operation: str, envelope_id: str | None, coro: Awaitable[T]) -> T:
        try:
            return await coro
        except TransportError:
            raise
        except Exception as exc:
            DispatcherMetrics.store_error(operation)
            raise TransportError(
                f"Failed to {operation} on transport '{self.name}': {exc}",
                {"transport": self.name, "message_id": envelope_id, "error": str(exc)},
            ) from exc

    async def send(self, envelope: MessageEnvelope) -> str:
        check_envelope(self.name, envelope)

        existing_id = await self._dedup.check_duplicate(envelope)
        if existing_id is not None:
            return existing_id

        result = await self._call(
            "insert",
            envelope.id,
            self._store.insert(envelope, dedup_window_ms=self._dedup.window_ms),
        )
        if result.duplicate and result.id != envelope.id:
            # Lost the race to a concurrent producer with the same key.
            return self._dedup.handle_duplicate(envelope, result.id)

        logger.debug(
            f"Envelope queued: id={envelope.id[:8]}, type={envelope.message.type}, "
            f"queue={envelope.queue}, priority={envelope.priority}",
            extra={"message_id": envelope.id, "transport": self.name, "queue": envelope.queue},
        )
        return result.id

    async def send_batch(self, envelopes: Sequence[MessageEnvelope]) -> list[str]:
        return [await self.send(envelope) for envelope in envelopes]

    async def receive(self, batch_size: int) -> list[MessageEnvelope]:
        return await self._call(
            "receive",
            None,
            self._store.claim_batch(
                self.name,
                batch_size,
                worker_id=self.worker_id,
                lock_seconds=self.lock_seconds,
                queue=self.queue,
            ),
        )

    def _lost_claim(self, envelope: MessageEnvelope, operation: str) -> None:
        DispatcherMetrics.lost_claim(self.name)
        logger.warning(
            f"Claim lost before {operation}: id={envelope.id[:8]}, worker={self.worker_id}",
            extra={"message_id": envelope.id, "transport": self.name, "worker_id": self.worker_id},
        )

    async def acknowledge(self, envelope: MessageEnvelope) -> bool:
        ok = await self._call(
            "acknowledge",
            envelope.id,
            self._store.complete(envelope.id, worker_id=self.worker_id),
        )
        if not ok:
            self._lost_claim(envelope, "acknowledge")
            return False
        envelope.status = EnvelopeStatus.COMPLETED
        return True

    async def retry(self, envelope: MessageEnvelope, delay_ms: int, error: BaseException) -> bool:
        new_retry_count = envelope.retry_count + 1
        ok = await self._call(
            "reschedule",
            envelope.id,
            self._store.reschedule(
                envelope.id,
                worker_id=self.worker_id,
                retry_count=new_retry_count,
                delay_ms=delay_ms,
                error=str(error)[:1000],
            ),
        )
        if not ok:
            self._lost_claim(envelope, "retry")
            return False
        envelope.retry_count = new_retry_count
        envelope.status = EnvelopeStatus.PENDING
        envelope.last_error = str(error)
        return True

    async def reject(self, envelope: MessageEnvelope, error: BaseException, max_retries: int) -> bool:
        ok = await self._call(
            "reject",
            envelope.id,
            self._store.move_to_failed(
                envelope,
                worker_id=self.worker_id,
                error=error,
                max_retries=max_retries,
            ),
        )
        if not ok:
            self._lost_claim(envelope, "reject")
            return False
        envelope.status = EnvelopeStatus.FAILED
        envelope.last_error = str(error)
        return True

    async def get_queue_depth(self, queue: str | None = None) -> int:
        return await self._call("queue_depth", None, self._store.queue_depth(self.name, queue))

    async def release_expired_locks(self) -> int:
        released = await self._call("release_locks", None, self._store.release_expired_locks(self.name))
        if released:
            logger.info(
                f"Released {released} expired lock(s) on transport '{self.name}'",
                extra={"transport": self.name},
            )
        return released
