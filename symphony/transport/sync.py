# symphony/transport/sync.py
"""Inline transport: the handler runs inside ``send``. Useful for tests and development."""
from __future__ import annotations

from typing import Sequence

from symphony.core.envelope import EnvelopeStatus, HandlerContext, MessageEnvelope
from symphony.core.executor import HandlerExecutor
from symphony.core.errors import TransportError
from symphony.core.router import TransportKind
from symphony.infra.logging_config import get_logger
from symphony.transport.base import check_envelope

logger = get_logger(__name__)


class SyncTransport:
    """Executes envelopes immediately; nothing is ever queued."""

    kind = TransportKind.SYNC

    def __init__(self, executor: HandlerExecutor, name: str = "sync", *, handler_timeout: float | None = None):
        self.name = name
        self._executor = executor
        self._handler_timeout = handler_timeout

    async def send(self, envelope: MessageEnvelope) -> str:
        check_envelope(self.name, envelope)
        context = HandlerContext.for_envelope(envelope, timeout=self._handler_timeout)
        envelope.status = EnvelopeStatus.PROCESSING

        if len(self._executor.registry.get_handlers(envelope.message.type)) > 1:
            results = await self._executor.execute_all(envelope, context)
        else:
            results = [await self._executor.execute(envelope, context)]

        failures = [r for r in results if not r.success]
        if failures:
            envelope.status = EnvelopeStatus.FAILED
            first = failures[0].error
            envelope.last_error = first.message if first is not None else "unknown error"
            retryable = all(r.retryable for r in failures)
            raise TransportError(
                f"Failed to execute sync handler for message type '{envelope.message.type}'",
                {
                    "message_id": envelope.id,
                    "message_type": envelope.message.type,
                    "error": envelope.last_error,
                    "failed_handlers": [r.handler_name for r in failures],
                    "retryable": retryable,
                },
                retryable=retryable,
            ) from first

        envelope.status = EnvelopeStatus.COMPLETED
        return envelope.id

    async def send_batch(self, envelopes: Sequence[MessageEnvelope]) -> list[str]:
        return [await self.send(envelope) for envelope in envelopes]

    async def receive(self, batch_size: int) -> list[MessageEnvelope]:
        return []

    async def acknowledge(self, envelope: MessageEnvelope) -> bool:
        return True

    async def retry(self, envelope: MessageEnvelope, delay_ms: int, error: BaseException) -> bool:
        return False

    async def reject(self, envelope: MessageEnvelope, error: BaseException, max_retries: int) -> bool:
        logger.error(
            f"Sync transport message rejected: id={envelope.id[:8]}, error={error}",
            extra={"message_id": envelope.id, "transport": self.name},
        )
        return False

    async def get_queue_depth(self, queue: str | None = None) -> int:
        return 0
