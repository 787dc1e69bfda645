# symphony/core/batching.py
"""
Batch sender: groups envelopes by transport into bounded chunks.

Each chunk goes out through ``transport.send_batch``. When a batch call
fails, the chunk is retried one envelope at a time so a single bad
envelope cannot sink its neighbours; re-sending an envelope that was
already persisted resolves to its own id.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Sequence

from symphony.core.envelope import EnvelopeStatus, MessageEnvelope
from symphony.core.errors import TransportError
from symphony.infra.logging_config import get_logger

if TYPE_CHECKING:
    from symphony.transport.base import Transport

logger = get_logger(__name__)

DEFAULT_MAX_BATCH_SIZE = 100


@dataclass
class BatchItemResult:
    envelope_id: str
    message_id: str | None  # effective id (differs from envelope_id for duplicates)
    transport_name: str
    success: bool
    error: Exception | None = None

    @property
    def duplicate(self) -> bool:
        return self.success and self.message_id is not None and self.message_id != self.envelope_id


def _terminal_result(envelope: MessageEnvelope, transport_name: str) -> BatchItemResult:
    if envelope.status == EnvelopeStatus.COMPLETED:
        return BatchItemResult(envelope.id, envelope.id, transport_name, True)
    error = TransportError(
        envelope.last_error or "inline execution failed",
        {"message_id": envelope.id, "transport": transport_name},
    )
    return BatchItemResult(envelope.id, None, transport_name, False, error)


class BatchSender:
    def __init__(self, max_batch_size: int = DEFAULT_MAX_BATCH_SIZE):
        self._max_batch_size = 1
        self.update_config(max_batch_size)
        self._buffer: dict[str, list[MessageEnvelope]] = {}
        self._buffer_transports: dict[str, Transport] = {}

    @property
    def max_batch_size(self) -> int:
        return self._max_batch_size

    def update_config(self, max_batch_size: int) -> None:
        if max_batch_size <= 0:
            raise ValueError("max_batch_size must be positive")
        self._max_batch_size = max_batch_size

    def group(self, envelopes: Sequence[MessageEnvelope]) -> list[tuple[str, list[MessageEnvelope]]]:
        """Group by transport (first-seen order) and split into chunks."""
        by_transport: dict[str, list[MessageEnvelope]] = {}
        for envelope in envelopes:
            by_transport.setdefault(envelope.transport_name, []).append(envelope)

        chunks: list[tuple[str, list[MessageEnvelope]]] = []
        size = self._max_batch_size
        for name, items in by_transport.items():
            for i in range(0, len(items), size):
                chunks.append((name, items[i:i + size]))
        return chunks

    async def send(
        self,
        envelopes: Sequence[MessageEnvelope],
        resolve_transport: Callable[[str], Transport],
    ) -> list[BatchItemResult]:
        """Send everything; one result per envelope, in input order."""
        results: dict[str, BatchItemResult] = {}

        for name, chunk in self.group(envelopes):
            try:
                transport = resolve_transport(name)
            except Exception as exc:
                for envelope in chunk:
                    results[envelope.id] = BatchItemResult(envelope.id, None, name, False, exc)
                continue

            for item in await self._send_chunk(transport, chunk):
                results[item.envelope_id] = item

        return [results[envelope.id] for envelope in envelopes]

    async def _send_chunk(self, transport: Transport, chunk: list[MessageEnvelope]) -> list[BatchItemResult]:
        try:
            ids = await transport.send_batch(chunk)
        except Exception as exc:
            logger.warning(
                f"Batch send failed on '{transport.name}' ({len(chunk)} envelopes), "
                f"falling back to single sends: {exc}",
                extra={"transport": transport.name},
            )
        else:
            return [
                BatchItemResult(envelope.id, message_id, transport.name, True)
                for envelope, message_id in zip(chunk, ids)
            ]

        items: list[BatchItemResult] = []
        for envelope in chunk:
            if envelope.is_terminal:
                # already executed inline before the batch call failed
                items.append(_terminal_result(envelope, transport.name))
                continue
            try:
                message_id = await transport.send(envelope)
            except Exception as exc:
                items.append(BatchItemResult(envelope.id, None, transport.name, False, exc))
            else:
                items.append(BatchItemResult(envelope.id, message_id, transport.name, True))
        return items

    # -- buffered mode --------------------------------------------------

    async def add(self, envelope: MessageEnvelope, transport: Transport) -> list[BatchItemResult]:
        """Buffer an envelope; flushes that transport's buffer once it is full."""
        buffered = self._buffer.setdefault(transport.name, [])
        buffered.append(envelope)
        self._buffer_transports[transport.name] = transport
        if len(buffered) >= self._max_batch_size:
            return await self._flush_transport(transport.name)
        return []

    async def _flush_transport(self, name: str) -> list[BatchItemResult]:
        envelopes = self._buffer.pop(name, [])
        transport = self._buffer_transports.pop(name)
        if not envelopes:
            return []
        return await self.send(envelopes, lambda _name: transport)

    async def flush(self) -> list[BatchItemResult]:
        results: list[BatchItemResult] = []
        for name in list(self._buffer):
            results.extend(await self._flush_transport(name))
        return results

    @property
    def pending(self) -> int:
        return sum(len(items) for items in self._buffer.values())
