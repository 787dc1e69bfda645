# symphony/transport/base.py
"""
Transport abstraction.

A transport is a named destination for envelopes. ``sync`` runs the
handler inline during ``send``; ``queued`` transports persist the
envelope and hand it to a worker later through ``receive``.
"""
from __future__ import annotations

from typing import Protocol, Sequence

from symphony.core.envelope import MessageEnvelope, validate_name
from symphony.core.errors import TransportError
from symphony.core.router import TransportKind


class Transport(Protocol):
    name: str
    kind: TransportKind

    async def send(self, envelope: MessageEnvelope) -> str:
        """
        Deliver the envelope.

        Returns:
            The effective envelope id: the envelope's own id, or the id of
            the original envelope when this one was a duplicate.

        Raises:
            TransportError: persistence or inline execution failed
        """
        ...

    async def send_batch(self, envelopes: Sequence[MessageEnvelope]) -> list[str]: ...

    async def receive(self, batch_size: int) -> list[MessageEnvelope]: ...

    async def acknowledge(self, envelope: MessageEnvelope) -> bool: ...

    async def retry(self, envelope: MessageEnvelope, delay_ms: int, error: BaseException) -> bool: ...

    async def reject(self, envelope: MessageEnvelope, error: BaseException, max_retries: int) -> bool: ...

    async def get_queue_depth(self, queue: str | None = None) -> int: ...


def check_envelope(transport_name: str, envelope: MessageEnvelope) -> None:
    """Guard against envelopes routed to the wrong transport."""
    if envelope.transport_name != transport_name:
        raise TransportError(
            f"Envelope {envelope.id} is addressed to '{envelope.transport_name}', not '{transport_name}'",
            {"message_id": envelope.id, "transport": transport_name},
            retryable=False,
        )
    validate_name(envelope.queue, "queue")
