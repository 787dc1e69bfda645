# symphony/core/dispatcher.py
"""
Producer API.

    dispatcher = Dispatcher(load_config())
    dispatcher.register_transport(QueuedTransport("supabase", store))
    message_id = await dispatcher.enqueue(
        Message("send_campaign_step", {"campaign_id": "..."}),
        idempotency_key="campaign-42-step-3",
    )

``enqueue`` returns the effective envelope id: for a duplicate inside the
dedup window that is the original envelope's id, so the caller can
proceed as if its own envelope were being processed.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from symphony.core.batching import BatchItemResult, BatchSender
from symphony.core.envelope import (
    DispatchResult,
    Message,
    MessageEnvelope,
    new_message_id,
    utcnow,
    validate_idempotency_key,
    validate_message,
    validate_name,
    validate_priority,
)
from symphony.core.errors import ConfigurationError, MessageValidationError, SymphonyError, TransportError
from symphony.core.ports import FailedMessageStore
from symphony.core.router import TransportRouter
from symphony.infra.logging_config import get_logger
from symphony.infra.metrics import DispatcherMetrics
from symphony.transport.base import Transport

logger = get_logger(__name__)


class Dispatcher:
    def __init__(
        self,
        config,
        router: TransportRouter | None = None,
        transports: Iterable[Transport] | None = None,
        batch_sender: BatchSender | None = None,
    ):
        self._config = config
        self._router = router or TransportRouter(config)
        self._batch_sender = batch_sender or BatchSender(config.batch_max_size)
        self._transports: dict[str, Transport] = {}
        for transport in transports or ():
            self.register_transport(transport)

    @property
    def config(self):
        return self._config

    @property
    def router(self) -> TransportRouter:
        return self._router

    def register_transport(self, transport: Transport) -> None:
        validate_name(transport.name)
        self._transports[transport.name] = transport
        logger.debug(f"Transport registered: {transport.name} ({transport.kind.value})")

    def get_transport(self, name: str) -> Transport:
        transport = self._transports.get(name)
        if transport is None:
            raise ConfigurationError(f"Transport '{name}' not registered", {"transport": name})
        return transport

    def create_envelope(
        self,
        message: Message,
        *,
        idempotency_key: str | None = None,
        transport_name: str | None = None,
        priority: int | None = None,
        scheduled_at: datetime | None = None,
        queue: str | None = None,
        metadata: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> MessageEnvelope:
        validate_message(message)
        if priority is not None:
            validate_priority(priority)
        if idempotency_key is not None:
            validate_idempotency_key(idempotency_key)
        if transport_name is not None:
            validate_name(transport_name)

        transport = self._router.route(message, transport_name=transport_name, priority=priority)
        queue_name = validate_name(queue or transport.queue or self._config.default_queue, "queue")

        if scheduled_at is not None and scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)

        message_id = new_message_id()
        now = utcnow()
        return MessageEnvelope(
            id=message_id,
            message=message,
            transport_name=transport.name,
            queue=queue_name,
            priority=priority if priority is not None else transport.priority,
            idempotency_key=idempotency_key,
            created_at=now,
            scheduled_at=scheduled_at,
            metadata={**message.metadata, **(metadata or {})},
            headers={
                **(headers or {}),
                "x-message-type": message.type,
                "x-message-id": message_id,
                "x-dispatched-at": now.isoformat(),
            },
        )

    async def _send(self, envelope: MessageEnvelope) -> str:
        transport = self.get_transport(envelope.transport_name)
        try:
            return await transport.send(envelope)
        except SymphonyError:
            raise
        except Exception as exc:
            raise TransportError(
                f"Failed to dispatch message to transport '{envelope.transport_name}': {exc}",
                {
                    "transport": envelope.transport_name,
                    "queue": envelope.queue,
                    "message_id": envelope.id,
                    "error": str(exc),
                },
            ) from exc

    async def dispatch(self, message: Message, **options: Any) -> DispatchResult:
        """
        Route, deduplicate and send one message.

        Raises:
            MessageValidationError: malformed message or options
            ConfigurationError: unroutable type, unknown or disabled transport
            TransportError: persistence or inline execution failed
            DuplicateMessageError: duplicate while ``reject_duplicates`` is on
        """
        return await self._dispatch_envelope(self.create_envelope(message, **options))

    async def _dispatch_envelope(self, envelope: MessageEnvelope) -> DispatchResult:
        message = envelope.message
        effective_id = await self._send(envelope)
        duplicate = effective_id != envelope.id

        if not duplicate:
            DispatcherMetrics.message_dispatched(envelope.transport_name, message.type)
            logger.info(
                f"Message dispatched: type={message.type}, id={envelope.id[:8]}, "
                f"transport={envelope.transport_name}, queue={envelope.queue}, "
                f"priority={envelope.priority}",
                extra={
                    "message_id": envelope.id,
                    "message_type": message.type,
                    "transport": envelope.transport_name,
                    "queue": envelope.queue,
                },
            )

        return DispatchResult(
            message_id=effective_id,
            envelope_id=envelope.id,
            transport_name=envelope.transport_name,
            queue=envelope.queue,
            scheduled_at=envelope.scheduled_at,
            duplicate=duplicate,
        )

    async def enqueue(
        self,
        message: Message,
        *,
        idempotency_key: str | None = None,
        transport_name: str | None = None,
        priority: int | None = None,
        scheduled_at: datetime | None = None,
    ) -> str:
        """Producer entry point; returns the effective envelope id."""
        result = await self.dispatch(
            message,
            idempotency_key=idempotency_key,
            transport_name=transport_name,
            priority=priority,
            scheduled_at=scheduled_at,
        )
        return result.message_id

    async def dispatch_batch(self, messages: Sequence[Message], **options: Any) -> list[BatchItemResult]:
        """
        Dispatch many messages, batched per transport.

        Options apply to every message. An ``idempotency_key`` is only
        accepted for a single message, since one key would collapse the
        whole batch into one envelope.
        """
        if not messages:
            return []
        if options.get("idempotency_key") is not None and len(messages) > 1:
            raise MessageValidationError("idempotency_key cannot be shared by a batch of messages")

        envelopes = [self.create_envelope(message, **options) for message in messages]
        results = await self._batch_sender.send(envelopes, self.get_transport)

        for envelope, item in zip(envelopes, results):
            if item.success and not item.duplicate:
                DispatcherMetrics.message_dispatched(envelope.transport_name, envelope.message.type)
            elif not item.success:
                logger.error(
                    f"Batch item failed: type={envelope.message.type}, id={envelope.id[:8]}, "
                    f"transport={envelope.transport_name}, error={item.error}",
                    extra={"message_id": envelope.id, "transport": envelope.transport_name},
                )
        return results

    async def dispatch_to_transports(
        self,
        message: Message,
        transport_names: Sequence[str],
        **options: Any,
    ) -> list[DispatchResult]:
        """Fan one message out to several transports; failures are logged and skipped."""
        options.pop("transport_name", None)
        results: list[DispatchResult] = []
        for name in transport_names:
            try:
                results.append(await self.dispatch(message, transport_name=name, **options))
            except SymphonyError as exc:
                logger.error(
                    f"Failed to dispatch to transport '{name}': {exc}",
                    extra={"transport": name, "message_type": message.type},
                )
        return results

    async def replay_failed(self, failed_id: str, store: FailedMessageStore) -> DispatchResult:
        """
        Re-dispatch a failed-ledger entry as a new envelope.

        The ledger row is claimed (stamped with the new envelope id) before
        anything is sent, so concurrent replays of one entry dispatch once.
        A failed dispatch releases the claim.
        """
        failed = await store.get_failed(failed_id)
        if failed is None:
            raise MessageValidationError(f"Failed message '{failed_id}' not found")
        if failed.replayed_at is not None:
            raise MessageValidationError(
                f"Failed message '{failed_id}' was already replayed as {failed.replayed_message_id}"
            )

        # The original idempotency key would resolve straight back to the failed envelope.
        envelope = self.create_envelope(
            Message(type=failed.message_type, payload=dict(failed.payload)),
            transport_name=failed.transport_name,
            queue=failed.queue,
            metadata={**failed.metadata, "replayed_from": failed.id, "original_message_id": failed.message_id},
        )
        if not await store.mark_replayed(failed_id, envelope.id):
            raise MessageValidationError(f"Failed message '{failed_id}' was already replayed")

        try:
            result = await self._dispatch_envelope(envelope)
        except Exception:
            await store.clear_replayed(failed_id, envelope.id)
            raise

        logger.info(
            f"Failed message replayed: failed={failed_id[:8]}, new={result.message_id[:8]}",
            extra={"message_id": result.message_id, "transport": failed.transport_name},
        )
        return result
