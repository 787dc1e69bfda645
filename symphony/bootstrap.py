# symphony/bootstrap.py
"""
Wiring: one place that turns a DispatcherConfig into live transports.

    config = load_config()
    registry = HandlerRegistry()
    register_handler_modules(registry, parse_handler_modules(settings.symphony_handler_modules))
    executor = HandlerExecutor(registry)
    dispatcher = build_dispatcher(config, executor, get_envelope_repo())
"""
from __future__ import annotations

from symphony.config import DispatcherConfig
from symphony.core.deduplication import Deduplicator
from symphony.core.dispatcher import Dispatcher
from symphony.core.executor import HandlerExecutor
from symphony.core.ports import EnvelopeStore
from symphony.core.router import TransportKind
from symphony.infra.logging_config import get_logger
from symphony.transport.base import Transport
from symphony.transport.database import DEFAULT_LOCK_SECONDS, QueuedTransport
from symphony.transport.sync import SyncTransport

logger = get_logger(__name__)


def build_deduplicator(config: DispatcherConfig, store: EnvelopeStore) -> Deduplicator:
    return Deduplicator(
        store,
        window_ms=config.dedup_window_ms,
        track_attempts=config.dedup_track_attempts,
        reject_duplicates=config.dedup_reject_duplicates,
    )


def build_transports(
    config: DispatcherConfig,
    executor: HandlerExecutor,
    store: EnvelopeStore,
    *,
    worker_id: str | None = None,
    lock_seconds: float = DEFAULT_LOCK_SECONDS,
    handler_timeout: float | None = None,
) -> list[Transport]:
    """One transport per enabled entry of ``config.transports``; queued ones share a deduplicator."""
    deduplicator = build_deduplicator(config, store)
    transports: list[Transport] = []
    for name, transport_config in config.transports.items():
        if not transport_config.enabled:
            logger.info(f"Transport '{name}' disabled, not registering")
            continue
        if transport_config.kind == TransportKind.SYNC:
            transports.append(SyncTransport(executor, name, handler_timeout=handler_timeout))
        else:
            transports.append(QueuedTransport(
                name,
                store,
                deduplicator,
                worker_id=worker_id,
                lock_seconds=lock_seconds,
            ))
    return transports


def build_dispatcher(
    config: DispatcherConfig,
    executor: HandlerExecutor,
    store: EnvelopeStore,
    **transport_options,
) -> Dispatcher:
    """Dispatcher with every enabled transport registered."""
    return Dispatcher(config, transports=build_transports(config, executor, store, **transport_options))
