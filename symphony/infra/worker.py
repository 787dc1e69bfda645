# symphony/infra/worker.py
"""
In-process async worker: polls a transport and drives envelopes through
the executor.

Per envelope:
    success              -> acknowledge (completed)
    retryable, budget    -> reschedule with backoff (pending, available later)
    otherwise            -> failed ledger

Usage:
    worker = MessageWorker(transport, executor, config.retry_resolver())
    await worker.start()
    ...
    await worker.stop()
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime

from symphony.core.envelope import HandlerContext, MessageEnvelope, utcnow
from symphony.core.errors import HandlerError
from symphony.core.executor import HandlerExecutionResult, HandlerExecutor
from symphony.core.retry import RetryStrategyResolver
from symphony.infra.logging_config import LogContext, get_logger
from symphony.infra.metrics import DispatcherMetrics, inc_counter
from symphony.transport.base import Transport

logger = get_logger(__name__)


@dataclass
class WorkerStats:
    worker_id: str | None
    running: bool
    processed: int
    succeeded: int
    failed: int
    retried: int
    lost_claims: int
    average_processing_ms: float
    started_at: datetime | None
    last_processed_at: datetime | None
    last_error: str | None
    queue_depth: int | None
    shutdown_reason: str | None
    uptime_seconds: float = 0.0
    active_handlers: int = 0


def _aggregate(envelope: MessageEnvelope, results: list[HandlerExecutionResult]) -> HandlerError | None:
    """One error for a fan-out run; retryable only if every failure is."""
    failures = [r for r in results if not r.success]
    if not failures:
        return None
    if len(failures) == 1 and failures[0].error is not None:
        return failures[0].error
    names = ", ".join(r.handler_name or "?" for r in failures)
    first = failures[0].error
    error = HandlerError(
        f"{len(failures)} of {len(results)} handlers failed ({names}): "
        f"{first.message if first is not None else 'unknown error'}",
        all(r.retryable for r in failures),
        message_id=envelope.id,
        message_type=envelope.message.type,
        details={"failed_handlers": names},
    )
    error.__cause__ = first
    return error


class MessageWorker:
    def __init__(
        self,
        transport: Transport,
        executor: HandlerExecutor,
        retry_resolver: RetryStrategyResolver,
        *,
        poll_interval: float = 1.0,
        batch_size: int = 10,
        handler_timeout: float | None = 300.0,
        message_limit: int | None = None,
        time_limit: float | None = None,
        failure_limit: int | None = None,
        stale_check_every: int = 30,
        shutdown_timeout: float = 30.0,
    ):
        self._transport = transport
        self._executor = executor
        self._retry = retry_resolver
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._handler_timeout = handler_timeout
        self._message_limit = message_limit
        self._time_limit = time_limit
        self._failure_limit = failure_limit
        self._stale_check_every = stale_check_every
        self._shutdown_timeout = shutdown_timeout

        self._task: asyncio.Task | None = None
        self._running = False
        self._stop_event = asyncio.Event()
        self._active: dict[str, HandlerContext] = {}
        self._cycle = 0
        self._started_monotonic: float | None = None

        self._processed = 0
        self._succeeded = 0
        self._failed = 0
        self._retried = 0
        self._lost_claims = 0
        self._total_ms = 0.0
        self._started_at: datetime | None = None
        self._last_processed_at: datetime | None = None
        self._last_error: str | None = None
        self.shutdown_reason: str | None = None

    @property
    def worker_id(self) -> str | None:
        return getattr(self._transport, "worker_id", None)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def uptime_seconds(self) -> float:
        if self._started_monotonic is None:
            return 0.0
        return time.monotonic() - self._started_monotonic

    async def start(self) -> None:
        """Start the worker loop as an asyncio task."""
        if self._running:
            return
        self._running = True
        self._stop_event = asyncio.Event()
        self._started_at = utcnow()
        self._started_monotonic = time.monotonic()
        self.shutdown_reason = None
        self._task = asyncio.create_task(self._loop(), name=f"symphony_worker_{self._transport.name}")
        self._task.add_done_callback(self._on_task_done)
        logger.info(
            f"Worker started: transport={self._transport.name}, poll={self._poll_interval}s, "
            f"batch={self._batch_size}, types={self._executor.registry.list_types()}",
            extra={"transport": self._transport.name, "worker_id": self.worker_id},
        )

    async def stop(self, reason: str = "stopped") -> None:
        """
        Graceful shutdown: stop polling and let the current batch finish.

        Handlers still running after ``shutdown_timeout`` are cancelled through
        their context and rescheduled like any other retryable failure.
        """
        self._request_stop(reason)
        task = self._task
        if task is None or task.done():
            return

        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self._shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Worker shutdown timeout exceeded, cancelling {len(self._active)} handler(s)",
                extra={"transport": self._transport.name, "worker_id": self.worker_id},
            )
            for context in list(self._active.values()):
                context.cancel()
            try:
                await asyncio.wait_for(task, timeout=5.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass
        except asyncio.CancelledError:
            pass
        logger.info(f"Worker stopped: reason={self.shutdown_reason}", extra={"transport": self._transport.name})

    def _request_stop(self, reason: str) -> None:
        if self.shutdown_reason is None:
            self.shutdown_reason = reason
        self._running = False
        self._stop_event.set()

    def _limit_reached(self) -> str | None:
        if self._message_limit and self._processed >= self._message_limit:
            return "message_limit"
        if self._time_limit and self._started_monotonic is not None:
            if time.monotonic() - self._started_monotonic >= self._time_limit:
                return "time_limit"
        if self._failure_limit and self._failed >= self._failure_limit:
            return "failure_limit"
        return None

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _loop(self) -> None:
        """Main poll loop."""
        while self._running:
            reason = self._limit_reached()
            if reason:
                logger.info(f"Worker limit reached: {reason}", extra={"transport": self._transport.name})
                self._request_stop(reason)
                break

            try:
                count = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._last_error = str(exc)
                logger.error(f"Worker loop error: {exc}", exc_info=True)
                inc_counter("worker_loop_errors_total", transport=self._transport.name)
                await self._sleep(self._poll_interval * 2)
                continue

            if count == 0:
                await self._sleep(self._poll_interval)

    async def run_once(self) -> int:
        """One poll + process cycle. Returns the number of envelopes handled."""
        self._cycle += 1
        if self._stale_check_every and self._cycle % self._stale_check_every == 0:
            await self._release_expired_locks()

        with DispatcherMetrics.track_batch_time(self._transport.name):
            envelopes = await self._transport.receive(self._batch_size)
            if not envelopes:
                return 0
            outcomes = await asyncio.gather(
                *(self._process(envelope) for envelope in envelopes),
                return_exceptions=True,
            )

        for envelope, outcome in zip(envelopes, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                self._last_error = str(outcome)
                logger.error(
                    f"Envelope processing error: id={envelope.id[:8]}, error={outcome}",
                    exc_info=(type(outcome), outcome, outcome.__traceback__),
                    extra={"message_id": envelope.id, "transport": self._transport.name},
                )
        return len(envelopes)

    async def _release_expired_locks(self) -> None:
        release = getattr(self._transport, "release_expired_locks", None)
        if release is None:
            return
        try:
            await release()
        except Exception as exc:
            logger.warning(f"Expired lock release failed: {exc}")

    async def _process(self, envelope: MessageEnvelope) -> None:
        log = LogContext.for_envelope(logger, envelope, worker_id=self.worker_id)
        strategy = self._retry.get_strategy(envelope.message.type)
        context = HandlerContext.for_envelope(
            envelope,
            max_retries=strategy.max_retries,
            timeout=self._handler_timeout,
        )
        self._active[envelope.id] = context
        start = time.perf_counter()
        try:
            if len(self._executor.registry.get_handlers(envelope.message.type)) > 1:
                results = await self._executor.execute_all(envelope, context)
            else:
                results = [await self._executor.execute(envelope, context)]
        finally:
            self._active.pop(envelope.id, None)

        duration_ms = (time.perf_counter() - start) * 1000
        self._processed += 1
        self._total_ms += duration_ms
        self._last_processed_at = utcnow()

        error = _aggregate(envelope, results)
        if error is None:
            if await self._transport.acknowledge(envelope):
                self._succeeded += 1
            else:
                self._lost_claims += 1
            return

        self._last_error = error.message
        decision = self._retry.decide(envelope.message.type, envelope.retry_count, error)

        if decision.should_retry:
            if await self._transport.retry(envelope, decision.delay_ms, error):
                self._retried += 1
                DispatcherMetrics.retry_scheduled(envelope.message.type)
                log.warning(
                    f"Retry scheduled: attempt={decision.new_retry_count}/{strategy.max_retries}, "
                    f"delay={decision.delay_ms}ms, error={error.message[:200]}",
                    extra={"retry_count": decision.new_retry_count},
                )
            else:
                self._lost_claims += 1
            return

        if await self._transport.reject(envelope, error, strategy.max_retries):
            self._failed += 1
            DispatcherMetrics.moved_to_failed(envelope.transport_name, envelope.message.type)
            log.error(
                f"Moved to failed ledger: retries={envelope.retry_count}/{strategy.max_retries}, "
                f"retryable={error.retryable}, error={error.message[:200]}",
                extra={"retry_count": envelope.retry_count},
            )
        else:
            self._lost_claims += 1

    async def get_stats(self) -> WorkerStats:
        queue_depth: int | None = None
        try:
            queue_depth = await self._transport.get_queue_depth()
        except Exception as exc:
            logger.warning(f"Failed to get queue depth: {exc}")

        return WorkerStats(
            worker_id=self.worker_id,
            running=self._running,
            processed=self._processed,
            succeeded=self._succeeded,
            failed=self._failed,
            retried=self._retried,
            lost_claims=self._lost_claims,
            average_processing_ms=self._total_ms / self._processed if self._processed else 0.0,
            started_at=self._started_at,
            last_processed_at=self._last_processed_at,
            last_error=self._last_error,
            queue_depth=queue_depth,
            shutdown_reason=self.shutdown_reason,
            uptime_seconds=self.uptime_seconds,
            active_handlers=len(self._active),
        )

    async def wait(self) -> None:
        """Block until the worker loop exits (limit reached or stop())."""
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    def _on_task_done(self, task: asyncio.Task) -> None:
        """Log unexpected worker death."""
        self._running = False
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Worker task died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
