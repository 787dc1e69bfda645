# symphony/core/executor.py
"""
Handler executor: resolves handlers and runs them through the middleware stack.

``execute`` runs the primary handler; ``execute_all`` fans out to every
handler registered for the type, concurrently, and returns one result per
handler. A failing handler never prevents the others from finishing.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any

from symphony.core.envelope import HandlerContext, MessageEnvelope
from symphony.core.errors import (
    HandlerCancelledError,
    HandlerError,
    HandlerNotFoundError,
    HandlerTimeoutError,
)
from symphony.core.middleware import (
    HandlerMiddleware,
    MiddlewareStack,
    PerformanceCallback,
    ValidateFn,
    create_default_middleware_stack,
    wrap_error,
)
from symphony.core.registry import HandlerRegistry, MessageHandler, handler_name
from symphony.infra.logging_config import get_logger
from symphony.infra.metrics import DispatcherMetrics

logger = get_logger(__name__)


@dataclass
class HandlerExecutionResult:
    success: bool
    duration: float  # milliseconds
    error: HandlerError | None = None
    handler: MessageHandler | None = None

    @property
    def handler_name(self) -> str | None:
        return handler_name(self.handler) if self.handler is not None else None

    @property
    def retryable(self) -> bool:
        return self.error.retryable if self.error is not None else False


class HandlerExecutor:
    """Executes handlers with middleware support."""

    def __init__(
        self,
        registry: HandlerRegistry,
        middleware: MiddlewareStack | None = None,
        *,
        log=None,
        on_performance_metric: PerformanceCallback | None = None,
        validate_message: ValidateFn | None = None,
    ):
        self._registry = registry
        self._middleware = middleware or create_default_middleware_stack(
            log=log,
            on_performance_metric=on_performance_metric,
            validate_message_fn=validate_message,
        )

    @property
    def registry(self) -> HandlerRegistry:
        return self._registry

    @property
    def middleware(self) -> MiddlewareStack:
        return self._middleware

    def use(self, middleware: HandlerMiddleware) -> HandlerExecutor:
        self._middleware.use(middleware)
        return self

    async def execute(self, envelope: MessageEnvelope, context: HandlerContext) -> HandlerExecutionResult:
        """Run the primary handler for the envelope's message type."""
        start = time.perf_counter()
        handler = self._registry.get_handler(envelope.message.type)

        if handler is None:
            error = HandlerNotFoundError(envelope.message.type, message_id=envelope.id)
            logger.error(error.message, extra={"message_id": envelope.id})
            DispatcherMetrics.handler_failed(envelope.message.type, retryable=False)
            return HandlerExecutionResult(
                success=False,
                duration=(time.perf_counter() - start) * 1000,
                error=error,
            )

        return await self._run(handler, envelope, context)

    async def execute_all(self, envelope: MessageEnvelope, context: HandlerContext) -> list[HandlerExecutionResult]:
        """Run every handler for the type concurrently; one result per handler."""
        handlers = self._registry.get_handlers(envelope.message.type)

        if not handlers:
            error = HandlerNotFoundError(envelope.message.type, message_id=envelope.id)
            logger.error(error.message, extra={"message_id": envelope.id})
            DispatcherMetrics.handler_failed(envelope.message.type, retryable=False)
            return [HandlerExecutionResult(success=False, duration=0.0, error=error)]

        outcomes = await asyncio.gather(
            *(self._run(handler, envelope, context) for handler in handlers),
            return_exceptions=True,
        )

        results: list[HandlerExecutionResult] = []
        for handler, outcome in zip(handlers, outcomes):
            if isinstance(outcome, HandlerExecutionResult):
                results.append(outcome)
            elif isinstance(outcome, asyncio.CancelledError):
                raise outcome
            else:
                results.append(HandlerExecutionResult(
                    success=False,
                    duration=0.0,
                    error=wrap_error(outcome, envelope),
                    handler=handler,
                ))
        return results

    async def _run(
        self,
        handler: MessageHandler,
        envelope: MessageEnvelope,
        context: HandlerContext,
    ) -> HandlerExecutionResult:
        start = time.perf_counter()

        async def invoke() -> None:
            await _call_with_context(handler, envelope, context)

        try:
            await self._middleware.execute(envelope, context, invoke)
        except Exception as exc:
            error = wrap_error(exc, envelope)
            DispatcherMetrics.handler_failed(envelope.message.type, error.retryable)
            return HandlerExecutionResult(
                success=False,
                duration=(time.perf_counter() - start) * 1000,
                error=error,
                handler=handler,
            )

        DispatcherMetrics.handler_succeeded(envelope.message.type)
        return HandlerExecutionResult(
            success=True,
            duration=(time.perf_counter() - start) * 1000,
            handler=handler,
        )


async def _call_with_context(handler: MessageHandler, envelope: MessageEnvelope, context: HandlerContext) -> Any:
    """Invoke the handler, aborting it on deadline or cancellation."""
    if context.cancelled:
        raise HandlerCancelledError(
            "Handler cancelled before start",
            True,
            message_id=envelope.id,
            message_type=envelope.message.type,
        )

    timeout = context.time_remaining()
    if timeout is not None and timeout <= 0:
        raise HandlerTimeoutError(
            "Handler deadline already passed",
            True,
            message_id=envelope.id,
            message_type=envelope.message.type,
        )

    task = asyncio.ensure_future(handler.handle(envelope.message, context))
    cancel_waiter = asyncio.ensure_future(context.wait_cancelled())
    try:
        done, _ = await asyncio.wait(
            {task, cancel_waiter},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        cancel_waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.debug("Handler raised while being aborted", exc_info=True)

    if cancel_waiter in done:
        raise HandlerCancelledError(
            f"Handler {handler_name(handler)} cancelled",
            True,
            message_id=envelope.id,
            message_type=envelope.message.type,
        )
    raise HandlerTimeoutError(
        f"Handler {handler_name(handler)} exceeded deadline ({timeout:.2f}s)",
        True,
        message_id=envelope.id,
        message_type=envelope.message.type,
    )
