# symphony/core/middleware.py
"""
Handler middleware pipeline.

A middleware is ``async (envelope, context, call_next) -> None``. The
stack is composed once (and again only when ``use()`` adds a stage);
the first middleware is the outermost wrapper and the chain ends in the
actual handler call.

Default order:
    validation -> logging -> error classification -> performance metrics -> handler
"""
from __future__ import annotations

import inspect
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

from symphony.core.envelope import HandlerContext, Message, MessageEnvelope, validate_message
from symphony.core.errors import (
    ConfigurationError,
    HandlerError,
    MessageValidationError,
)
from symphony.infra.logging_config import LogContext, get_logger
from symphony.infra.metrics import DispatcherMetrics

logger = get_logger(__name__)

CallNext = Callable[[], Awaitable[None]]
Terminal = Callable[[], Awaitable[None]]
ValidateFn = Callable[[Message, MessageEnvelope], "Awaitable[None] | None"]


class HandlerMiddleware(Protocol):
    async def __call__(
        self,
        envelope: MessageEnvelope,
        context: HandlerContext,
        call_next: CallNext,
    ) -> None:
        ...


@dataclass(frozen=True)
class PerformanceMetric:
    message_id: str
    message_type: str
    duration: float  # milliseconds
    retry_count: int
    success: bool


PerformanceCallback = Callable[[PerformanceMetric], Any]


def wrap_error(exc: BaseException, envelope: MessageEnvelope) -> HandlerError:
    """Normalize any exception into a HandlerError tagged with the envelope."""
    if isinstance(exc, HandlerError):
        if exc.message_id is None:
            exc.message_id = envelope.id
        if exc.message_type is None:
            exc.message_type = envelope.message.type
        return exc

    if isinstance(exc, (MessageValidationError, ConfigurationError)):
        retryable = False
    else:
        retryable = bool(getattr(exc, "retryable", True))

    text = str(exc) or exc.__class__.__name__
    error = HandlerError(
        text,
        retryable,
        message_id=envelope.id,
        message_type=envelope.message.type,
        details={"error_class": exc.__class__.__name__},
    )
    error.__cause__ = exc
    return error


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

class ValidationMiddleware:
    """Reject malformed payloads before the handler runs (non-retryable)."""

    def __init__(self, validate_message_fn: ValidateFn | None = None):
        self._validate = validate_message_fn

    async def __call__(self, envelope: MessageEnvelope, context: HandlerContext, call_next: CallNext) -> None:
        try:
            validate_message(envelope.message)
            if self._validate is not None:
                result = self._validate(envelope.message, envelope)
                if inspect.isawaitable(result):
                    await result
        except Exception as exc:
            raise HandlerError(
                f"Message validation failed: {exc}",
                False,
                message_id=envelope.id,
                message_type=envelope.message.type,
                details={"error_class": exc.__class__.__name__},
            ) from exc

        await call_next()


class LoggingMiddleware:
    """Structured start/finish records with duration."""

    def __init__(self, log=None):
        self._logger = log

    def _log_for(self, envelope: MessageEnvelope):
        if self._logger is not None:
            return self._logger
        return LogContext.for_envelope(logger, envelope)

    async def __call__(self, envelope: MessageEnvelope, context: HandlerContext, call_next: CallNext) -> None:
        log = self._log_for(envelope)
        extra = {
            "message_id": envelope.id,
            "message_type": envelope.message.type,
            "retry_count": context.retry_count,
        }
        log.info(
            f"Handling message: type={envelope.message.type}, id={envelope.id[:8]}, "
            f"retry={context.retry_count}",
            extra=dict(extra),
        )
        start = time.perf_counter()

        try:
            await call_next()
        except Exception as exc:
            duration_ms = (time.perf_counter() - start) * 1000
            retryable = getattr(exc, "retryable", None)
            log.error(
                f"Message handling failed: type={envelope.message.type}, id={envelope.id[:8]}, "
                f"error={exc.__class__.__name__}: {exc}, retryable={retryable}, "
                f"duration={duration_ms:.2f}ms",
                extra={**extra, "duration_ms": duration_ms},
            )
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        log.info(
            f"Message handled: type={envelope.message.type}, id={envelope.id[:8]}, "
            f"duration={duration_ms:.2f}ms",
            extra={**extra, "duration_ms": duration_ms},
        )


class ErrorHandlingMiddleware:
    """Classify everything downstream into a HandlerError."""

    async def __call__(self, envelope: MessageEnvelope, context: HandlerContext, call_next: CallNext) -> None:
        try:
            await call_next()
        except Exception as exc:
            error = wrap_error(exc, envelope)
            if error is exc:
                raise
            raise error from exc


class PerformanceMiddleware:
    """Report duration of every handler run, success or failure."""

    def __init__(self, on_performance_metric: PerformanceCallback | None = None):
        self._callback = on_performance_metric

    async def __call__(self, envelope: MessageEnvelope, context: HandlerContext, call_next: CallNext) -> None:
        start = time.perf_counter()
        success = False
        try:
            await call_next()
            success = True
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            DispatcherMetrics.handler_duration(envelope.message.type, duration_ms)
            if self._callback is not None:
                metric = PerformanceMetric(
                    message_id=envelope.id,
                    message_type=envelope.message.type,
                    duration=duration_ms,
                    retry_count=context.retry_count,
                    success=success,
                )
                try:
                    result = self._callback(metric)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.warning("Performance metric callback failed", exc_info=True)


# ---------------------------------------------------------------------------
# Stack
# ---------------------------------------------------------------------------

Pipeline = Callable[[MessageEnvelope, HandlerContext, Terminal], Awaitable[None]]


def build_pipeline(middlewares: list[HandlerMiddleware]) -> Pipeline:
    """Compose middlewares into one callable ending at the terminal handler call."""

    async def _terminal(envelope: MessageEnvelope, context: HandlerContext, terminal: Terminal) -> None:
        await terminal()

    pipeline: Pipeline = _terminal

    for mw in reversed(middlewares):
        async def _wrapper(
            envelope: MessageEnvelope,
            context: HandlerContext,
            terminal: Terminal,
            _mw: HandlerMiddleware = mw,
            _next: Pipeline = pipeline,
        ) -> None:
            async def call_next() -> None:
                await _next(envelope, context, terminal)

            await _mw(envelope, context, call_next)

        pipeline = _wrapper

    return pipeline


class MiddlewareStack:
    """Ordered, composable middleware chain."""

    def __init__(self, middlewares: list[HandlerMiddleware] | None = None):
        self._middlewares: list[HandlerMiddleware] = list(middlewares or [])
        self._pipeline = build_pipeline(self._middlewares)

    def use(self, middleware: HandlerMiddleware) -> MiddlewareStack:
        """Append a stage (innermost, right before the handler)."""
        self._middlewares.append(middleware)
        self._pipeline = build_pipeline(self._middlewares)
        return self

    @property
    def middlewares(self) -> list[HandlerMiddleware]:
        return list(self._middlewares)

    async def execute(self, envelope: MessageEnvelope, context: HandlerContext, handler_fn: Terminal) -> None:
        await self._pipeline(envelope, context, handler_fn)


def create_default_middleware_stack(
    *,
    log=None,
    on_performance_metric: PerformanceCallback | None = None,
    validate_message_fn: ValidateFn | None = None,
) -> MiddlewareStack:
    return MiddlewareStack([
        ValidationMiddleware(validate_message_fn),
        LoggingMiddleware(log),
        ErrorHandlingMiddleware(),
        PerformanceMiddleware(on_performance_metric),
    ])
