# symphony/core/errors.py
"""
Typed errors for the dispatcher.

Three families matter to callers:

- ``ConfigurationError``: operator/programmer mistakes (unroutable type,
  unknown transport, missing handler). Never retried.
- ``HandlerError``: anything that went wrong while running a handler or a
  pipeline stage. Carries a ``retryable`` flag the worker acts on.
- ``TransportError``: store I/O failures during dedup lookup, persistence or
  status transitions. Always propagated to the caller.
"""
from __future__ import annotations

from typing import Any


class SymphonyError(Exception):
    """Base class for all dispatcher errors."""

    def __init__(self, message: str = "Dispatcher error", details: dict[str, Any] | None = None):
        self.message = message
        self.details = dict(details or {})
        super().__init__(message)


class ConfigurationError(SymphonyError):
    """Invalid or incomplete dispatcher configuration."""


class MessageValidationError(SymphonyError):
    """Message or dispatch options failed validation."""


class TransportError(SymphonyError):
    """Envelope store / transport I/O failure."""

    def __init__(
        self,
        message: str = "Transport error",
        details: dict[str, Any] | None = None,
        *,
        retryable: bool = True,
    ):
        self.retryable = retryable
        super().__init__(message, details)


class DuplicateMessageError(TransportError):
    """Duplicate envelope rejected (``reject_duplicates`` mode)."""

    def __init__(self, message: str, existing_id: str, details: dict[str, Any] | None = None):
        self.existing_id = existing_id
        super().__init__(message, {**(details or {}), "existing_id": existing_id}, retryable=False)


class HandlerError(SymphonyError):
    """Handler or middleware failure, normalized for the worker."""

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        *,
        message_id: str | None = None,
        message_type: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.retryable = retryable
        self.message_id = message_id
        self.message_type = message_type
        super().__init__(message, details)


class HandlerNotFoundError(HandlerError, ConfigurationError):
    """No handler registered for a message type."""

    def __init__(self, message_type: str, *, message_id: str | None = None):
        super().__init__(
            f"No handler found for message type: {message_type}",
            False,
            message_id=message_id,
            message_type=message_type,
        )


class HandlerTimeoutError(HandlerError):
    """Handler exceeded the context deadline."""


class HandlerCancelledError(HandlerError):
    """Handler aborted through the context cancellation signal."""


class NonRetryableError(Exception):
    """Raise from a handler to fail the envelope without further retries."""

    retryable = False
