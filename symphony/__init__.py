# symphony/__init__.py
"""Symphony: typed message dispatch with deduplication, retries and a failed ledger."""
from symphony.config import DispatcherConfig, get_settings, load_config
from symphony.core.dispatcher import Dispatcher
from symphony.core.envelope import (
    DispatchResult,
    EnvelopeStatus,
    FailedMessage,
    HandlerContext,
    Message,
    MessageEnvelope,
)
from symphony.core.errors import (
    ConfigurationError,
    DuplicateMessageError,
    HandlerError,
    MessageValidationError,
    NonRetryableError,
    SymphonyError,
    TransportError,
)
from symphony.core.executor import HandlerExecutor
from symphony.core.registry import HandlerRegistry

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "DispatchResult",
    "Dispatcher",
    "DispatcherConfig",
    "DuplicateMessageError",
    "EnvelopeStatus",
    "FailedMessage",
    "HandlerContext",
    "HandlerError",
    "HandlerExecutor",
    "HandlerRegistry",
    "Message",
    "MessageEnvelope",
    "MessageValidationError",
    "NonRetryableError",
    "SymphonyError",
    "TransportError",
    "get_settings",
    "load_config",
]
