# symphony/core/registry.py
"""
Handler registry: message type -> one or more handlers.

Several handlers per type are allowed on purpose (fan-out): one
"contact_updated" message can drive an audit logger and a CRM sync at
the same time. The first handler registered for a type is its primary.

Handler modules can be loaded at startup from ``SYMPHONY_HANDLER_MODULES``::

    from symphony.core.registry import HandlerRegistry, register_handler_modules
    registry = HandlerRegistry()
    register_handler_modules(registry, ["crm.handlers", "campaigns.handlers"])

Each listed module must expose ``register(registry)``.
"""
from __future__ import annotations

import importlib
import inspect
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:
    from symphony.core.envelope import HandlerContext, Message

logger = logging.getLogger(__name__)


@runtime_checkable
class MessageHandler(Protocol):
    """Anything with ``async handle(message, context)``."""

    async def handle(self, message: Message, context: HandlerContext) -> Any:
        ...


HandlerFunction = Callable[["Message", "HandlerContext"], Awaitable[Any]]


class FunctionHandler:
    """Adapts a plain coroutine function to the MessageHandler protocol."""

    def __init__(self, func: HandlerFunction, name: str | None = None):
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"Handler function {func!r} must be async")
        self.func = func
        self.name = name or getattr(func, "__name__", "handler")

    async def handle(self, message: Message, context: HandlerContext) -> Any:
        return await self.func(message, context)

    def __repr__(self) -> str:
        return f"FunctionHandler({self.name})"


def handler_name(handler: Any) -> str:
    """Stable human-readable name for results and logs."""
    name = getattr(handler, "name", None)
    if isinstance(name, str) and name:
        return name
    return type(handler).__name__


class HandlerRegistry:
    """Maps message type strings to handler instances."""

    def __init__(self):
        self._handlers: dict[str, list[MessageHandler]] = {}

    def register(self, message_type: str, handler: MessageHandler | HandlerFunction) -> MessageHandler:
        """Register a handler (object or coroutine function) for a message type."""
        if not message_type:
            raise ValueError("message_type must be a non-empty string")
        if not hasattr(handler, "handle"):
            handler = FunctionHandler(handler)
        handlers = self._handlers.setdefault(message_type, [])
        if handler not in handlers:
            handlers.append(handler)
            logger.debug("Registered handler %s for %s", handler_name(handler), message_type)
        return handler

    def unregister(self, message_type: str, handler: MessageHandler | None = None) -> None:
        """Remove one handler, or every handler when ``handler`` is None."""
        if handler is None:
            self._handlers.pop(message_type, None)
            return
        handlers = self._handlers.get(message_type, [])
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self._handlers.pop(message_type, None)

    def get_handler(self, message_type: str) -> MessageHandler | None:
        """Primary handler for a type"""
        handlers = self._handlers.get(message_type)
        return handlers[0] if handlers else None

    def get_handlers(self, message_type: str) -> list[MessageHandler]:
        """All handlers for a type, in registration order"""
        return list(self._handlers.get(message_type, []))

    def has_handler(self, message_type: str) -> bool:
        return bool(self._handlers.get(message_type))

    def list_types(self) -> list[str]:
        return list(self._handlers.keys())

    def clear(self) -> None:
        self._handlers.clear()


def parse_handler_modules(raw: str) -> list[str]:
    """Split a comma-separated module list, ignoring blanks."""
    raw = raw.strip()
    if not raw:
        return []
    return [m.strip() for m in raw.split(",") if m.strip()]


def register_handler_modules(registry: HandlerRegistry, modules: Sequence[str]) -> list[str]:
    """
    Import each module and call its ``register(registry)``.

    Returns:
        Module paths that registered successfully.
    """
    registered: list[str] = []

    for module_path in modules:
        try:
            mod = importlib.import_module(module_path)
        except ImportError:
            logger.error("Failed to import handler module '%s'", module_path, exc_info=True)
            continue

        register = getattr(mod, "register", None)
        if not callable(register):
            logger.error("Handler module '%s' has no register(registry) function", module_path)
            continue

        register(registry)
        registered.append(module_path)
        logger.info("Registered handlers from %s", module_path)

    if modules and not registered:
        logger.warning("No handler modules registered! Check SYMPHONY_HANDLER_MODULES setting.")

    return registered
