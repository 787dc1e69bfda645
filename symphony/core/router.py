# symphony/core/router.py
"""
Transport routing: message type -> transport configuration.

Resolution order:
    1. transport named explicitly by the producer
    2. per-message-type routing table (SYMPHONY_ROUTING)
    3. priority routing rules (SYMPHONY_PRIORITY_ROUTING), first match wins
    4. process default transport

Anything that resolves to an unknown or disabled transport, or to
nothing at all, is a ConfigurationError: messages are never dropped.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from symphony.core.envelope import Message
from symphony.core.errors import ConfigurationError
from symphony.infra.logging_config import get_logger

if TYPE_CHECKING:
    from symphony.config import DispatcherConfig

logger = get_logger(__name__)


class TransportKind(str, Enum):
    SYNC = "sync"
    QUEUED = "queued"


@dataclass(frozen=True)
class TransportConfig:
    name: str
    kind: TransportKind
    queue: str = "default"
    priority: int = 5
    enabled: bool = True


@dataclass(frozen=True)
class PriorityRoute:
    """Send messages whose priority falls in [min_priority, max_priority] to ``transport``."""

    transport: str
    min_priority: int = 0
    max_priority: int | None = None
    message_types: tuple[str, ...] = field(default_factory=tuple)

    def matches(self, message_type: str, priority: int) -> bool:
        if self.message_types and message_type not in self.message_types:
            return False
        if priority < self.min_priority:
            return False
        if self.max_priority is not None and priority > self.max_priority:
            return False
        return True


class TransportRouter:
    """Resolves the transport for a message from an immutable DispatcherConfig."""

    def __init__(self, config: DispatcherConfig):
        self._config = config

    def route(
        self,
        message: Message,
        *,
        transport_name: str | None = None,
        priority: int | None = None,
    ) -> TransportConfig:
        name = transport_name or self._resolve_name(message.type, priority)
        if not name:
            raise ConfigurationError(
                f"No transport available for message type: {message.type}",
                {"message_type": message.type},
            )
        return self.get_transport_config(name, message_type=message.type)

    def _resolve_name(self, message_type: str, priority: int | None) -> str | None:
        routed = self._config.routing.get(message_type)
        if routed:
            return routed

        effective_priority = priority if priority is not None else self._config.default_priority
        for rule in self._config.priority_routing:
            if rule.matches(message_type, effective_priority):
                logger.debug(
                    f"Priority route matched: type={message_type}, "
                    f"priority={effective_priority}, transport={rule.transport}"
                )
                return rule.transport

        return self._config.default_transport or None

    def get_transport_config(self, name: str, *, message_type: str | None = None) -> TransportConfig:
        transport = self._config.transports.get(name)
        if transport is None:
            raise ConfigurationError(
                f"Transport '{name}' is not configured",
                {"transport": name, "message_type": message_type},
            )
        if not transport.enabled:
            raise ConfigurationError(
                f"Transport '{name}' is disabled",
                {"transport": name, "message_type": message_type},
            )
        return transport

    def transports_for(self, message_type: str) -> list[str]:
        """All transport names a message type may land on, most specific first."""
        names: list[str] = []
        routed = self._config.routing.get(message_type)
        if routed:
            names.append(routed)
        for rule in self._config.priority_routing:
            if (not rule.message_types or message_type in rule.message_types) and rule.transport not in names:
                names.append(rule.transport)
        if self._config.default_transport and self._config.default_transport not in names:
            names.append(self._config.default_transport)
        return names
