"""Publish/subscribe bus for plugin lifecycle events.

Handlers subscribe to an event class and receive the typed event instance.
A failing handler is logged and does not affect the others or the publisher.

Example::

    bus = EventBus()
    bus.on(PluginInstalled, lambda event: print(event.identifier))
    bus.emit(PluginInstalled(identifier="billing", payload={}))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Optional, Type, TypeVar

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PanelEvent:
    name: ClassVar[str] = "panel.event"


@dataclass(frozen=True)
class PluginInstalled(PanelEvent):
    identifier: str
    payload: dict[str, Any] = field(default_factory=dict)
    user_uuid: Optional[str] = None
    name: ClassVar[str] = "plugin.installed"


@dataclass(frozen=True)
class PluginUpdated(PanelEvent):
    identifier: str
    old_version: Optional[str] = None
    new_version: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)
    user_uuid: Optional[str] = None
    name: ClassVar[str] = "plugin.updated"


@dataclass(frozen=True)
class PluginUninstalled(PanelEvent):
    identifier: str
    user_uuid: Optional[str] = None
    name: ClassVar[str] = "plugin.uninstalled"


@dataclass(frozen=True)
class DatabaseRestored(PanelEvent):
    source: str
    fresh: bool = False
    user_uuid: Optional[str] = None
    name: ClassVar[str] = "database.restored"


E = TypeVar("E", bound=PanelEvent)
Handler = Callable[[Any], None]


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[Type[PanelEvent], list[Handler]] = {}

    def on(self, event_type: Type[E], handler: Callable[[E], None]) -> None:
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug("Registered handler for %s", event_type.__name__)

    def off(self, event_type: Type[E], handler: Callable[[E], None]) -> None:
        handlers = self._handlers.get(event_type, [])
        try:
            handlers.remove(handler)
        except ValueError:
            logger.warning("Handler not found for %s", event_type.__name__)

    def emit(self, event: PanelEvent) -> int:
        """Deliver ``event`` to its subscribers and return how many succeeded."""

        handlers = list(self._handlers.get(type(event), []))
        if not handlers:
            logger.debug("No handlers registered for %s", event.name)
            return 0
        delivered = 0
        for handler in handlers:
            try:
                handler(event)
            except Exception:  # noqa: BLE001 - subscriber code is untrusted
                logger.exception("Error in handler %r for event %s", handler, event.name)
                continue
            delivered += 1
        return delivered

    def clear(self) -> None:
        self._handlers.clear()


_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


__all__ = [
    "EventBus",
    "PanelEvent",
    "PluginInstalled",
    "PluginUpdated",
    "PluginUninstalled",
    "DatabaseRestored",
    "get_event_bus",
]
