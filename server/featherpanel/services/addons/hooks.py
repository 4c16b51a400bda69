"""Addon lifecycle hooks.

Addon archives carry data only (manifest, SQL, assets). Code that reacts to
install/update/uninstall is shipped as an installed Python distribution and
registered here, either explicitly with :meth:`HookRegistry.register` or via
the ``featherpanel.addons`` entry-point group. The manifest's
``plugin.entrypoint`` picks the registration; the addon identifier is used
when it is absent.

A hook object may implement any subset of::

    on_install()
    on_update(old_version, new_version)   # or on_update(old_version)
    on_uninstall()
    process_events(bus)
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from importlib import metadata
from typing import Any, Callable, Optional, Protocol

from featherpanel.services.events import EventBus

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "featherpanel.addons"

HookFactory = Callable[[], Any]


class AddonHooks(Protocol):
    def on_install(self) -> None: ...

    def on_update(self, old_version: Optional[str], new_version: Optional[str]) -> None: ...

    def on_uninstall(self) -> None: ...

    def process_events(self, bus: EventBus) -> None: ...


class HookStatus(str, Enum):
    OK = "ok"
    SOFT_FAILURE = "soft_failure"
    MISSING = "missing"


@dataclass(frozen=True)
class HookResult:
    status: HookStatus
    hook: str
    message: Optional[str] = None

    @classmethod
    def ok(cls, hook: str) -> "HookResult":
        return cls(HookStatus.OK, hook)

    @classmethod
    def missing(cls, hook: str) -> "HookResult":
        return cls(HookStatus.MISSING, hook)

    @classmethod
    def soft_failure(cls, hook: str, message: str) -> "HookResult":
        return cls(HookStatus.SOFT_FAILURE, hook, message)

    @property
    def failed(self) -> bool:
        return self.status is HookStatus.SOFT_FAILURE

    def as_dict(self) -> dict[str, Optional[str]]:
        return {"hook": self.hook, "status": self.status.value, "message": self.message}


class HookRegistry:
    def __init__(self, *, use_entry_points: bool = True) -> None:
        self._factories: dict[str, HookFactory] = {}
        self._use_entry_points = use_entry_points
        self._entry_points_loaded = False

    def register(self, key: str, factory: HookFactory) -> None:
        self._factories[key] = factory

    def unregister(self, key: str) -> None:
        self._factories.pop(key, None)

    def keys(self) -> list[str]:
        self._load_entry_points()
        return sorted(self._factories)

    def resolve(self, identifier: str, entrypoint: Optional[str] = None) -> Optional[Any]:
        """Instantiate the hooks registered for an addon, or None when it has none."""

        self._load_entry_points()
        factory = self._factories.get(entrypoint or identifier)
        if factory is None and entrypoint:
            factory = self._factories.get(identifier)
        if factory is None:
            return None
        return factory()

    def _load_entry_points(self) -> None:
        if self._entry_points_loaded or not self._use_entry_points:
            return
        self._entry_points_loaded = True
        for entry_point in metadata.entry_points(group=ENTRY_POINT_GROUP):
            if entry_point.name in self._factories:
                continue
            try:
                self._factories[entry_point.name] = entry_point.load()
            except (ImportError, AttributeError):
                logger.exception("Failed to load addon hooks %s", entry_point.value)


def _call(hooks: Any, hook: str, *args: Any) -> HookResult:
    method = getattr(hooks, hook, None)
    if not callable(method):
        return HookResult.missing(hook)
    try:
        method(*args)
    except Exception as exc:  # noqa: BLE001 - addon code must not break the pipeline
        logger.exception("%s hook failed", hook)
        return HookResult.soft_failure(hook, str(exc))
    return HookResult.ok(hook)


def run_install_hook(hooks: Any) -> HookResult:
    return _call(hooks, "on_install")


def run_update_hook(hooks: Any, old_version: Optional[str], new_version: Optional[str]) -> HookResult:
    """Call ``on_update``; fall back to ``on_install`` for addons without one."""

    method = getattr(hooks, "on_update", None)
    if not callable(method):
        return run_install_hook(hooks)
    try:
        parameters = inspect.signature(method).parameters
    except (TypeError, ValueError):
        parameters = {}
    if len(parameters) >= 2:
        return _call(hooks, "on_update", old_version, new_version)
    return _call(hooks, "on_update", old_version)


def run_uninstall_hook(hooks: Any) -> HookResult:
    return _call(hooks, "on_uninstall")


def attach_event_handlers(hooks: Any, bus: EventBus) -> HookResult:
    return _call(hooks, "process_events", bus)


__all__ = [
    "AddonHooks",
    "HookRegistry",
    "HookResult",
    "HookStatus",
    "ENTRY_POINT_GROUP",
    "run_install_hook",
    "run_update_hook",
    "run_uninstall_hook",
    "attach_event_handlers",
]
