"""Observer registration for fleet notifications.

Consumers subscribe callbacks per event instead of the components inheriting
emitter behaviour. A failing listener is logged and never reaches the emitter,
so one bad subscriber cannot break a registry mutation or a status merge.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from collections.abc import Callable
from enum import StrEnum
from typing import Any

from fleet_controller.logging_abstraction import get_logger

__all__ = ["EventDispatcher", "FleetEvent", "Listener"]

logger = get_logger(__name__)

Listener = Callable[..., Any]


class FleetEvent(StrEnum):
    """Notification names and the positional arguments their listeners receive."""

    DEVICE_REGISTERED = "device_registered"  # (device)
    DEVICE_UPDATED = "device_updated"  # (device)
    DEVICE_REMOVED = "device_removed"  # (device_id)
    STATUS_UPDATE = "status_update"  # (device_id, status)
    DEVICE_OFFLINE = "device_offline"  # (device_id)
    COMMAND_SENT = "command_sent"  # (device_id, command)
    CONNECTED = "connected"  # ()
    DISCONNECTED = "disconnected"  # ()
    ERROR = "error"  # (exception)


class EventDispatcher:
    """Synchronous fan-out of notifications to registered listeners.

    Listeners may be plain functions or coroutine functions. Coroutines are
    scheduled on the running loop and not awaited by ``emit``.
    """

    lp: str = "EventDispatcher:"

    def __init__(self) -> None:
        self._listeners: defaultdict[FleetEvent, list[Listener]] = defaultdict(list)
        self._pending: set[asyncio.Task[Any]] = set()

    def subscribe(self, event: FleetEvent | str, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for ``event``; returns a callable that unsubscribes it."""
        key = FleetEvent(event)
        self._listeners[key].append(listener)

        def _unsubscribe() -> None:
            self.unsubscribe(key, listener)

        return _unsubscribe

    def unsubscribe(self, event: FleetEvent | str, listener: Listener) -> bool:
        listeners = self._listeners.get(FleetEvent(event))
        if not listeners or listener not in listeners:
            return False
        listeners.remove(listener)
        return True

    def listener_count(self, event: FleetEvent | str) -> int:
        return len(self._listeners.get(FleetEvent(event), ()))

    def emit(self, event: FleetEvent, *args: Any) -> None:
        lp = f"{self.lp}emit:"
        for listener in list(self._listeners.get(event, ())):
            try:
                result = listener(*args)
            except Exception:
                logger.exception("%s Listener for '%s' raised", lp, event.value)
                continue
            if inspect.isawaitable(result):
                self._schedule(event, result)

    def _schedule(self, event: FleetEvent, awaitable: Any) -> None:
        lp = f"{self.lp}schedule:"
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("%s No running loop for async listener of '%s', dropped", lp, event.value)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(task)
        task.add_done_callback(self._on_listener_done)

    def _on_listener_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s Async listener failed: %r", self.lp, exc)

    async def drain(self) -> None:
        """Wait for every scheduled async listener to finish."""
        if self._pending:
            _ = await asyncio.gather(*self._pending, return_exceptions=True)
