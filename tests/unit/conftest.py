"""
Shared fixtures for unit tests.

This module provides reusable fixtures for testing Fleet Controller components:
a controllable clock, an event recorder, and an in-memory message bus.
"""

from __future__ import annotations

import inspect
import json
from collections.abc import Callable
from functools import partial
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from fleet_controller.events import EventDispatcher, FleetEvent
from fleet_controller.exceptions import NotConnectedError
from fleet_controller.registry import DeviceRegistry
from fleet_controller.structs import DisconnectHandler, MessageHandler

T0 = 1_700_000_000_000


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start: int = T0) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class EventRecorder:
    """Records every notification emitted through an EventDispatcher."""

    def __init__(self, events: EventDispatcher) -> None:
        self.calls: list[tuple[FleetEvent, tuple[Any, ...]]] = []
        for event in FleetEvent:
            _ = events.subscribe(event, partial(self._record, event))

    def _record(self, event: FleetEvent, *args: Any) -> None:
        self.calls.append((event, args))

    def of(self, event: FleetEvent) -> list[tuple[Any, ...]]:
        return [args for recorded, args in self.calls if recorded == event]


class FakeMessageBus:
    """In-memory MessageBus that records traffic and lets tests inject messages."""

    def __init__(self) -> None:
        self.connected = False
        self.connect_calls: list[tuple[str, Any]] = []
        self.published: list[tuple[str, bytes, int]] = []
        self.subscriptions: list[str] = []
        self.unsubscriptions: list[str] = []
        self.publish_error: Callable[[str], BaseException | None] | None = None
        self.subscribe_error: BaseException | None = None
        self._message_handler: MessageHandler | None = None
        self._disconnect_handler: DisconnectHandler | None = None

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self, url: str, options: Any = None) -> None:
        self.connect_calls.append((url, options))
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def publish(self, topic: str, payload: bytes, qos: int = 1) -> None:
        if not self.connected:
            raise NotConnectedError
        if self.publish_error is not None:
            error = self.publish_error(topic)
            if error is not None:
                raise error
        self.published.append((topic, payload, qos))

    async def subscribe(self, topic: str) -> None:
        if self.subscribe_error is not None:
            raise self.subscribe_error
        self.subscriptions.append(topic)

    async def unsubscribe(self, topic: str) -> None:
        self.unsubscriptions.append(topic)
        if topic in self.subscriptions:
            self.subscriptions.remove(topic)

    def set_message_handler(self, handler: MessageHandler | None) -> None:
        self._message_handler = handler

    def set_disconnect_handler(self, handler: DisconnectHandler | None) -> None:
        self._disconnect_handler = handler

    async def deliver(self, topic: str, payload: bytes | dict[str, Any]) -> None:
        """Push an inbound message through the registered handler."""
        assert self._message_handler is not None, "no message handler registered"
        raw = json.dumps(payload).encode() if isinstance(payload, dict) else payload
        result = self._message_handler(topic, raw)
        if inspect.isawaitable(result):
            await result

    async def drop(self, error: BaseException | None = None) -> None:
        """Simulate the broker session being lost."""
        self.connected = False
        if self._disconnect_handler is not None:
            result = self._disconnect_handler(error)
            if inspect.isawaitable(result):
                await result

    def published_json(self) -> list[tuple[str, dict[str, Any]]]:
        return [(topic, json.loads(payload)) for topic, payload, _ in self.published]


@pytest.fixture
def clock():
    """Controllable epoch-millisecond clock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture
def events():
    return EventDispatcher()


@pytest.fixture
def recorder(events):
    """EventRecorder attached to the shared ``events`` dispatcher."""
    return EventRecorder(events)


@pytest.fixture
def registry(events, clock):
    return DeviceRegistry(events, clock=clock)


@pytest.fixture
def fake_bus():
    """Connected in-memory message bus."""
    bus = FakeMessageBus()
    bus.connected = True
    return bus


@pytest.fixture
def mock_bus():
    """
    Mock message bus for testing.

    Returns a MagicMock with the MessageBus methods as AsyncMocks and
    ``is_connected`` set to True.
    """
    bus = MagicMock()
    bus.is_connected = True
    bus.connect = AsyncMock()
    bus.disconnect = AsyncMock()
    bus.publish = AsyncMock()
    bus.subscribe = AsyncMock()
    bus.unsubscribe = AsyncMock()
    return bus


@pytest.fixture
def status_payload():
    """Representative wire-format status report."""
    return {
        "batteryLevel": 80,
        "powerMode": "normal",
        "connectionStatus": "online",
        "firmwareVersion": "1.4.2",
        "signalStrength": -61,
    }
