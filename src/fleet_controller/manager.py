"""Public entry point composing the registry, status lifecycle, dispatcher and bus."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

from fleet_controller.bus import BusOptions, MQTTMessageBus
from fleet_controller.const import FLEET_COMMAND_QOS, FLEET_STATUS_INTERVAL, FLEET_TOPIC_PREFIX
from fleet_controller.dispatcher import CommandDispatcher
from fleet_controller.events import EventDispatcher, FleetEvent, Listener
from fleet_controller.exceptions import InvalidBrokerUrlError
from fleet_controller.lifecycle import StatusLifecycle
from fleet_controller.logging_abstraction import get_logger
from fleet_controller.registry import ConfigInput, DeviceRegistry
from fleet_controller.statistics import compute_group_statistics
from fleet_controller.structs import (
    CommandOutcome,
    CommandType,
    Device,
    DeviceType,
    GroupStatistics,
    MessageBusProtocol,
)
from fleet_controller.topics import normalize_prefix, status_topic
from fleet_controller.utils import now_ms
from fleet_controller.validators import is_valid_broker_url

__all__ = ["FleetManager"]

logger = get_logger(__name__)


class FleetManager:
    """Device fleet manager.

    Owns one registry and wires it to the message bus: status topics of registered
    devices are subscribed while connected, inbound reports are merged, the
    offline sweep runs for as long as the session is up, and commands go out
    through the dispatcher. Subscribe to notifications with :meth:`on`.
    """

    lp: str = "FleetManager:"

    def __init__(
        self,
        bus: MessageBusProtocol | None = None,
        *,
        topic_prefix: str = FLEET_TOPIC_PREFIX,
        status_interval: float = FLEET_STATUS_INTERVAL,
        command_qos: int = FLEET_COMMAND_QOS,
        events: EventDispatcher | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.events = events or EventDispatcher()
        self.bus: MessageBusProtocol = bus if bus is not None else MQTTMessageBus()
        self._topic_prefix = normalize_prefix(topic_prefix)
        self.registry = DeviceRegistry(self.events, clock=clock)
        self.lifecycle = StatusLifecycle(
            self.registry,
            self.events,
            prefix=self._topic_prefix,
            interval=status_interval,
            clock=clock,
        )
        self.dispatcher = CommandDispatcher(
            self.registry,
            self.bus,
            self.events,
            prefix=self._topic_prefix,
            qos=command_qos,
            clock=clock,
        )
        self.bus.set_message_handler(self._on_bus_message)
        self.bus.set_disconnect_handler(self._on_bus_disconnect)

    @property
    def is_connected(self) -> bool:
        return self.bus.is_connected

    @property
    def topic_prefix(self) -> str:
        return self._topic_prefix

    def on(self, event: FleetEvent | str, listener: Listener) -> Callable[[], None]:
        """Subscribe to a notification; returns a callable that unsubscribes."""
        return self.events.subscribe(event, listener)

    # ===== connection =====

    async def connect(self, url: str, options: BusOptions | None = None) -> None:
        """Connect to the broker, subscribe every registered device and start the sweep.

        Raises:
            InvalidBrokerUrlError: malformed URL
            NotConnectedError: the broker could not be reached

        """
        lp = f"{self.lp}connect:"
        if not is_valid_broker_url(url):
            raise InvalidBrokerUrlError(url)
        await self.bus.connect(url, options)
        await self._subscribe_all(self._topic_prefix)
        self.lifecycle.start()
        logger.info("%s Connected", lp, extra={"devices": len(self.registry), "prefix": self._topic_prefix})
        self.events.emit(FleetEvent.CONNECTED)

    async def disconnect(self) -> None:
        """Stop the sweep and close the bus session. Safe to call when not connected."""
        lp = f"{self.lp}disconnect:"
        was_connected = self.is_connected
        await self.lifecycle.stop()
        await self.bus.disconnect()
        if was_connected:
            logger.info("%s Disconnected", lp)
            self.events.emit(FleetEvent.DISCONNECTED)

    async def _on_bus_disconnect(self, error: BaseException | None) -> None:
        logger.warning("%s Message bus session lost: %s", f"{self.lp}bus_disconnect:", error)
        await self.lifecycle.stop()
        if error is not None:
            self.events.emit(FleetEvent.ERROR, error)
        self.events.emit(FleetEvent.DISCONNECTED)

    def _on_bus_message(self, topic: str, payload: bytes) -> None:
        _ = self.lifecycle.handle_message(topic, payload)

    async def _subscribe_status(self, device_id: str, prefix: str) -> None:
        topic = status_topic(prefix, device_id)
        try:
            await self.bus.subscribe(topic)
        except Exception as exc:
            logger.warning(
                "%s Failed to subscribe status topic",
                f"{self.lp}subscribe:",
                extra={"device_id": device_id, "topic": topic, "error": str(exc)},
            )

    async def _unsubscribe_status(self, device_id: str, prefix: str) -> None:
        topic = status_topic(prefix, device_id)
        try:
            await self.bus.unsubscribe(topic)
        except Exception as exc:
            logger.warning(
                "%s Failed to unsubscribe status topic",
                f"{self.lp}unsubscribe:",
                extra={"device_id": device_id, "topic": topic, "error": str(exc)},
            )

    async def _subscribe_all(self, prefix: str) -> None:
        for device_id in self.registry.all_device_ids():
            await self._subscribe_status(device_id, prefix)

    async def _unsubscribe_all(self, prefix: str) -> None:
        for device_id in self.registry.all_device_ids():
            await self._unsubscribe_status(device_id, prefix)

    async def set_topic_prefix(self, prefix: str) -> None:
        """Switch the topic prefix, moving status subscriptions over when connected."""
        lp = f"{self.lp}set_topic_prefix:"
        new_prefix = normalize_prefix(prefix)
        old_prefix = self._topic_prefix
        if new_prefix == old_prefix:
            return
        if self.is_connected:
            await self._unsubscribe_all(old_prefix)
        self._topic_prefix = new_prefix
        self.lifecycle.prefix = new_prefix
        self.dispatcher.prefix = new_prefix
        if self.is_connected:
            await self._subscribe_all(new_prefix)
        logger.info("%s Topic prefix changed", lp, extra={"old": old_prefix, "new": new_prefix})

    # ===== devices =====

    async def register_device(
        self,
        device_id: str,
        name: str,
        device_type: DeviceType | str,
        config: ConfigInput = None,
        groups: Iterable[str] = (),
    ) -> Device:
        device = self.registry.register(device_id, name, device_type, config, groups)
        if self.is_connected:
            await self._subscribe_status(device_id, self._topic_prefix)
        return device

    def update_device(
        self,
        device_id: str,
        *,
        name: str | None = None,
        device_type: DeviceType | str | None = None,
        config: ConfigInput = None,
    ) -> Device:
        return self.registry.update(device_id, name=name, device_type=device_type, config=config)

    async def remove_device(self, device_id: str) -> bool:
        removed = self.registry.remove(device_id)
        if removed and self.is_connected:
            await self._unsubscribe_status(device_id, self._topic_prefix)
        return removed

    def get_device(self, device_id: str) -> Device:
        return self.registry.get(device_id)

    def has_device(self, device_id: str) -> bool:
        return self.registry.has(device_id)

    def all_devices(self) -> list[Device]:
        return self.registry.all_devices()

    # ===== groups =====

    def create_group(self, name: str) -> bool:
        return self.registry.create_group(name)

    def add_device_to_group(self, device_id: str, group_name: str) -> bool:
        return self.registry.add_to_group(device_id, group_name)

    def remove_device_from_group(self, device_id: str, group_name: str) -> bool:
        return self.registry.remove_from_group(device_id, group_name)

    def remove_group(self, name: str) -> bool:
        return self.registry.remove_group(name)

    def devices_in_group(self, name: str) -> list[Device]:
        return self.registry.devices_in_group(name)

    def all_groups(self) -> list[str]:
        return self.registry.all_groups()

    def group_statistics(self, name: str) -> GroupStatistics:
        return compute_group_statistics(self.registry, name)

    # ===== commands =====

    async def send_command(
        self,
        device_id: str,
        command_type: CommandType | str,
        payload: Any = None,
    ) -> CommandOutcome:
        return await self.dispatcher.send_to_device(device_id, command_type, payload)

    async def send_command_to_group(
        self,
        group_name: str,
        command_type: CommandType | str,
        payload: Any = None,
    ) -> list[CommandOutcome]:
        return await self.dispatcher.send_to_group(group_name, command_type, payload)

    @staticmethod
    def _sleep_payload(duration: float | None) -> dict[str, float]:
        return {} if duration is None else {"duration": duration}

    async def sleep_device(self, device_id: str, duration: float | None = None) -> CommandOutcome:
        return await self.send_command(device_id, CommandType.SLEEP, self._sleep_payload(duration))

    async def wake_device(self, device_id: str) -> CommandOutcome:
        return await self.send_command(device_id, CommandType.WAKE)

    async def sleep_group(self, group_name: str, duration: float | None = None) -> list[CommandOutcome]:
        return await self.send_command_to_group(group_name, CommandType.SLEEP, self._sleep_payload(duration))

    async def wake_group(self, group_name: str) -> list[CommandOutcome]:
        return await self.send_command_to_group(group_name, CommandType.WAKE)
