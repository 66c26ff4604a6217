"""Command fan-out to single devices and whole groups."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from fleet_controller import metrics
from fleet_controller.const import DEFAULT_TOPIC_PREFIX, FLEET_COMMAND_QOS
from fleet_controller.correlation import correlation_context, generate_request_id
from fleet_controller.events import EventDispatcher, FleetEvent
from fleet_controller.exceptions import (
    DeliveryFailedError,
    DeviceNotFoundError,
    GroupCommandFailedError,
    InvalidCommandError,
    NotConnectedError,
)
from fleet_controller.logging_abstraction import get_logger
from fleet_controller.registry import DeviceRegistry
from fleet_controller.structs import CommandOutcome, CommandType, DeviceCommand, MessageBusProtocol
from fleet_controller.topics import command_topic, normalize_prefix
from fleet_controller.utils import now_ms
from fleet_controller.validators import is_valid_command

__all__ = ["CommandDispatcher"]

logger = get_logger(__name__)


class CommandDispatcher:
    """Resolves devices and groups to command topics and publishes through the bus.

    Nothing here retries or times out on its own; both belong to the caller or
    the transport.
    """

    lp: str = "CommandDispatcher:"

    def __init__(
        self,
        registry: DeviceRegistry,
        bus: MessageBusProtocol,
        events: EventDispatcher | None = None,
        prefix: str = DEFAULT_TOPIC_PREFIX,
        qos: int = FLEET_COMMAND_QOS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.registry = registry
        self.bus = bus
        self.events = events
        self.prefix = normalize_prefix(prefix)
        self.qos = qos
        self._clock = clock

    def build_command(self, command_type: CommandType | str, payload: Any = None) -> DeviceCommand:
        """Create a command stamped with the current time and a fresh request id.

        Raises:
            InvalidCommandError: unknown command type

        """
        try:
            kind = CommandType(command_type)
        except ValueError as exc:
            msg = f"Unknown command type: {command_type!r}"
            raise InvalidCommandError(msg) from exc
        return DeviceCommand(
            type=kind,
            payload=payload,
            timestamp=self._clock(),
            request_id=generate_request_id(),
        )

    async def send_to_device(
        self,
        device_id: str,
        command_type: CommandType | str,
        payload: Any = None,
    ) -> CommandOutcome:
        """Publish one command to one device.

        Raises:
            DeviceNotFoundError: device is not registered
            NotConnectedError: the bus has no live session
            InvalidCommandError: command is structurally invalid
            DeliveryFailedError: the publish failed; the transport error is chained

        """
        lp = f"{self.lp}send_to_device:"
        if not self.registry.has(device_id):
            raise DeviceNotFoundError(device_id)
        if not self.bus.is_connected:
            raise NotConnectedError
        command = self.build_command(command_type, payload)
        if not is_valid_command(command):
            msg = f"Invalid command '{command.type.value}' for device {device_id}"
            raise InvalidCommandError(msg)

        topic = command_topic(self.prefix, device_id)
        with correlation_context(command.request_id):
            try:
                await self.bus.publish(topic, command.to_wire(), qos=self.qos)
            except Exception as exc:
                metrics.record_command_sent(command.type.value, "failed")
                logger.warning(
                    "%s Publish failed",
                    lp,
                    extra={
                        "device_id": device_id,
                        "topic": topic,
                        "command_type": command.type.value,
                        "error": str(exc),
                    },
                )
                raise DeliveryFailedError(device_id, exc) from exc

            metrics.record_command_sent(command.type.value, "sent")
            logger.info(
                "%s Command sent",
                lp,
                extra={"device_id": device_id, "command_type": command.type.value, "request_id": command.request_id},
            )
            self._emit(FleetEvent.COMMAND_SENT, device_id, command.model_copy(deep=True))
        return CommandOutcome(device_id=device_id, topic=topic, command=command)

    async def send_to_group(
        self,
        group_name: str,
        command_type: CommandType | str,
        payload: Any = None,
    ) -> list[CommandOutcome]:
        """Send the same command to every member of a group, concurrently.

        Every member send is attempted and runs to completion before the result
        is decided; one failure never skips or cancels the others. There is no
        rollback, so members that succeeded keep the command even when this raises.

        Returns:
            Outcomes of the member sends (empty for an empty group)

        Raises:
            GroupNotFoundError: group does not exist
            GroupCommandFailedError: at least one member failed; carries the first
                failure in member order

        """
        lp = f"{self.lp}send_to_group:"
        member_ids = self.registry.device_ids_in_group(group_name)
        if not member_ids:
            logger.debug("%s Group is empty, nothing to send", lp, extra={"group": group_name})
            return []

        results = await asyncio.gather(
            *(self.send_to_device(device_id, command_type, payload) for device_id in member_ids),
            return_exceptions=True,
        )

        outcomes: list[CommandOutcome] = []
        failures: list[tuple[str, BaseException]] = []
        for device_id, result in zip(member_ids, results, strict=True):
            if isinstance(result, BaseException):
                failures.append((device_id, result))
            else:
                outcomes.append(result)

        if failures:
            first_cause = failures[0][1]
            logger.warning(
                "%s %s of %s member sends failed",
                lp,
                len(failures),
                len(member_ids),
                extra={"group": group_name, "failed_devices": [device_id for device_id, _ in failures]},
            )
            raise GroupCommandFailedError(group_name, first_cause) from first_cause

        logger.info("%s Command sent to group", lp, extra={"group": group_name, "members": len(outcomes)})
        return outcomes

    def _emit(self, event: FleetEvent, *args: object) -> None:
        if self.events is not None:
            self.events.emit(event, *args)
