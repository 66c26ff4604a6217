"""Exception hierarchy for Fleet Controller.

Every error carries a stable ``error_type`` code so callers (and log queries)
can branch on the category without matching on class names or messages.
"""

from __future__ import annotations

__all__ = [
    "AlreadyExistsError",
    "DeliveryFailedError",
    "DeviceNotFoundError",
    "FleetControllerError",
    "GroupCommandFailedError",
    "GroupNotFoundError",
    "InvalidBrokerUrlError",
    "InvalidCommandError",
    "InvalidConfigError",
    "InvalidGroupNameError",
    "InvalidIdError",
    "MalformedMessageError",
    "NotConnectedError",
]


class FleetControllerError(Exception):
    """Base class for all Fleet Controller errors.

    Attributes:
        error_type: Stable category code
        data: Optional structured context for logging

    """

    error_type: str = "internal_error"

    def __init__(self, message: str, data: object = None) -> None:
        self.message: str = message
        self.data: object = data
        super().__init__(message)


class InvalidIdError(FleetControllerError):
    """Device ID fails the shape check (3-50 chars of [A-Za-z0-9_-])."""

    error_type = "validation_error"

    def __init__(self, device_id: str) -> None:
        self.device_id: str = device_id
        super().__init__(f"Invalid device ID: {device_id!r}")


class InvalidGroupNameError(FleetControllerError):
    """Group name fails the shape check (2-50 chars of [A-Za-z0-9 -])."""

    error_type = "validation_error"

    def __init__(self, group_name: str) -> None:
        self.group_name: str = group_name
        super().__init__(f"Invalid group name: {group_name!r}")


class InvalidConfigError(FleetControllerError):
    """Device configuration has a value outside its allowed range."""

    error_type = "validation_error"

    def __init__(self, device_id: str, config: object = None) -> None:
        self.device_id: str = device_id
        super().__init__(f"Invalid configuration for device {device_id}", data=config)


class InvalidCommandError(FleetControllerError):
    """Command is structurally invalid (unknown type, bad timestamp, missing payload field)."""

    error_type = "validation_error"


class InvalidBrokerUrlError(FleetControllerError):
    """Broker URL is not mqtt:// or mqtts:// host[:port]."""

    error_type = "validation_error"

    def __init__(self, url: str) -> None:
        self.url: str = url
        super().__init__(f"Invalid MQTT broker URL: {url!r}")


class AlreadyExistsError(FleetControllerError):
    """A device with this ID is already registered."""

    error_type = "validation_error"

    def __init__(self, device_id: str) -> None:
        self.device_id: str = device_id
        super().__init__(f"Device with ID {device_id} already exists")


class DeviceNotFoundError(FleetControllerError):
    """No device is registered under this ID."""

    error_type = "device_not_found"

    def __init__(self, device_id: str) -> None:
        self.device_id: str = device_id
        super().__init__(f"Device not found: {device_id}")


class GroupNotFoundError(FleetControllerError):
    """No group exists under this name."""

    error_type = "group_not_found"

    def __init__(self, group_name: str) -> None:
        self.group_name: str = group_name
        super().__init__(f"Group not found: {group_name}")


class NotConnectedError(FleetControllerError):
    """The message bus is not connected."""

    error_type = "connection_error"

    def __init__(self, message: str = "Not connected to MQTT broker") -> None:
        super().__init__(message)


class DeliveryFailedError(FleetControllerError):
    """The bus rejected or failed a publish.

    Attributes:
        device_id: Target device
        cause: Underlying transport error (also chained as ``__cause__``)

    """

    error_type = "command_failed"

    def __init__(self, device_id: str, cause: BaseException) -> None:
        self.device_id: str = device_id
        self.cause: BaseException = cause
        super().__init__(f"Failed to deliver command to {device_id}: {cause}", data=cause)


class GroupCommandFailedError(FleetControllerError):
    """At least one member send of a group command failed.

    Only the first underlying error is kept. Every member send had already been
    attempted when this is raised, so some members may have received the command.
    """

    error_type = "command_failed"

    def __init__(self, group_name: str, cause: BaseException) -> None:
        self.group_name: str = group_name
        self.cause: BaseException = cause
        super().__init__(f"Failed to send command to group {group_name}", data=cause)


class MalformedMessageError(FleetControllerError):
    """Inbound bus payload could not be decoded into a status report."""

    error_type = "validation_error"

    def __init__(self, topic: str, reason: str) -> None:
        self.topic: str = topic
        self.reason: str = reason
        super().__init__(f"Malformed message on {topic}: {reason}")
