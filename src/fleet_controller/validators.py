"""Pure shape and range predicates for identifiers, configs, commands and broker URLs."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from fleet_controller.structs import CommandType, DeviceCommand, DeviceConfig

__all__ = [
    "is_valid_broker_url",
    "is_valid_command",
    "is_valid_config",
    "is_valid_device_id",
    "is_valid_group_name",
]

DEVICE_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{3,50}$")
GROUP_NAME_RE = re.compile(r"^[a-zA-Z0-9 -]{2,50}$")
BROKER_URL_RE = re.compile(r"^mqtts?://[a-zA-Z0-9_.-]+(:[0-9]+)?$")

REPORTING_INTERVAL_RANGE = (1, 86400)
SLEEP_THRESHOLD_RANGE = (0, 100)
SECURITY_LEVEL_RANGE = (1, 5)


def is_valid_device_id(device_id: object) -> bool:
    return isinstance(device_id, str) and DEVICE_ID_RE.fullmatch(device_id) is not None


def is_valid_group_name(name: object) -> bool:
    return isinstance(name, str) and GROUP_NAME_RE.fullmatch(name) is not None


def is_valid_broker_url(url: object) -> bool:
    return isinstance(url, str) and BROKER_URL_RE.fullmatch(url) is not None


def _in_range(value: float | None, bounds: tuple[int, int]) -> bool:
    return value is None or bounds[0] <= value <= bounds[1]


def is_valid_config(config: DeviceConfig) -> bool:
    """Check that every supplied config value is within its allowed range."""
    return (
        _in_range(config.reporting_interval, REPORTING_INTERVAL_RANGE)
        and _in_range(config.sleep_threshold, SLEEP_THRESHOLD_RANGE)
        and _in_range(config.security_level, SECURITY_LEVEL_RANGE)
    )


def is_valid_command(command: DeviceCommand) -> bool:
    """Check a command is well-formed.

    The timestamp must be positive, and ``set_reporting_interval`` needs a
    payload carrying a numeric ``interval``.
    """
    if command.type not in CommandType:
        return False

    if command.timestamp <= 0:
        return False

    if command.type == CommandType.SET_REPORTING_INTERVAL:
        payload: Any = command.payload
        if not isinstance(payload, Mapping):
            return False
        interval = payload.get("interval")
        # bool is an int subclass but never a valid interval
        if isinstance(interval, bool) or not isinstance(interval, int | float):
            return False

    return True
