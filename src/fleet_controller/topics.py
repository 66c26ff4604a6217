"""Topic naming: ``{prefix}{deviceId}/status`` inbound, ``{prefix}{deviceId}/command`` outbound."""

from __future__ import annotations

from fleet_controller.const import COMMAND_TOPIC_SUFFIX, DEFAULT_TOPIC_PREFIX, STATUS_TOPIC_SUFFIX

__all__ = [
    "command_topic",
    "device_id_from_status_topic",
    "normalize_prefix",
    "status_topic",
]


def normalize_prefix(prefix: str | None) -> str:
    """Return ``prefix`` with a trailing slash; empty or None gives the default prefix."""
    if not prefix:
        return DEFAULT_TOPIC_PREFIX
    return prefix if prefix.endswith("/") else f"{prefix}/"


def status_topic(prefix: str, device_id: str) -> str:
    return f"{prefix}{device_id}{STATUS_TOPIC_SUFFIX}"


def command_topic(prefix: str, device_id: str) -> str:
    return f"{prefix}{device_id}{COMMAND_TOPIC_SUFFIX}"


def device_id_from_status_topic(prefix: str, topic: str) -> str | None:
    """Extract the device id from a status topic, or None if ``topic`` is not one."""
    if not (topic.startswith(prefix) and topic.endswith(STATUS_TOPIC_SUFFIX)):
        return None
    device_id = topic[len(prefix) : len(topic) - len(STATUS_TOPIC_SUFFIX)]
    # Nested levels are not device ids
    if not device_id or "/" in device_id:
        return None
    return device_id
