"""Core data structures and typing protocols for the fleet controller."""

from __future__ import annotations

import asyncio
import json
import os
from argparse import Namespace
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from fleet_controller.const import (
    FLEET_COMMAND_QOS,
    FLEET_MQTT_CLIENT_ID,
    FLEET_MQTT_PASS,
    FLEET_MQTT_URL,
    FLEET_MQTT_USER,
    FLEET_STATUS_INTERVAL,
    FLEET_TOPIC_PREFIX,
)

if TYPE_CHECKING:
    from fleet_controller.manager import FleetManager

# camelCase on the wire, snake_case in Python; either spelling accepted on input
WIRE_MODEL_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True)

MessageHandler = Callable[[str, bytes], Awaitable[None] | None]
DisconnectHandler = Callable[[BaseException | None], Awaitable[None] | None]


class DeviceType(StrEnum):
    SENSOR = "sensor"
    CAMERA = "camera"
    ACTUATOR = "actuator"
    GATEWAY = "gateway"
    GENERIC = "generic"


class PowerMode(StrEnum):
    NORMAL = "normal"
    LOW_POWER = "low_power"
    SLEEP = "sleep"
    CRITICAL = "critical"


class ConnectionStatus(StrEnum):
    ONLINE = "online"
    OFFLINE = "offline"
    INTERMITTENT = "intermittent"


class CommandType(StrEnum):
    """Operations a device accepts on its command topic."""

    SLEEP = "sleep"
    WAKE = "wake"
    RESTART = "restart"
    UPDATE = "update"
    SET_REPORTING_INTERVAL = "set_reporting_interval"
    GET_STATUS = "get_status"


class DeviceConfig(BaseModel):
    """Per-device settings. Every field is optional; ranges are checked by the validators module."""

    model_config = WIRE_MODEL_CONFIG

    reporting_interval: int | None = None  # seconds, 1..86400
    sleep_threshold: float | None = None  # battery percent, 0..100
    auto_wake: bool | None = None
    security_level: int | None = None  # 1..5

    def merged(self, other: DeviceConfig) -> DeviceConfig:
        """Shallow-merge: fields explicitly set on ``other`` win, the rest are kept."""
        return self.model_copy(update=other.model_dump(exclude_unset=True))


class DeviceStatus(BaseModel):
    """Last-known telemetry for a device, replaced wholesale on every report.

    A missing ``batteryLevel`` excludes the device from battery averaging and a
    missing ``powerMode`` from the power mode distribution.
    """

    model_config = WIRE_MODEL_CONFIG

    device_id: str
    battery_level: float | None = Field(default=None, ge=0, le=100)
    power_mode: PowerMode | None = None
    connection_status: ConnectionStatus = ConnectionStatus.ONLINE
    last_seen: int  # epoch millis
    firmware_version: str | None = None
    signal_strength: float | None = None
    errors: list[str] | None = None
    additional_info: dict[str, Any] | None = None

    @classmethod
    def from_report(cls, device_id: str, report: dict[str, Any], received_at: int) -> DeviceStatus:
        """Build a status from a decoded wire report.

        ``deviceId`` comes from the topic and ``lastSeen`` is the receive time;
        any value the device sent for either is ignored.

        Raises:
            pydantic.ValidationError: report has out-of-range or mistyped fields

        """
        data = {k: v for k, v in report.items() if k not in ("deviceId", "device_id", "lastSeen", "last_seen")}
        return cls.model_validate({**data, "deviceId": device_id, "lastSeen": received_at})

    def as_offline(self) -> DeviceStatus:
        """Copy with ``connection_status`` set to offline and ``last_seen`` unchanged."""
        return self.model_copy(update={"connection_status": ConnectionStatus.OFFLINE}, deep=True)


class Device(BaseModel):
    """A registered device. Instances handed out by the registry are snapshots."""

    model_config = WIRE_MODEL_CONFIG

    id: str
    name: str
    type: DeviceType
    config: DeviceConfig = Field(default_factory=DeviceConfig)
    groups: set[str] = Field(default_factory=set)
    status: DeviceStatus | None = None
    created_at: int
    updated_at: int


class DeviceCommand(BaseModel):
    """Command as published on ``{prefix}{deviceId}/command``."""

    model_config = WIRE_MODEL_CONFIG

    type: CommandType
    payload: Any = None
    timestamp: int  # epoch millis
    request_id: str

    def to_wire(self) -> bytes:
        """Serialize to the JSON wire format; ``payload`` is omitted when None."""
        data = self.model_dump(mode="json", by_alias=True)
        if self.payload is None:
            data.pop("payload", None)
        return json.dumps(data).encode()


class GroupStatistics(BaseModel):
    """Derived per-group summary, computed on demand and never stored."""

    model_config = WIRE_MODEL_CONFIG

    average_battery_level: float = 0
    power_mode_distribution: dict[PowerMode, int] = Field(
        default_factory=lambda: dict.fromkeys(PowerMode, 0),
    )
    online_count: int = 0
    offline_count: int = 0
    total_devices: int = 0


@dataclass(frozen=True, slots=True)
class CommandOutcome:
    """Result of a successful single-device send."""

    device_id: str
    topic: str
    command: DeviceCommand

    @property
    def request_id(self) -> str:
        return self.command.request_id


class MessageBusProtocol(Protocol):
    """Publish/subscribe transport used by the fleet components."""

    @property
    def is_connected(self) -> bool:
        """Whether the bus currently has a live broker session."""
        ...

    async def connect(self, url: str, options: Any = None) -> None:
        """Open a broker session."""
        ...

    async def disconnect(self) -> None:
        """Close the broker session."""
        ...

    async def publish(self, topic: str, payload: bytes, qos: int = 1) -> None:
        """Publish raw bytes to a topic."""
        ...

    async def subscribe(self, topic: str) -> None:
        """Subscribe to a topic."""
        ...

    async def unsubscribe(self, topic: str) -> None:
        """Unsubscribe from a topic."""
        ...

    def set_message_handler(self, handler: MessageHandler | None) -> None:
        """Register the callback for inbound (topic, payload) messages."""
        ...

    def set_disconnect_handler(self, handler: DisconnectHandler | None) -> None:
        """Register the callback for unexpected session loss."""
        ...


class FleetEnv(BaseModel):
    """Environment-derived settings, re-readable at runtime (e.g. after loading a .env file)."""

    mqtt_url: str = FLEET_MQTT_URL
    mqtt_user: str | None = FLEET_MQTT_USER
    mqtt_pass: str | None = FLEET_MQTT_PASS
    mqtt_client_id: str | None = FLEET_MQTT_CLIENT_ID
    topic_prefix: str = FLEET_TOPIC_PREFIX
    status_interval: float = FLEET_STATUS_INTERVAL
    command_qos: int = FLEET_COMMAND_QOS


class GlobalObject:
    """Singleton container for process-wide state used by the CLI entry point."""

    manager: FleetManager | None = None
    loop: asyncio.AbstractEventLoop | None = None
    shutdown_event: asyncio.Event | None = None
    env: FleetEnv = FleetEnv()
    cli_args: Namespace | None = None

    _instance: GlobalObject | None = None

    def __new__(cls, *_args: Any, **_kwargs: Any) -> GlobalObject:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def reload_env(self) -> None:
        """Re-evaluate FLEET_* environment variables into ``self.env``."""
        prefix = os.environ.get("FLEET_TOPIC_PREFIX") or self.env.topic_prefix
        interval_raw = os.environ.get("FLEET_STATUS_INTERVAL")
        try:
            interval = float(interval_raw) if interval_raw else self.env.status_interval
        except ValueError:
            interval = self.env.status_interval
        qos_raw = os.environ.get("FLEET_COMMAND_QOS")
        try:
            qos = int(qos_raw) if qos_raw else self.env.command_qos
        except ValueError:
            qos = self.env.command_qos
        self.env.mqtt_url = os.environ.get("FLEET_MQTT_URL", self.env.mqtt_url)
        self.env.mqtt_user = os.environ.get("FLEET_MQTT_USER") or None
        self.env.mqtt_pass = os.environ.get("FLEET_MQTT_PASS") or None
        self.env.mqtt_client_id = os.environ.get("FLEET_MQTT_CLIENT_ID") or None
        self.env.topic_prefix = prefix if prefix.endswith("/") else f"{prefix}/"
        self.env.status_interval = interval if interval > 0 else self.env.status_interval
        self.env.command_qos = qos if qos in (0, 1, 2) else self.env.command_qos
