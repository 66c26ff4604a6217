"""MQTT transport for the fleet, built on aiomqtt."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import secrets
import ssl
from urllib.parse import urlparse

import aiomqtt
from pydantic import BaseModel, Field

from fleet_controller.const import (
    BUS_RECEIVER_TASK_NAME,
    MQTT_DEFAULT_KEEPALIVE,
    MQTT_DEFAULT_PORT,
    MQTTS_DEFAULT_PORT,
)
from fleet_controller.exceptions import InvalidBrokerUrlError, NotConnectedError
from fleet_controller.logging_abstraction import get_logger
from fleet_controller.structs import DisconnectHandler, MessageHandler
from fleet_controller.validators import is_valid_broker_url

__all__ = ["BusOptions", "MQTTMessageBus", "parse_broker_url"]

logger = get_logger(__name__)


def _default_client_id() -> str:
    return f"fleet-controller-{secrets.token_hex(4)}"


class BusOptions(BaseModel):
    """Broker session options. TLS is switched on by an ``mqtts://`` URL."""

    client_id: str = Field(default_factory=_default_client_id)
    username: str | None = None
    password: str | None = None
    keepalive: int = MQTT_DEFAULT_KEEPALIVE
    subscribe_qos: int = 1


def parse_broker_url(url: str) -> tuple[str, int, bool]:
    """Split a broker URL into ``(host, port, use_tls)``.

    Raises:
        InvalidBrokerUrlError: not ``mqtt://`` or ``mqtts://`` host[:port]

    """
    if not is_valid_broker_url(url):
        raise InvalidBrokerUrlError(url)
    parsed = urlparse(url)
    use_tls = parsed.scheme == "mqtts"
    port = parsed.port or (MQTTS_DEFAULT_PORT if use_tls else MQTT_DEFAULT_PORT)
    return parsed.hostname or "", port, use_tls


def _payload_bytes(payload: object) -> bytes:
    if isinstance(payload, bytes | bytearray):
        return bytes(payload)
    if payload is None:
        return b""
    return str(payload).encode()


class MQTTMessageBus:
    """Publish/subscribe over one aiomqtt session with a background receiver task."""

    lp: str = "MQTTMessageBus:"

    def __init__(self, options: BusOptions | None = None) -> None:
        self.options: BusOptions = options or BusOptions()
        self.client: aiomqtt.Client | None = None
        self.broker_host: str | None = None
        self.broker_port: int | None = None
        self._connected: bool = False
        self._receiver_task: asyncio.Task[None] | None = None
        self._message_handler: MessageHandler | None = None
        self._disconnect_handler: DisconnectHandler | None = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    def set_message_handler(self, handler: MessageHandler | None) -> None:
        self._message_handler = handler

    def set_disconnect_handler(self, handler: DisconnectHandler | None) -> None:
        self._disconnect_handler = handler

    async def connect(self, url: str, options: BusOptions | None = None) -> None:
        """Open a session and start receiving.

        Raises:
            InvalidBrokerUrlError: malformed URL
            NotConnectedError: the broker refused or could not be reached

        """
        lp = f"{self.lp}connect:"
        if self._connected:
            logger.debug("%s Already connected to %s:%s", lp, self.broker_host, self.broker_port)
            return
        host, port, use_tls = parse_broker_url(url)
        if self.client is not None:
            # session was lost; release the old client before opening a new one
            await self.disconnect()
        if options is not None:
            self.options = options
        self.broker_host = host
        self.broker_port = port

        logger.debug("%s Connecting to MQTT broker...", lp, extra={"host": host, "port": port, "tls": use_tls})
        self.client = aiomqtt.Client(
            hostname=host,
            port=port,
            username=self.options.username,
            password=self.options.password,
            identifier=self.options.client_id,
            keepalive=self.options.keepalive,
            tls_context=ssl.create_default_context() if use_tls else None,
        )
        try:
            _ = await self.client.__aenter__()
        except aiomqtt.MqttError as mqtt_err_exc:
            # [code:134] Bad user name or password
            logger.error("%s Connection failed [MqttError] -> %s", lp, mqtt_err_exc)
            self.client = None
            msg = f"Connection to {host}:{port} failed: {mqtt_err_exc}"
            raise NotConnectedError(msg) from mqtt_err_exc

        self._connected = True
        self._receiver_task = asyncio.create_task(self._receive_loop(), name=BUS_RECEIVER_TASK_NAME)
        logger.info("%s Connected to MQTT broker: %s port: %s", lp, host, port)

    async def disconnect(self) -> None:
        lp = f"{self.lp}disconnect:"
        await self._stop_receiver()
        client = self.client
        was_connected = self._connected
        self._connected = False
        self.client = None
        if client is None:
            return
        if not was_connected:
            logger.debug("%s Session already lost, closing client", lp)
        try:
            logger.debug("%s Disconnecting from broker...", lp)
            await client.__aexit__(None, None, None)
        except aiomqtt.MqttError as ce:
            logger.warning("%s MQTT disconnect failed: %s", lp, ce)
        else:
            logger.info("%s Disconnected from MQTT broker", lp)

    async def publish(self, topic: str, payload: bytes, qos: int = 1) -> None:
        """Publish raw bytes.

        Raises:
            NotConnectedError: no live session
            aiomqtt.MqttError: the client rejected the publish

        """
        lp = f"{self.lp}publish:"
        client = self._require_client()
        try:
            await client.publish(topic, payload, qos=qos, retain=False)
        except aiomqtt.MqttError as mqtt_err:
            logger.warning("%s [MqttError] -> %s", lp, mqtt_err, extra={"topic": topic})
            raise

    async def subscribe(self, topic: str) -> None:
        client = self._require_client()
        _ = await client.subscribe(topic, qos=self.options.subscribe_qos)
        logger.debug("%s Subscribed to %s", f"{self.lp}subscribe:", topic)

    async def unsubscribe(self, topic: str) -> None:
        client = self._require_client()
        await client.unsubscribe(topic)
        logger.debug("%s Unsubscribed from %s", f"{self.lp}unsubscribe:", topic)

    def _require_client(self) -> aiomqtt.Client:
        if not self._connected or self.client is None:
            raise NotConnectedError
        return self.client

    async def _dispatch(self, topic: str, payload: bytes) -> None:
        handler = self._message_handler
        if handler is None:
            return
        result = handler(topic, payload)
        if inspect.isawaitable(result):
            await result

    async def _receive_loop(self) -> None:
        """Drain inbound messages until cancelled or the session drops."""
        lp = f"{self.lp}rcv:"
        client = self.client
        if client is None:
            return
        logger.debug("%s Waiting for MQTT messages...", lp)
        try:
            async for message in client.messages:
                topic = message.topic.value
                try:
                    await self._dispatch(topic, _payload_bytes(message.payload))
                except Exception:
                    logger.exception("%s Message handler failed", lp, extra={"topic": topic})
        except asyncio.CancelledError:
            logger.debug("%s MQTT receiver task cancelled, propagating...", lp)
            raise
        except aiomqtt.MqttError as msg_err:
            logger.warning("%s MQTT error: %s", lp, msg_err)
            self._connected = False
            await self._notify_disconnect(msg_err)

    async def _notify_disconnect(self, error: BaseException | None) -> None:
        handler = self._disconnect_handler
        if handler is None:
            return
        try:
            result = handler(error)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("%s Disconnect handler failed", f"{self.lp}rcv:")

    async def _stop_receiver(self) -> None:
        task = self._receiver_task
        self._receiver_task = None
        if task is None or task is asyncio.current_task():
            return
        if not task.done():
            _ = task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
