from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from functools import partial
from pathlib import Path
from typing import Any

import dotenv
import uvloop
import yaml
from pydantic import BaseModel, Field, ValidationError

from fleet_controller import metrics
from fleet_controller.bus import BusOptions
from fleet_controller.const import (
    CONTROLLER_TASK_NAME,
    FLEET_CONFIG_FILE_PATH,
    FLEET_DEBUG,
    FLEET_METRICS_ENABLED,
    FLEET_METRICS_PORT,
    FLEET_MQTT_CONN_DELAY,
    FLEET_VERSION,
    FOREIGN_LOG_FORMATTER,
)
from fleet_controller.correlation import correlation_context, ensure_correlation_id
from fleet_controller.exceptions import FleetControllerError, InvalidBrokerUrlError, NotConnectedError
from fleet_controller.logging_abstraction import get_logger, set_package_log_level
from fleet_controller.manager import FleetManager
from fleet_controller.structs import WIRE_MODEL_CONFIG, DeviceConfig, DeviceType, GlobalObject
from fleet_controller.utils import check_python_version

logger = get_logger(__name__)

# aiomqtt logs under "mqtt"; only errors, tagged with the logger name
foreign_handler = logging.StreamHandler(sys.stderr)
foreign_handler.setLevel(logging.ERROR)
foreign_handler.setFormatter(FOREIGN_LOG_FORMATTER)
mqtt_logger = logging.getLogger("mqtt")
mqtt_logger.setLevel(logging.ERROR)
mqtt_logger.addHandler(foreign_handler)
mqtt_logger.propagate = False

g = GlobalObject()


class InventoryDevice(BaseModel):
    """One ``devices:`` entry of the YAML inventory."""

    model_config = WIRE_MODEL_CONFIG

    id: str
    name: str
    type: DeviceType = DeviceType.GENERIC
    config: DeviceConfig | None = None
    groups: list[str] = Field(default_factory=list)


class Inventory(BaseModel):
    groups: list[str] = Field(default_factory=list)
    devices: list[InventoryDevice] = Field(default_factory=list)


def parse_inventory(config_file: Path) -> Inventory:
    """Parse the YAML inventory file.

    Entries that do not parse are logged and skipped, so one typo does not
    keep the rest of the fleet from loading.

    Raises:
        OSError: file cannot be read
        yaml.YAMLError: file is not valid YAML

    """
    logger.debug("Parsing inventory file: %s", config_file)
    try:
        with config_file.open() as f:
            raw_data: Any = yaml.safe_load(f)
    except (OSError, yaml.YAMLError):
        logger.exception("Failed to parse inventory file: %s", config_file)
        raise

    inventory = Inventory()
    if not isinstance(raw_data, dict):
        logger.warning("Inventory file is empty or not a mapping", extra={"path": str(config_file)})
        return inventory

    raw_groups = raw_data.get("groups") or []
    if isinstance(raw_groups, list):
        inventory.groups = [str(name) for name in raw_groups]
    else:
        logger.warning("Ignoring 'groups' section, expected a list", extra={"path": str(config_file)})

    raw_devices = raw_data.get("devices") or []
    if not isinstance(raw_devices, list):
        logger.warning("Ignoring 'devices' section, expected a list", extra={"path": str(config_file)})
        return inventory

    for index, entry in enumerate(raw_devices):
        try:
            inventory.devices.append(InventoryDevice.model_validate(entry))
        except ValidationError as exc:
            logger.warning(
                "Skipping invalid inventory entry",
                extra={"index": index, "errors": exc.error_count(), "entry": str(entry)[:200]},
            )

    logger.info("Parsed inventory: %d devices, %d groups", len(inventory.devices), len(inventory.groups))
    return inventory


async def load_inventory(manager: FleetManager, inventory: Inventory) -> int:
    """Register inventory groups and devices; returns how many devices were registered."""
    for group_name in inventory.groups:
        try:
            _ = manager.create_group(group_name)
        except FleetControllerError as exc:
            logger.warning("Skipping inventory group", extra={"group": group_name, "error": exc.message})

    registered = 0
    for entry in inventory.devices:
        try:
            _ = await manager.register_device(entry.id, entry.name, entry.type, entry.config, entry.groups)
        except FleetControllerError as exc:
            logger.warning(
                "Skipping inventory device",
                extra={"device_id": entry.id, "error_type": exc.error_type, "error": exc.message},
            )
        else:
            registered += 1
    return registered


def signal_handler(signum: int) -> None:
    logger.info("Fleet Controller: Intercepted signal: %s (%s)", signal.Signals(signum).name, signum)
    if g.shutdown_event is not None:
        g.shutdown_event.set()


class FleetController:
    lp: str = "FleetController:"
    config_file: Path | None = None
    _instance: FleetController | None = None

    def __new__(cls, *args: object, **kwargs: object) -> FleetController:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        g.loop = uvloop.new_event_loop()
        asyncio.set_event_loop(g.loop)

        logger.info(
            " Initializing Fleet Controller",
            extra={"version": FLEET_VERSION},
        )

        g.loop.add_signal_handler(signal.SIGINT, partial(signal_handler, signal.SIGINT))
        g.loop.add_signal_handler(signal.SIGTERM, partial(signal_handler, signal.SIGTERM))

        logger.debug("Signal handlers configured for SIGINT & SIGTERM")

    def _bus_options(self) -> BusOptions:
        overrides: dict[str, Any] = {"username": g.env.mqtt_user, "password": g.env.mqtt_pass}
        if g.env.mqtt_client_id:
            overrides["client_id"] = g.env.mqtt_client_id
        return BusOptions(**overrides)

    async def start(self) -> None:
        """Load the inventory, connect to the broker and run until signalled."""
        lp = f"{self.lp}start:"
        _ = ensure_correlation_id()
        g.shutdown_event = shutdown = asyncio.Event()

        cfg_path = g.cli_args.config if g.cli_args and g.cli_args.config else Path(FLEET_CONFIG_FILE_PATH)
        self.config_file = cfg_file = cfg_path.expanduser().resolve()

        g.manager = manager = FleetManager(
            topic_prefix=g.env.topic_prefix,
            status_interval=g.env.status_interval,
            command_qos=g.env.command_qos,
        )

        if cfg_file.exists():
            logger.info(" Loading inventory", extra={"config_path": str(cfg_file)})
            registered = await load_inventory(manager, parse_inventory(cfg_file))
            logger.info(
                " Inventory loaded",
                extra={"device_count": registered, "group_count": len(manager.all_groups())},
            )
        else:
            logger.warning(
                " Inventory file not found, starting with an empty registry",
                extra={"config_path": str(cfg_file)},
            )

        if (g.cli_args and g.cli_args.metrics) or FLEET_METRICS_ENABLED:
            if metrics.start_metrics_server(FLEET_METRICS_PORT):
                logger.info(" Metrics endpoint started", extra={"port": FLEET_METRICS_PORT})

        broker_url = g.cli_args.broker if g.cli_args and g.cli_args.broker else g.env.mqtt_url
        options = self._bus_options()
        delay = FLEET_MQTT_CONN_DELAY if FLEET_MQTT_CONN_DELAY > 0 else 5
        try:
            while not shutdown.is_set():
                if not manager.is_connected:
                    try:
                        await manager.connect(broker_url, options)
                    except NotConnectedError as exc:
                        logger.info(
                            "%s connecting to MQTT broker failed, sleeping for %s seconds before re-trying...",
                            lp,
                            delay,
                            extra={"error": exc.message},
                        )
                with contextlib.suppress(TimeoutError):
                    _ = await asyncio.wait_for(shutdown.wait(), timeout=delay)
        finally:
            await self.stop()

    async def stop(self) -> None:
        logger.info(" Shutting down Fleet Controller...")
        if g.manager is not None:
            await g.manager.disconnect()
            await g.manager.events.drain()


def parse_cli(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fleet Controller")

    _ = parser.add_argument("--config", help="Path to the YAML device inventory", default=None, type=Path)
    _ = parser.add_argument("--broker", help="MQTT broker URL (mqtt://host[:port] or mqtts://...)", default=None)
    _ = parser.add_argument(
        "--metrics",
        action="store_true",
        help="Expose Prometheus metrics",
    )
    _ = parser.add_argument(
        "-D",
        "--debug",
        action="store_true",
        help="Enable debug mode",
    )
    _ = parser.add_argument("--env", help="Path to the environment file", default=None, type=Path)
    g.cli_args = args = parser.parse_args(argv)

    if args.debug:
        set_package_log_level(logging.DEBUG)
        logger.info("Debug mode enabled via CLI argument")

    if args.env:
        env_path = args.env.expanduser().resolve()
        if not env_path.exists():
            logger.error(
                "Environment file not found",
                extra={"path": str(env_path)},
            )
        elif dotenv.load_dotenv(env_path, override=True):
            logger.info(
                " Environment variables loaded",
                extra={"source": str(env_path)},
            )
            g.reload_env()
        else:
            logger.warning(
                "No environment variables loaded from file",
                extra={"path": str(env_path)},
            )
    return args


def main() -> None:
    """Main entry point for Fleet Controller."""
    with correlation_context():
        logger.info(
            "Starting Fleet Controller",
            extra={"version": FLEET_VERSION},
        )

        _ = parse_cli()

        if FLEET_DEBUG:
            logger.info("Debug logging enabled via configuration")
            set_package_log_level(logging.DEBUG)

        check_python_version()
        controller = FleetController()

        exit_code = 0
        assert g.loop is not None, "loop must be initialized"
        try:
            g.loop.run_until_complete(g.loop.create_task(controller.start(), name=CONTROLLER_TASK_NAME))
        except InvalidBrokerUrlError as e:
            logger.error(" Invalid broker URL", extra={"error": e.message})
            exit_code = 2
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received, shutting down...")
        except Exception as e:
            logger.exception(
                " Fatal error in main loop",
                extra={"error": str(e)},
            )
            exit_code = 1
        else:
            logger.info(" Fleet Controller stopped gracefully")
        finally:
            if not g.loop.is_closed():
                g.loop.close()
            logger.info("Fleet Controller shutdown complete")

        if exit_code:
            sys.exit(exit_code)
