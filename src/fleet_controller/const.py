import logging
import os

import tzlocal

from fleet_controller import __version__

__all__ = [
    "COMMAND_TOPIC_SUFFIX",
    "DEFAULT_TOPIC_PREFIX",
    "FLEET_COMMAND_QOS",
    "FLEET_CONFIG_FILE_PATH",
    "FLEET_DEBUG",
    "FLEET_LOG_FORMAT",
    "FLEET_LOG_HUMAN_OUTPUT",
    "FLEET_LOG_JSON_FILE",
    "FLEET_LOG_NAME",
    "FLEET_METRICS_ENABLED",
    "FLEET_METRICS_PORT",
    "FLEET_MQTT_CLIENT_ID",
    "FLEET_MQTT_CONN_DELAY",
    "FLEET_MQTT_PASS",
    "FLEET_MQTT_URL",
    "FLEET_MQTT_USER",
    "FLEET_STATUS_INTERVAL",
    "FLEET_TOPIC_PREFIX",
    "FLEET_VERSION",
    "FOREIGN_LOG_FORMATTER",
    "LOCAL_TZ",
    "MQTT_DEFAULT_KEEPALIVE",
    "MQTT_DEFAULT_PORT",
    "MQTTS_DEFAULT_PORT",
    "OFFLINE_THRESHOLD_FACTOR",
    "PERSISTENT_BASE_DIR",
    "STATUS_TOPIC_SUFFIX",
    "SWEEP_TASK_NAME",
    "BUS_RECEIVER_TASK_NAME",
    "CONTROLLER_TASK_NAME",
    "YES_ANSWER",
]

YES_ANSWER = ("true", "1", "yes", "y", "t", "on")
LOCAL_TZ = tzlocal.get_localzone()
FLEET_LOG_NAME: str = "fleet_controller"
FLEET_VERSION: str = __version__

# adds logger name
FOREIGN_LOG_FORMATTER = logging.Formatter(
    "%(asctime)s.%(msecs)d %(levelname)s <%(name)s> [%(module)s:%(lineno)d] > %(message)s",
    "%m/%d/%y %H:%M:%S",
)

DEFAULT_TOPIC_PREFIX: str = "device/"
STATUS_TOPIC_SUFFIX: str = "/status"
COMMAND_TOPIC_SUFFIX: str = "/command"
# A device is stale once its last report is older than this many sweep periods
OFFLINE_THRESHOLD_FACTOR: int = 2

MQTT_DEFAULT_PORT: int = 1883
MQTTS_DEFAULT_PORT: int = 8883
MQTT_DEFAULT_KEEPALIVE: int = 60

SWEEP_TASK_NAME = "StatusLifecycle_SWEEP"
BUS_RECEIVER_TASK_NAME = "MQTTMessageBus_RECEIVER"
CONTROLLER_TASK_NAME = "FleetController_START"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).casefold() in YES_ANSWER


FLEET_MQTT_URL: str = os.environ.get("FLEET_MQTT_URL", f"mqtt://localhost:{MQTT_DEFAULT_PORT}")
_mqtt_user = os.environ.get("FLEET_MQTT_USER")
FLEET_MQTT_USER: str | None = _mqtt_user if _mqtt_user else None
_mqtt_pass = os.environ.get("FLEET_MQTT_PASS")
FLEET_MQTT_PASS: str | None = _mqtt_pass if _mqtt_pass else None
_client_id = os.environ.get("FLEET_MQTT_CLIENT_ID")
FLEET_MQTT_CLIENT_ID: str | None = _client_id if _client_id else None
# Seconds between broker connection attempts
FLEET_MQTT_CONN_DELAY: int = _env_int("FLEET_MQTT_CONN_DELAY", 5)

_topic_prefix = os.environ.get("FLEET_TOPIC_PREFIX", DEFAULT_TOPIC_PREFIX) or DEFAULT_TOPIC_PREFIX
FLEET_TOPIC_PREFIX: str = _topic_prefix if _topic_prefix.endswith("/") else f"{_topic_prefix}/"

# Sweep period in seconds
FLEET_STATUS_INTERVAL: float = _env_float("FLEET_STATUS_INTERVAL", 60.0)

_qos = _env_int("FLEET_COMMAND_QOS", 1)
FLEET_COMMAND_QOS: int = _qos if _qos in (0, 1, 2) else 1

FLEET_DEBUG: bool = _env_bool("FLEET_DEBUG", "0")

PERSISTENT_BASE_DIR: str = os.environ.get("FLEET_PERSISTENT_BASE_DIR", "/etc/fleet-controller")
FLEET_CONFIG_FILE_PATH: str = os.environ.get("FLEET_CONFIG_FILE_PATH", f"{PERSISTENT_BASE_DIR}/fleet.yaml")

# Logging Configuration
FLEET_LOG_FORMAT: str = os.environ.get("FLEET_LOG_FORMAT", "human")  # "json", "human", or "both"
FLEET_LOG_JSON_FILE: str = os.environ.get("FLEET_LOG_JSON_FILE", "/var/log/fleet_controller.json")
FLEET_LOG_HUMAN_OUTPUT: str = os.environ.get("FLEET_LOG_HUMAN_OUTPUT", "stdout")  # "stdout", "stderr", or file path

# Metrics
FLEET_METRICS_ENABLED: bool = _env_bool("FLEET_METRICS_ENABLED", "0")
FLEET_METRICS_PORT: int = _env_int("FLEET_METRICS_PORT", 9400)
