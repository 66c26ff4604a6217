"""Prometheus metrics for status ingestion, offline detection and command delivery."""

import threading
from typing import Final

from prometheus_client import (  # type: ignore[import-untyped]
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

__all__ = [
    "record_command_sent",
    "record_device_marked_offline",
    "record_registered_devices",
    "record_status_report",
    "record_sweep_duration",
    "start_metrics_server",
]

fleet_status_reports_total: Final = Counter(  # type: ignore[assignment]
    "fleet_status_reports_total",
    "Inbound status reports by outcome",
    ["outcome"],
)

fleet_commands_sent_total: Final = Counter(  # type: ignore[assignment]
    "fleet_commands_sent_total",
    "Single-device command sends by command type and outcome",
    ["command_type", "outcome"],
)

fleet_devices_marked_offline_total: Final = Counter(  # type: ignore[assignment]
    "fleet_devices_marked_offline_total",
    "Devices demoted to offline by the sweep",
)

fleet_registered_devices: Final = Gauge(  # type: ignore[assignment]
    "fleet_registered_devices",
    "Devices currently in the registry",
)

fleet_sweep_duration_seconds: Final = Histogram(  # type: ignore[assignment]
    "fleet_sweep_duration_seconds",
    "Wall time of one offline sweep pass",
    buckets=(0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 1.0),
)

_server_state = {"started": False}
_server_lock = threading.Lock()


def start_metrics_server(port: int = 9400) -> bool:
    """Start the Prometheus HTTP endpoint once; returns True only on the call that started it."""
    with _server_lock:
        if _server_state["started"]:
            return False
        start_http_server(port)  # type: ignore[no-untyped-call]
        _server_state["started"] = True
        return True


def record_status_report(outcome: str) -> None:
    """Outcomes: applied, malformed, unknown_device."""
    fleet_status_reports_total.labels(outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_command_sent(command_type: str, outcome: str) -> None:
    """Outcomes: sent, failed."""
    fleet_commands_sent_total.labels(command_type=command_type, outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_device_marked_offline() -> None:
    fleet_devices_marked_offline_total.inc()  # type: ignore[no-untyped-call]


def record_registered_devices(count: int) -> None:
    fleet_registered_devices.set(count)  # type: ignore[no-untyped-call]


def record_sweep_duration(seconds: float) -> None:
    fleet_sweep_duration_seconds.observe(seconds)  # type: ignore[no-untyped-call]
