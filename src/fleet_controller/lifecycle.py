"""Status ingestion and offline detection.

Inbound status reports are decoded and merged into the registry; a periodic sweep
demotes devices that have stopped reporting. Connectivity per device:

    Unknown --(first report)--> Online <--(sweep timeout / fresh report)--> Offline

Only the sweep demotes, and only an inbound report promotes back to online.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import time
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from fleet_controller import metrics
from fleet_controller.const import (
    DEFAULT_TOPIC_PREFIX,
    FLEET_STATUS_INTERVAL,
    OFFLINE_THRESHOLD_FACTOR,
    SWEEP_TASK_NAME,
)
from fleet_controller.correlation import correlation_context
from fleet_controller.events import EventDispatcher, FleetEvent
from fleet_controller.exceptions import DeviceNotFoundError, MalformedMessageError
from fleet_controller.logging_abstraction import get_logger
from fleet_controller.registry import DeviceRegistry
from fleet_controller.structs import ConnectionStatus, DeviceStatus
from fleet_controller.topics import device_id_from_status_topic, normalize_prefix
from fleet_controller.utils import epoch_ms_to_local, now_ms

__all__ = ["StatusLifecycle"]

logger = get_logger(__name__)


class StatusLifecycle:
    """Merges inbound status reports and runs the periodic offline sweep."""

    lp: str = "StatusLifecycle:"

    def __init__(
        self,
        registry: DeviceRegistry,
        events: EventDispatcher | None = None,
        prefix: str = DEFAULT_TOPIC_PREFIX,
        interval: float = FLEET_STATUS_INTERVAL,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        """Initialize the lifecycle.

        Args:
            registry: Registry that owns device state
            events: Dispatcher for status_update / device_offline
            prefix: Status topic prefix
            interval: Sweep period in seconds; a device is stale after twice this
            clock: Source of epoch-millisecond timestamps

        """
        if interval <= 0:
            msg = f"Sweep interval must be positive, got {interval}"
            raise ValueError(msg)
        self.registry = registry
        self.events = events
        self.prefix = normalize_prefix(prefix)
        self.interval = interval
        self._clock = clock
        self._sweep_task: asyncio.Task[None] | None = None

    @property
    def offline_threshold_ms(self) -> float:
        return OFFLINE_THRESHOLD_FACTOR * self.interval * 1000

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def _emit(self, event: FleetEvent, *args: object) -> None:
        if self.events is not None:
            self.events.emit(event, *args)

    # ===== ingestion =====

    def parse_message(self, topic: str, payload: bytes | bytearray | str) -> tuple[str, DeviceStatus]:
        """Decode a status message into ``(device_id, status)``.

        Raises:
            MalformedMessageError: topic is not a status topic, payload is not a JSON
                object, or a field has an invalid value

        """
        device_id = device_id_from_status_topic(self.prefix, topic)
        if device_id is None:
            raise MalformedMessageError(topic, "not a status topic")
        try:
            report: Any = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise MalformedMessageError(topic, f"invalid JSON: {exc}") from exc
        if not isinstance(report, dict):
            raise MalformedMessageError(topic, f"expected a JSON object, got {type(report).__name__}")
        try:
            status = DeviceStatus.from_report(device_id, report, self._clock())
        except ValidationError as exc:
            raise MalformedMessageError(topic, f"{exc.error_count()} invalid field(s)") from exc
        return device_id, status

    def handle_message(self, topic: str, payload: bytes | bytearray | str) -> bool:
        """Merge one inbound status message. Never raises for bad input.

        Malformed payloads and reports from unregistered devices are logged and
        dropped without touching the registry.

        Returns:
            True if the status was applied

        """
        lp = f"{self.lp}handle_message:"
        try:
            device_id, status = self.parse_message(topic, payload)
        except MalformedMessageError as exc:
            metrics.record_status_report("malformed")
            logger.warning("%s Dropping malformed status message", lp, extra={"topic": topic, "reason": exc.reason})
            return False

        with correlation_context(device_id):
            if not self.registry.has(device_id):
                metrics.record_status_report("unknown_device")
                logger.debug("%s Dropping status for unregistered device", lp, extra={"device_id": device_id})
                return False
            try:
                _ = self.registry.apply_status(device_id, status)
            except DeviceNotFoundError:
                # removed between the existence check and the merge
                metrics.record_status_report("unknown_device")
                logger.debug("%s Device removed before status could be applied", lp, extra={"device_id": device_id})
                return False

            metrics.record_status_report("applied")
            logger.debug(
                "%s Status applied",
                lp,
                extra={
                    "device_id": device_id,
                    "connection_status": status.connection_status.value,
                    "battery_level": status.battery_level,
                },
            )
            self._emit(FleetEvent.STATUS_UPDATE, device_id, status.model_copy(deep=True))
        return True

    # ===== offline sweep =====

    def sweep(self, now: int | None = None) -> list[str]:
        """Run one sweep pass and return the ids demoted to offline.

        The scan works from a snapshot, but each demotion re-checks staleness
        against the live status under the registry lock, so a report that lands
        mid-pass keeps its device online.
        """
        lp = f"{self.lp}sweep:"
        started = time.perf_counter()
        now = self._clock() if now is None else now
        threshold = self.offline_threshold_ms

        candidates = [
            device_id
            for device_id, status in self.registry.status_snapshot().items()
            if status.connection_status == ConnectionStatus.ONLINE and now - status.last_seen > threshold
        ]
        demoted: list[str] = []
        for device_id in candidates:
            offline_status = self.registry.demote_if_stale(device_id, now, threshold)
            if offline_status is None:
                continue
            demoted.append(device_id)
            metrics.record_device_marked_offline()
            logger.info(
                "%s Device marked offline",
                lp,
                extra={
                    "device_id": device_id,
                    "last_seen": epoch_ms_to_local(offline_status.last_seen).isoformat(),
                    "threshold_ms": threshold,
                },
            )
            self._emit(FleetEvent.DEVICE_OFFLINE, device_id)

        metrics.record_sweep_duration(time.perf_counter() - started)
        if demoted:
            logger.info("%s Sweep demoted %s device(s)", lp, len(demoted))
        return demoted

    async def _sweep_loop(self) -> None:
        lp = f"{self.lp}sweep_loop:"
        logger.debug("%s Started (interval %ss)", lp, self.interval)
        try:
            while True:
                await asyncio.sleep(self.interval)
                try:
                    _ = self.sweep()
                except Exception:
                    logger.exception("%s Sweep pass failed", lp)
        except asyncio.CancelledError:
            logger.debug("%s Cancelled", lp)
            raise

    def start(self) -> None:
        """Start the periodic sweep on the running loop. No-op if already running."""
        lp = f"{self.lp}start:"
        if self.is_running:
            logger.debug("%s Sweep already running", lp)
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name=SWEEP_TASK_NAME)
        logger.info("%s Offline sweep started", lp, extra={"interval_s": self.interval})

    async def stop(self) -> None:
        """Cancel the sweep and wait for it; no tick runs after this returns."""
        task = self._sweep_task
        self._sweep_task = None
        if task is None:
            return
        if not task.done():
            _ = task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("%s Offline sweep stopped", f"{self.lp}stop:")
