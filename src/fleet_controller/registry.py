"""Device and group registry: the system of record for the fleet.

Owns the device table and the bidirectional device <-> group index. Every
mutation runs under one re-entrant lock, so inbound status merges, the offline
sweep and API calls are serialized against each other no matter which thread or
task they come from. Readers get deep-copied snapshots taken under the same
lock, never live objects, so a reader cannot observe half of a group change.

Invariant: for every device ``d`` and group ``g``,
``g in d.groups`` if and only if ``d.id in members(g)``.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from fleet_controller import metrics
from fleet_controller.events import EventDispatcher, FleetEvent
from fleet_controller.exceptions import (
    AlreadyExistsError,
    DeviceNotFoundError,
    GroupNotFoundError,
    InvalidConfigError,
    InvalidGroupNameError,
    InvalidIdError,
)
from fleet_controller.logging_abstraction import get_logger
from fleet_controller.structs import ConnectionStatus, Device, DeviceConfig, DeviceStatus, DeviceType
from fleet_controller.utils import now_ms
from fleet_controller.validators import is_valid_config, is_valid_device_id, is_valid_group_name

__all__ = ["DeviceRegistry"]

logger = get_logger(__name__)

ConfigInput = DeviceConfig | Mapping[str, Any] | None


class DeviceRegistry:
    """In-memory device table plus group index, safe to share across tasks and threads."""

    lp: str = "DeviceRegistry:"

    def __init__(
        self,
        events: EventDispatcher | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        """Initialize an empty registry.

        Args:
            events: Dispatcher for device_registered / device_updated / device_removed
            clock: Source of epoch-millisecond timestamps

        """
        self._devices: dict[str, Device] = {}
        self._groups: dict[str, set[str]] = {}
        self._lock = threading.RLock()
        self._clock = clock
        self.events: EventDispatcher | None = events

    # ===== helpers (caller holds the lock) =====

    def _emit(self, event: FleetEvent, *args: object) -> None:
        if self.events is not None:
            self.events.emit(event, *args)

    def _touch(self, device: Device) -> None:
        # updated_at never moves backwards, even if the wall clock does
        device.updated_at = max(device.updated_at, self._clock())

    def _require(self, device_id: str) -> Device:
        device = self._devices.get(device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)
        return device

    def _require_group(self, name: str) -> set[str]:
        members = self._groups.get(name)
        if members is None:
            raise GroupNotFoundError(name)
        return members

    def _link(self, device: Device, group_name: str) -> bool:
        """Add both directions of a membership; returns False if it already existed."""
        members = self._groups.setdefault(group_name, set())
        already = device.id in members and group_name in device.groups
        members.add(device.id)
        device.groups.add(group_name)
        return not already

    def _unlink(self, device: Device, group_name: str) -> None:
        members = self._groups.get(group_name)
        if members is not None:
            members.discard(device.id)
        device.groups.discard(group_name)

    @staticmethod
    def _coerce_config(device_id: str, config: ConfigInput) -> DeviceConfig:
        if config is None:
            return DeviceConfig()
        if isinstance(config, DeviceConfig):
            parsed = config.model_copy()
        else:
            try:
                parsed = DeviceConfig.model_validate(dict(config))
            except ValidationError as exc:
                raise InvalidConfigError(device_id, dict(config)) from exc
        if not is_valid_config(parsed):
            raise InvalidConfigError(device_id, parsed.model_dump(exclude_none=True, by_alias=True))
        return parsed

    # ===== devices =====

    def register(
        self,
        device_id: str,
        name: str,
        device_type: DeviceType | str,
        config: ConfigInput = None,
        groups: Iterable[str] = (),
    ) -> Device:
        """Register a new device and add it to ``groups``, creating groups as needed.

        Either everything succeeds or nothing changes.

        Raises:
            InvalidIdError: id fails the shape check
            AlreadyExistsError: id is already registered (the existing device is untouched)
            InvalidConfigError: a config value is out of range
            InvalidGroupNameError: one of ``groups`` fails the shape check
            ValueError: ``device_type`` is not a DeviceType

        """
        lp = f"{self.lp}register:"
        if not is_valid_device_id(device_id):
            raise InvalidIdError(device_id)
        kind = DeviceType(device_type)
        group_names = list(dict.fromkeys(groups))

        with self._lock:
            if device_id in self._devices:
                raise AlreadyExistsError(device_id)
            parsed_config = self._coerce_config(device_id, config)
            for group_name in group_names:
                if not is_valid_group_name(group_name):
                    raise InvalidGroupNameError(group_name)

            now = self._clock()
            device = Device(
                id=device_id,
                name=name,
                type=kind,
                config=parsed_config,
                created_at=now,
                updated_at=now,
            )
            for group_name in group_names:
                _ = self._link(device, group_name)
            self._devices[device_id] = device
            snapshot = device.model_copy(deep=True)
            count = len(self._devices)

        metrics.record_registered_devices(count)
        logger.info(
            "%s Device registered",
            lp,
            extra={"device_id": device_id, "name": name, "type": kind.value, "groups": group_names},
        )
        self._emit(FleetEvent.DEVICE_REGISTERED, snapshot.model_copy(deep=True))
        return snapshot

    def update(
        self,
        device_id: str,
        *,
        name: str | None = None,
        device_type: DeviceType | str | None = None,
        config: ConfigInput = None,
    ) -> Device:
        """Merge the supplied fields into a device. ``config`` is shallow-merged, not replaced.

        Raises:
            DeviceNotFoundError: id is not registered
            InvalidConfigError: the supplied config has an out-of-range value

        """
        lp = f"{self.lp}update:"
        kind = DeviceType(device_type) if device_type is not None else None
        with self._lock:
            device = self._require(device_id)
            updated_fields: list[str] = []
            if config is not None:
                incoming = self._coerce_config(device_id, config)
                merged = device.config.merged(incoming)
                if not is_valid_config(merged):
                    raise InvalidConfigError(device_id, merged.model_dump(exclude_none=True, by_alias=True))
                device.config = merged
                updated_fields.append("config")
            if name is not None:
                device.name = name
                updated_fields.append("name")
            if kind is not None:
                device.type = kind
                updated_fields.append("type")
            self._touch(device)
            snapshot = device.model_copy(deep=True)

        logger.info("%s Device updated", lp, extra={"device_id": device_id, "fields": updated_fields})
        self._emit(FleetEvent.DEVICE_UPDATED, snapshot.model_copy(deep=True))
        return snapshot

    def remove(self, device_id: str) -> bool:
        """Delete a device and purge it from every group. False if it was not registered.

        Groups it leaves behind keep existing, even when they end up empty.
        """
        lp = f"{self.lp}remove:"
        with self._lock:
            device = self._devices.get(device_id)
            if device is None:
                return False
            former_groups = sorted(device.groups)
            for group_name in former_groups:
                self._unlink(device, group_name)
            del self._devices[device_id]
            count = len(self._devices)

        metrics.record_registered_devices(count)
        logger.info("%s Device removed", lp, extra={"device_id": device_id, "removed_from_groups": former_groups})
        self._emit(FleetEvent.DEVICE_REMOVED, device_id)
        return True

    def apply_status(self, device_id: str, status: DeviceStatus) -> Device:
        """Replace a device's status wholesale.

        Raises:
            DeviceNotFoundError: id is not registered

        """
        with self._lock:
            device = self._require(device_id)
            device.status = status.model_copy(deep=True)
            self._touch(device)
            snapshot = device.model_copy(deep=True)

        logger.debug(
            "%s Device status applied",
            f"{self.lp}apply_status:",
            extra={"device_id": device_id, "connection_status": status.connection_status.value},
        )
        return snapshot

    def demote_if_stale(self, device_id: str, now: int, threshold_ms: float) -> DeviceStatus | None:
        """Mark a device offline if, right now, its cached status is online and stale.

        The check and the write happen under one lock acquisition, so a status
        merged between a sweep's scan and this call is always seen. ``last_seen``
        is preserved.

        Returns:
            The new offline status, or None if the device is gone, has no status,
            is not online, or reported within ``threshold_ms``.

        """
        with self._lock:
            device = self._devices.get(device_id)
            if device is None or device.status is None:
                return None
            status = device.status
            if status.connection_status != ConnectionStatus.ONLINE:
                return None
            if now - status.last_seen <= threshold_ms:
                return None
            device.status = status.as_offline()
            self._touch(device)
            return device.status.model_copy(deep=True)

    def get(self, device_id: str) -> Device:
        """Snapshot of one device.

        Raises:
            DeviceNotFoundError: id is not registered

        """
        with self._lock:
            try:
                return self._require(device_id).model_copy(deep=True)
            except DeviceNotFoundError:
                logger.warning("%s Device lookup failed", f"{self.lp}get:", extra={"device_id": device_id})
                raise

    def has(self, device_id: str) -> bool:
        with self._lock:
            return device_id in self._devices

    def all_devices(self) -> list[Device]:
        with self._lock:
            return [device.model_copy(deep=True) for device in self._devices.values()]

    def all_device_ids(self) -> list[str]:
        with self._lock:
            return list(self._devices)

    def status_snapshot(self) -> dict[str, DeviceStatus]:
        """Cached statuses keyed by device id, for devices that have reported at least once."""
        with self._lock:
            return {
                device_id: device.status.model_copy(deep=True)
                for device_id, device in self._devices.items()
                if device.status is not None
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)

    # ===== groups =====

    def create_group(self, name: str) -> bool:
        """Create an empty group. False (not an error) if it already exists.

        Raises:
            InvalidGroupNameError: name fails the shape check

        """
        if not is_valid_group_name(name):
            raise InvalidGroupNameError(name)
        with self._lock:
            if name in self._groups:
                return False
            self._groups[name] = set()
        logger.info("%s Group created", f"{self.lp}create_group:", extra={"group": name})
        return True

    def add_to_group(self, device_id: str, group_name: str) -> bool:
        """Add a device to a group, creating the group if needed. Idempotent.

        Raises:
            InvalidGroupNameError: group name fails the shape check
            DeviceNotFoundError: id is not registered (no group is created)

        """
        if not is_valid_group_name(group_name):
            raise InvalidGroupNameError(group_name)
        with self._lock:
            device = self._require(device_id)
            if self._link(device, group_name):
                self._touch(device)
            group_size = len(self._groups[group_name])
        logger.debug(
            "%s Device added to group",
            f"{self.lp}add_to_group:",
            extra={"device_id": device_id, "group": group_name, "group_size": group_size},
        )
        return True

    def remove_from_group(self, device_id: str, group_name: str) -> bool:
        """Remove a device from a group. Returns whether it was a member.

        Raises:
            GroupNotFoundError: group does not exist

        """
        with self._lock:
            members = self._require_group(group_name)
            if device_id not in members:
                return False
            device = self._devices.get(device_id)
            if device is not None:
                self._unlink(device, group_name)
                self._touch(device)
            else:
                members.discard(device_id)
        logger.debug(
            "%s Device removed from group",
            f"{self.lp}remove_from_group:",
            extra={"device_id": device_id, "group": group_name},
        )
        return True

    def remove_group(self, name: str) -> bool:
        """Delete a group after stripping it from every member. False if absent."""
        with self._lock:
            members = self._groups.get(name)
            if members is None:
                return False
            member_count = len(members)
            for device_id in sorted(members):
                device = self._devices.get(device_id)
                if device is not None:
                    self._unlink(device, name)
                    self._touch(device)
            del self._groups[name]
        logger.info("%s Group removed", f"{self.lp}remove_group:", extra={"group": name, "members": member_count})
        return True

    def group_exists(self, name: str) -> bool:
        with self._lock:
            return name in self._groups

    def devices_in_group(self, name: str) -> list[Device]:
        """Snapshots of a group's members, sorted by id.

        Raises:
            GroupNotFoundError: group does not exist

        """
        with self._lock:
            members = sorted(self._require_group(name))
            return [
                self._devices[device_id].model_copy(deep=True) for device_id in members if device_id in self._devices
            ]

    def device_ids_in_group(self, name: str) -> list[str]:
        """Member ids of a group, sorted.

        Raises:
            GroupNotFoundError: group does not exist

        """
        with self._lock:
            return sorted(self._require_group(name))

    def all_groups(self) -> list[str]:
        with self._lock:
            return list(self._groups)
