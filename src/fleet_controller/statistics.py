"""Read-only per-group summaries computed from registry snapshots."""

from __future__ import annotations

from collections.abc import Iterable

from fleet_controller.registry import DeviceRegistry
from fleet_controller.structs import ConnectionStatus, Device, GroupStatistics, PowerMode

__all__ = ["compute_group_statistics", "summarize_devices"]


def summarize_devices(devices: Iterable[Device]) -> GroupStatistics:
    """Summarize a list of devices.

    Devices without a status count as offline and are left out of the battery
    average and the power mode buckets, but still count toward ``total_devices``.
    The average is 0 when no device reports a battery level.
    """
    battery_levels: list[float] = []
    distribution = dict.fromkeys(PowerMode, 0)
    online = offline = total = 0

    for device in devices:
        total += 1
        status = device.status
        if status is None:
            offline += 1
            continue
        if status.battery_level is not None:
            battery_levels.append(status.battery_level)
        if status.power_mode is not None:
            distribution[status.power_mode] += 1
        if status.connection_status == ConnectionStatus.ONLINE:
            online += 1
        else:
            offline += 1

    average = sum(battery_levels) / len(battery_levels) if battery_levels else 0
    return GroupStatistics(
        average_battery_level=average,
        power_mode_distribution=distribution,
        online_count=online,
        offline_count=offline,
        total_devices=total,
    )


def compute_group_statistics(registry: DeviceRegistry, group_name: str) -> GroupStatistics:
    """Summarize a group's current members.

    Raises:
        GroupNotFoundError: group does not exist

    """
    return summarize_devices(registry.devices_in_group(group_name))
