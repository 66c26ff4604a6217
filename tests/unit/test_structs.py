"""
Unit tests for structs module.

Tests the wire models, their camelCase aliases, and the GlobalObject singleton.
"""

import json

import pytest
from pydantic import ValidationError

from fleet_controller.structs import (
    CommandOutcome,
    CommandType,
    ConnectionStatus,
    DeviceCommand,
    DeviceConfig,
    DeviceStatus,
    FleetEnv,
    GlobalObject,
    GroupStatistics,
    PowerMode,
)


class TestDeviceConfig:
    """Tests for DeviceConfig"""

    def test_accepts_both_spellings(self):
        """Test camelCase and snake_case input both populate fields"""
        assert DeviceConfig.model_validate({"reportingInterval": 30}).reporting_interval == 30
        assert DeviceConfig.model_validate({"reporting_interval": 30}).reporting_interval == 30

    def test_merged_keeps_unset_fields(self):
        """Test merged only overrides explicitly set fields"""
        base = DeviceConfig(reporting_interval=30, auto_wake=True)
        patch = DeviceConfig(sleep_threshold=15)

        merged = base.merged(patch)

        assert merged.reporting_interval == 30
        assert merged.auto_wake is True
        assert merged.sleep_threshold == 15
        assert base.sleep_threshold is None

    def test_merged_explicit_none_clears(self):
        """Test an explicitly supplied None clears the field"""
        base = DeviceConfig(reporting_interval=30)

        merged = base.merged(DeviceConfig(reporting_interval=None))

        assert merged.reporting_interval is None


class TestDeviceStatus:
    """Tests for DeviceStatus"""

    def test_from_report_defaults(self):
        """Test a bare report is online with no battery or power mode"""
        status = DeviceStatus.from_report("temp-01", {}, received_at=1000)

        assert status.device_id == "temp-01"
        assert status.last_seen == 1000
        assert status.connection_status == ConnectionStatus.ONLINE
        assert status.power_mode is None
        assert status.battery_level is None

    def test_from_report_ignores_identity_fields(self):
        """Test deviceId and lastSeen from the device are overridden"""
        status = DeviceStatus.from_report(
            "temp-01",
            {"deviceId": "x", "device_id": "y", "lastSeen": 1, "last_seen": 2, "additionalInfo": {"rssi": -50}},
            received_at=1000,
        )

        assert status.device_id == "temp-01"
        assert status.last_seen == 1000
        assert status.additional_info == {"rssi": -50}

    def test_battery_level_range(self):
        """Test battery_level must be within 0..100"""
        with pytest.raises(ValidationError):
            _ = DeviceStatus.from_report("temp-01", {"batteryLevel": 101}, received_at=1)

    def test_as_offline_preserves_everything_else(self):
        """Test as_offline only changes connection_status"""
        status = DeviceStatus(
            device_id="temp-01",
            last_seen=1234,
            battery_level=55,
            power_mode=PowerMode.SLEEP,
            errors=["low signal"],
        )

        offline = status.as_offline()

        assert offline.connection_status == ConnectionStatus.OFFLINE
        assert offline.model_dump(exclude={"connection_status"}) == status.model_dump(exclude={"connection_status"})
        assert status.connection_status == ConnectionStatus.ONLINE


class TestDeviceCommand:
    """Tests for DeviceCommand wire serialization"""

    def test_to_wire_without_payload(self):
        """Test payload is omitted when None"""
        command = DeviceCommand(type=CommandType.WAKE, timestamp=42, request_id="req_42_abcdef123")

        assert json.loads(command.to_wire()) == {"type": "wake", "timestamp": 42, "requestId": "req_42_abcdef123"}

    def test_to_wire_with_payload(self):
        """Test payload is included as-is"""
        command = DeviceCommand(type=CommandType.SLEEP, payload={"duration": 60}, timestamp=42, request_id="r")

        assert json.loads(command.to_wire())["payload"] == {"duration": 60}

    def test_command_outcome_request_id(self):
        """Test CommandOutcome exposes the command's request id"""
        command = DeviceCommand(type=CommandType.WAKE, timestamp=42, request_id="req_42_abcdef123")

        outcome = CommandOutcome(device_id="temp-01", topic="device/temp-01/command", command=command)

        assert outcome.request_id == "req_42_abcdef123"


class TestGroupStatistics:
    """Tests for GroupStatistics defaults"""

    def test_distribution_starts_at_zero_for_every_mode(self):
        stats = GroupStatistics()

        assert stats.power_mode_distribution == {mode: 0 for mode in PowerMode}


class TestGlobalObject:
    """Tests for GlobalObject singleton"""

    def test_is_singleton(self):
        """Test every instantiation returns the same object"""
        assert GlobalObject() is GlobalObject()

    def test_reload_env(self, monkeypatch):
        """Test reload_env re-reads FLEET_* variables"""
        g = GlobalObject()
        monkeypatch.setattr(GlobalObject, "env", FleetEnv())
        monkeypatch.setenv("FLEET_MQTT_URL", "mqtts://broker.example:8883")
        monkeypatch.setenv("FLEET_MQTT_USER", "fleet")
        monkeypatch.setenv("FLEET_TOPIC_PREFIX", "iot")
        monkeypatch.setenv("FLEET_STATUS_INTERVAL", "15")

        g.reload_env()

        assert g.env.mqtt_url == "mqtts://broker.example:8883"
        assert g.env.mqtt_user == "fleet"
        assert g.env.topic_prefix == "iot/"
        assert g.env.status_interval == 15.0

    def test_reload_env_ignores_bad_interval(self, monkeypatch):
        """Test a non-numeric or non-positive interval keeps the previous value"""
        g = GlobalObject()
        monkeypatch.setattr(GlobalObject, "env", FleetEnv(status_interval=30))

        monkeypatch.setenv("FLEET_STATUS_INTERVAL", "soon")
        g.reload_env()
        assert g.env.status_interval == 30

        monkeypatch.setenv("FLEET_STATUS_INTERVAL", "-5")
        g.reload_env()
        assert g.env.status_interval == 30

    def test_reload_env_command_qos(self, monkeypatch):
        """Test FLEET_COMMAND_QOS is re-read and out-of-range values keep the previous level"""
        g = GlobalObject()
        monkeypatch.setattr(GlobalObject, "env", FleetEnv(command_qos=1))

        monkeypatch.setenv("FLEET_COMMAND_QOS", "0")
        g.reload_env()
        assert g.env.command_qos == 0

        monkeypatch.setenv("FLEET_COMMAND_QOS", "3")
        g.reload_env()
        assert g.env.command_qos == 0

        monkeypatch.setenv("FLEET_COMMAND_QOS", "high")
        g.reload_env()
        assert g.env.command_qos == 0
