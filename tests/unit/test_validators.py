"""
Unit tests for validators module.
"""

import pytest

from fleet_controller.structs import CommandType, DeviceCommand, DeviceConfig
from fleet_controller.validators import (
    is_valid_broker_url,
    is_valid_command,
    is_valid_config,
    is_valid_device_id,
    is_valid_group_name,
)


class TestDeviceId:
    """Tests for is_valid_device_id"""

    @pytest.mark.parametrize("device_id", ["abc", "temp-01", "Cam_Front_Door", "a" * 50])
    def test_valid(self, device_id):
        assert is_valid_device_id(device_id)

    @pytest.mark.parametrize("device_id", ["ab", "a" * 51, "temp 01", "temp/01", "", None, 123])
    def test_invalid(self, device_id):
        assert not is_valid_device_id(device_id)


class TestGroupName:
    """Tests for is_valid_group_name"""

    @pytest.mark.parametrize("name", ["Ab", "Living Room", "floor-2", "x" * 50])
    def test_valid(self, name):
        assert is_valid_group_name(name)

    @pytest.mark.parametrize("name", ["A", "x" * 51, "Living_Room", "a/b", "", None])
    def test_invalid(self, name):
        assert not is_valid_group_name(name)


class TestBrokerUrl:
    """Tests for is_valid_broker_url"""

    @pytest.mark.parametrize(
        "url",
        ["mqtt://localhost", "mqtt://broker.local:1883", "mqtts://10.0.0.5:8883", "mqtt://my_broker"],
    )
    def test_valid(self, url):
        assert is_valid_broker_url(url)

    @pytest.mark.parametrize(
        "url",
        ["http://localhost", "mqtt://", "mqtt://host:port", "mqtt://host:1883/path", "localhost:1883", None],
    )
    def test_invalid(self, url):
        assert not is_valid_broker_url(url)


class TestConfig:
    """Tests for is_valid_config"""

    def test_empty_config_is_valid(self):
        """Test every field is optional"""
        assert is_valid_config(DeviceConfig())

    @pytest.mark.parametrize(
        "fields",
        [
            {"reporting_interval": 1},
            {"reporting_interval": 86400},
            {"sleep_threshold": 0},
            {"sleep_threshold": 100},
            {"security_level": 1},
            {"security_level": 5},
            {"auto_wake": False},
        ],
    )
    def test_bounds_inclusive(self, fields):
        assert is_valid_config(DeviceConfig(**fields))

    @pytest.mark.parametrize(
        "fields",
        [
            {"reporting_interval": 0},
            {"reporting_interval": 86401},
            {"sleep_threshold": -0.5},
            {"sleep_threshold": 100.5},
            {"security_level": 0},
            {"security_level": 6},
        ],
    )
    def test_out_of_range(self, fields):
        assert not is_valid_config(DeviceConfig(**fields))


class TestCommand:
    """Tests for is_valid_command"""

    def make(self, command_type, payload=None, timestamp=1_700_000_000_000):
        return DeviceCommand(type=command_type, payload=payload, timestamp=timestamp, request_id="req_1_abc")

    @pytest.mark.parametrize("command_type", [CommandType.SLEEP, CommandType.WAKE, CommandType.GET_STATUS])
    def test_simple_commands(self, command_type):
        assert is_valid_command(self.make(command_type))

    def test_non_positive_timestamp(self):
        """Test the timestamp must be positive"""
        assert not is_valid_command(self.make(CommandType.WAKE, timestamp=0))

    def test_set_reporting_interval_needs_numeric_interval(self):
        """Test set_reporting_interval payload requirements"""
        assert is_valid_command(self.make(CommandType.SET_REPORTING_INTERVAL, {"interval": 30}))
        assert is_valid_command(self.make(CommandType.SET_REPORTING_INTERVAL, {"interval": 2.5}))
        assert not is_valid_command(self.make(CommandType.SET_REPORTING_INTERVAL))
        assert not is_valid_command(self.make(CommandType.SET_REPORTING_INTERVAL, {"every": 30}))
        assert not is_valid_command(self.make(CommandType.SET_REPORTING_INTERVAL, {"interval": "30"}))
        assert not is_valid_command(self.make(CommandType.SET_REPORTING_INTERVAL, {"interval": False}))
        assert not is_valid_command(self.make(CommandType.SET_REPORTING_INTERVAL, [30]))
