"""
Unit tests for the logging abstraction.

Covers both formatters, handler setup in FleetLogger and package-wide level changes.
"""

import json
import logging
import sys

import pytest

from fleet_controller.correlation import correlation_context
from fleet_controller.logging_abstraction import (
    FleetLogger,
    HumanReadableFormatter,
    JSONFormatter,
    get_logger,
    set_package_log_level,
)


def make_record(msg="Device registered", extra_data=None, exc_info=None):
    record = logging.LogRecord(
        name="fleet_controller.registry",
        level=logging.INFO,
        pathname=__file__,
        lineno=42,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )
    if extra_data is not None:
        record.extra_data = extra_data
    return record


class TestJSONFormatter:
    """Tests for JSONFormatter"""

    def test_basic_fields(self):
        payload = json.loads(JSONFormatter().format(make_record()))

        assert payload["level"] == "INFO"
        assert payload["logger"] == "fleet_controller.registry"
        assert payload["message"] == "Device registered"
        assert payload["line"] == 42
        assert payload["correlation_id"] is None
        assert "context" not in payload

    def test_context_and_correlation_id(self):
        """Test extra data lands under context and the active correlation id is included"""
        record = make_record(extra_data={"device_id": "temp-01", "groups": 2})

        with correlation_context("req_1_abcdef123"):
            payload = json.loads(JSONFormatter().format(record))

        assert payload["context"] == {"device_id": "temp-01", "groups": 2}
        assert payload["correlation_id"] == "req_1_abcdef123"

    def test_exception_is_included(self):
        try:
            raise ValueError("bad config")
        except ValueError:
            record = make_record(exc_info=sys.exc_info())

        payload = json.loads(JSONFormatter().format(record))

        assert "ValueError: bad config" in payload["exception"]


class TestHumanReadableFormatter:
    """Tests for HumanReadableFormatter"""

    def test_placeholder_without_correlation_id(self):
        line = HumanReadableFormatter().format(make_record())

        assert "[------------]" in line
        assert line.endswith("> Device registered")

    def test_correlation_id_is_truncated(self):
        with correlation_context("0123456789abcdef0123"):
            line = HumanReadableFormatter().format(make_record())

        assert "[0123456789ab]" in line

    def test_context_appended(self):
        line = HumanReadableFormatter().format(make_record(extra_data={"device_id": "temp-01", "qos": 1}))

        assert line.endswith("> Device registered | device_id=temp-01 | qos=1")


class TestFleetLogger:
    """Tests for FleetLogger handler setup"""

    def test_handlers_not_duplicated(self):
        """Test repeated get_logger calls for one name attach a single handler set"""
        first = get_logger("fleet_controller.test_handlers_not_duplicated", log_format="human")
        second = get_logger("fleet_controller.test_handlers_not_duplicated", log_format="human")

        assert len(second.handlers) == 1
        assert first.logger is second.logger

    def test_json_file_output(self, tmp_path):
        """Test log_format=both writes JSON lines to the file"""
        json_file = tmp_path / "logs" / "fleet.jsonl"
        logger = FleetLogger("fleet_controller.test_json_file_output", log_format="both", json_file=json_file)

        logger.info("Command sent", extra={"device_id": "cam-01"})
        for handler in logger.handlers:
            handler.flush()

        payload = json.loads(json_file.read_text().splitlines()[0])
        assert payload["message"] == "Command sent"
        assert payload["context"] == {"device_id": "cam-01"}

    def test_unknown_format_falls_back_to_human(self):
        logger = FleetLogger("fleet_controller.test_unknown_format", log_format="xml")

        assert logger.log_format == "human"

    def test_records_reach_caplog(self, caplog):
        logger = get_logger("fleet_controller.test_records_reach_caplog")

        with caplog.at_level(logging.INFO, logger="fleet_controller.test_records_reach_caplog"):
            logger.warning("Device %s marked offline", "temp-01", extra={"device_id": "temp-01"})

        assert "Device temp-01 marked offline" in caplog.text
        assert caplog.records[0].extra_data == {"device_id": "temp-01"}


class TestSetPackageLogLevel:
    """Tests for set_package_log_level"""

    @pytest.fixture
    def loggers(self):
        ours = get_logger("fleet_controller.test_level_ours")
        theirs = logging.getLogger("aiomqtt_test_level_theirs")
        theirs.setLevel(logging.WARNING)
        previous = ours.logger.level
        yield ours, theirs
        set_package_log_level(previous)

    def test_only_package_loggers_change(self, loggers):
        ours, theirs = loggers

        set_package_log_level(logging.DEBUG)

        assert ours.logger.level == logging.DEBUG
        assert all(handler.level == logging.DEBUG for handler in ours.handlers)
        assert theirs.level == logging.WARNING
