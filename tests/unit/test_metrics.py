"""
Unit tests for the Prometheus metrics helpers.

Counters are process-global, so assertions compare sample deltas.
"""

from unittest.mock import patch

import pytest
from prometheus_client import REGISTRY

from fleet_controller import metrics


def sample(name, labels=None):
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


@pytest.fixture
def reset_server_state():
    previous = metrics._server_state["started"]
    metrics._server_state["started"] = False
    yield
    metrics._server_state["started"] = previous


class TestRecorders:
    """Tests for the record_* helpers"""

    def test_status_report_by_outcome(self):
        before = sample("fleet_status_reports_total", {"outcome": "malformed"})

        metrics.record_status_report("malformed")

        assert sample("fleet_status_reports_total", {"outcome": "malformed"}) == before + 1

    def test_command_sent_labels(self):
        labels = {"command_type": "wake", "outcome": "failed"}
        before = sample("fleet_commands_sent_total", labels)

        metrics.record_command_sent("wake", "failed")

        assert sample("fleet_commands_sent_total", labels) == before + 1

    def test_device_marked_offline(self):
        before = sample("fleet_devices_marked_offline_total")

        metrics.record_device_marked_offline()

        assert sample("fleet_devices_marked_offline_total") == before + 1

    def test_registered_devices_gauge(self):
        metrics.record_registered_devices(7)

        assert sample("fleet_registered_devices") == 7

    def test_sweep_duration(self):
        before = sample("fleet_sweep_duration_seconds_count")

        metrics.record_sweep_duration(0.002)

        assert sample("fleet_sweep_duration_seconds_count") == before + 1


class TestMetricsServer:
    """Tests for start_metrics_server"""

    @pytest.mark.usefixtures("reset_server_state")
    def test_started_once(self):
        """Test the HTTP endpoint is only started by the first call"""
        with patch("fleet_controller.metrics.start_http_server") as mock_start:
            assert metrics.start_metrics_server(9401) is True
            assert metrics.start_metrics_server(9401) is False

        mock_start.assert_called_once_with(9401)

    @pytest.mark.usefixtures("reset_server_state")
    def test_bind_failure_propagates(self):
        """Test an OSError from the server leaves it startable"""
        with patch("fleet_controller.metrics.start_http_server", side_effect=OSError("in use")):
            with pytest.raises(OSError):
                _ = metrics.start_metrics_server(9401)

        assert metrics._server_state["started"] is False
