"""Tests for CLI helpers: logging setup and client construction."""

import json
import logging
import sys

import pytest

from mixsync.__main__ import JSONFormatter, _make_client, setup_logging
from mixsync.config import Config, NodeConfig


def make_record(exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name="mixsync.sync.sync_client",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="pulled %d changes",
        args=(3,),
        exc_info=exc_info,
    )


@pytest.fixture
def root_logger():
    """Restore the root logger after a test reconfigures it."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestJSONFormatter:
    """Tests for JSON log lines."""

    def test_line_is_json_with_device(self):
        """Test each line is one JSON object tagged with the device."""
        line = JSONFormatter(device_id="laptop").format(make_record())

        data = json.loads(line)
        assert data["device_id"] == "laptop"
        assert data["component"] == "mixsync.sync.sync_client"
        assert data["level"] == "INFO"
        assert data["message"] == "pulled 3 changes"
        assert data["timestamp"].endswith("+00:00")
        assert "exception" not in data

    def test_exception_included(self):
        """Test tracebacks are carried in the exception field."""
        try:
            raise RuntimeError("disk gone")
        except RuntimeError:
            record = make_record(exc_info=sys.exc_info())

        data = json.loads(JSONFormatter().format(record))

        assert data["device_id"] is None
        assert "RuntimeError: disk gone" in data["exception"]


class TestSetupLogging:
    """Tests for root logger configuration."""

    def test_json_output_uses_formatter(self, root_logger):
        """Test --json installs the JSON formatter with the device id."""
        setup_logging(json_output=True, device_id="nas")

        [handler] = root_logger.handlers
        assert isinstance(handler.formatter, JSONFormatter)
        assert handler.formatter.device_id == "nas"
        assert root_logger.level == logging.INFO

    def test_explicit_level_overrides_verbose(self, root_logger):
        """Test --log-level wins over -v."""
        setup_logging(verbose=True, log_level="warning")

        assert root_logger.level == logging.WARNING


class TestMakeClient:
    """Tests for building a sync client from config."""

    def test_client_filters_own_echoes(self):
        """Test the configured device id reaches the client."""
        client = _make_client(Config(node=NodeConfig(device_id="laptop")))

        assert client.device_id == "laptop"

    def test_status_client_counts_everything(self):
        """Test echo filtering can be turned off."""
        client = _make_client(Config(), filter_echoes=False)

        assert client.device_id is None

    def test_client_settings_from_config(self):
        """Test client tuning is taken from the client section."""
        config = Config()
        config.client.server_url = "http://nas:9000"
        config.client.batch_size = 7
        config.auth.push_token = "s3cret"

        client = _make_client(config)

        assert client.server_url == "http://nas:9000"
        assert client.batch_size == 7
        assert client.token == "s3cret"
