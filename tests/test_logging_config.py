"""
Tests for structured logging.
"""

import json
import logging

import pytest

from basement_core.logging_config import ContextTextFormatter, JSONFormatter, configure_logging
from basement_core.models import InstanceState, SSLStatus


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def make_record(message, **extra):
    record = logging.LogRecord("basement_core.provisioner", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_lifts_context_and_enum_values():
    record = make_record("Instance 3 running", instance_id=3, customer_id="42", status=InstanceState.RUNNING)

    entry = json.loads(JSONFormatter().format(record))

    assert entry["message"] == "Instance 3 running"
    assert entry["level"] == "INFO"
    assert entry["instance_id"] == 3
    assert entry["customer_id"] == "42"
    assert entry["status"] == "running"
    assert "domain" not in entry


def test_text_appends_context():
    record = make_record("Verified", domain="shop.example.com", ssl_status=SSLStatus.ACTIVE)

    line = ContextTextFormatter().format(record)

    assert line.endswith("Verified [domain=shop.example.com ssl_status=active]")


def test_text_without_context_is_plain():
    assert ContextTextFormatter().format(make_record("Started")).endswith("Started")


def test_configure_logging_quiets_libraries(restore_root_logger):
    configure_logging("DEBUG", "text")

    assert restore_root_logger.level == logging.DEBUG
    assert logging.getLogger("paramiko").level == logging.WARNING
    assert isinstance(restore_root_logger.handlers[0].formatter, ContextTextFormatter)

    configure_logging("INFO", "json")
    assert isinstance(restore_root_logger.handlers[0].formatter, JSONFormatter)
