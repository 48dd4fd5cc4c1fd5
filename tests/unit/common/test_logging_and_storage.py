import json
import logging

import pytest

from intake_common.infrastructure.object_storage import ObjectStorageClient, ObjectStorageConfig, object_key
from intake_common.logging_config import IntakeJSONFormatter, ServiceNameFilter, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def test_setup_logging_json(monkeypatch, restore_root_logger):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("LOG_FORMAT", "json")

    setup_logging("intake-test")

    assert restore_root_logger.level == logging.DEBUG
    handler = restore_root_logger.handlers[0]
    assert isinstance(handler.formatter, IntakeJSONFormatter)
    assert any(isinstance(f, ServiceNameFilter) for f in handler.filters)


def test_setup_logging_off(monkeypatch, restore_root_logger):
    monkeypatch.setenv("LOG_LEVEL", "off")

    setup_logging("intake-test")

    assert restore_root_logger.handlers == []
    assert restore_root_logger.level > logging.CRITICAL


def test_json_formatter_output():
    record = logging.LogRecord("intake", logging.WARNING, __file__, 10, "hello %s", ("world",), None)
    ServiceNameFilter("intake-test").filter(record)

    entry = json.loads(IntakeJSONFormatter().format(record))

    assert entry["message"] == "hello world"
    assert entry["service"] == "intake-test"
    assert entry["level"] == "WARNING"
    assert "trace_id" not in entry


def test_object_storage_config():
    config = ObjectStorageConfig.from_dict({"bucket": "payloads", "endpoint_url": "http://minio:9000", "secure": False})

    assert config.access_key == "localdev"
    assert object_key("lab/", "tx-1.json") == "lab/tx-1.json"

    kwargs = ObjectStorageClient(config)._client_kwargs()
    assert kwargs["endpoint_url"] == "http://minio:9000"
    assert kwargs["use_ssl"] is False
    assert kwargs["config"].s3 == {"addressing_style": "path"}
