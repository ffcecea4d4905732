import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

import json
import logging

import pytest

from knowledge.core.config import Settings
from knowledge.logging_utils import (
    ContextFilter,
    PIIRedactingFilter,
    bind_request_context,
    bind_tenant_context,
    clear_context,
    current_context,
    serialize_log_record,
    setup_logging,
)


def make_record(msg="hello", args=(), **extra):
    record = logging.LogRecord("knowledge.test", logging.INFO, __file__, 1, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture(autouse=True)
def reset_context():
    clear_context()
    yield
    clear_context()


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    knowledge = logging.getLogger("knowledge")
    saved = (list(root.handlers), root.level)
    yield
    root.handlers[:] = saved[0]
    root.setLevel(saved[1])
    knowledge.handlers.clear()
    knowledge.propagate = True
    knowledge.setLevel(logging.NOTSET)


def test_context_filter_injects_context():
    bind_request_context("req-1")
    bind_tenant_context("tenant-9")
    record = make_record()
    ContextFilter().filter(record)
    assert record.request_id == "req-1"
    assert record.tenant_id == "tenant-9"
    assert current_context() == {"request_id": "req-1", "tenant_id": "tenant-9"}


def test_context_filter_keeps_explicit_tenant():
    bind_tenant_context("tenant-9")
    record = make_record(tenant_id="explicit")
    ContextFilter().filter(record)
    assert record.tenant_id == "explicit"


def test_pii_filter_redacts_message_args_and_error_field():
    record = make_record(
        "call failed for %s",
        ("alice@example.com",),
        error="Incorrect API key provided: sk-abcdefghijklmnop",
    )
    PIIRedactingFilter().filter(record)
    assert record.getMessage() == "call failed for [REDACTED]"
    assert "sk-" not in record.error


def test_serialize_includes_extra_fields():
    record = make_record(tenant_id="t1", result_count=3)
    ContextFilter().filter(record)
    payload = json.loads(serialize_log_record(record))
    assert payload["message"] == "hello"
    assert payload["context"]["tenant_id"] == "t1"
    assert payload["fields"] == {"result_count": 3}


def test_setup_logging_production(tmp_path, restore_logging):
    settings = Settings(environment="production", enable_file_logging=True, log_dir=tmp_path)
    setup_logging(settings)

    logger = logging.getLogger("knowledge")
    assert logger.propagate is False
    handler_types = {type(h).__name__ for h in logger.handlers}
    assert "RotatingFileHandler" in handler_types
    assert "PrometheusErrorHandler" in handler_types
    assert (tmp_path / "knowledge.log").exists()


def test_setup_logging_development_skips_file(tmp_path, restore_logging):
    settings = Settings(environment="development", log_dir=tmp_path / "logs")
    setup_logging(settings)
    handler_types = {type(h).__name__ for h in logging.getLogger("knowledge").handlers}
    assert "RotatingFileHandler" not in handler_types
    assert not (tmp_path / "logs").exists()
