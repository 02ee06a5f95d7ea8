"""Tests for the structured logging helpers."""

import json
import logging

import pytest

from qrtrack.logging import (
    AUDIT,
    ROOT_LOGGER,
    ConsoleFormatter,
    JsonFormatter,
    audit,
    degraded,
    get_logger,
    setup_logging,
    trace,
)


@pytest.fixture
def restore_root():
    root = logging.getLogger(ROOT_LOGGER)
    level, handlers = root.level, list(root.handlers)
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def _events(caplog):
    return [getattr(r, "event", None) for r in caplog.records]


def test_audit_carries_event_and_context(caplog):
    caplog.set_level(AUDIT, logger=ROOT_LOGGER)
    audit("code.generated", logger=get_logger("service"), code="QR_1", quality=0.9)
    [record] = caplog.records
    assert record.levelname == "AUDIT"
    assert record.name == "qrtrack.service"
    assert record.event == "code.generated"
    assert record.ctx == {"code": "QR_1", "quality": 0.9}


def test_audit_filtered_below_level(caplog):
    caplog.set_level(logging.ERROR, logger=ROOT_LOGGER)
    audit("code.generated", code="QR_1")
    assert caplog.records == []


def test_degraded_is_labelled(caplog):
    caplog.set_level(logging.WARNING, logger=ROOT_LOGGER)
    degraded("cache.read_failed", key="code:QR_1")
    [record] = caplog.records
    assert record.levelno == logging.WARNING
    assert record.ctx["warning"] == "DegradedQualityWarning"


def test_trace_logs_enter_and_done(caplog):
    caplog.set_level(logging.DEBUG, logger=ROOT_LOGGER)

    @trace(logger_name="tests")
    def double(raster: bytes):
        return raster * 2

    assert double(b"ab") == b"abab"
    assert _events(caplog) == ["double.enter", "double.done"]
    assert caplog.records[0].ctx["args"] == ["bytes[2]"]
    assert caplog.records[1].ctx["result"] == "bytes[4]"
    assert caplog.records[1].duration_ms >= 0


def test_trace_reraises(caplog):
    caplog.set_level(logging.INFO, logger=ROOT_LOGGER)

    @trace(logger_name="tests")
    def explode():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        explode()
    [record] = caplog.records
    assert record.event == "explode.error"
    assert record.levelno == logging.ERROR
    assert record.exc_info[0] is RuntimeError


def test_json_formatter():
    log = get_logger("store")
    record = log.makeRecord(log.name, AUDIT, "", 0, "record.stored", (), None)
    record.event = "record.stored"
    record.ctx = {"record": "QR_1"}
    entry = json.loads(JsonFormatter().format(record))
    assert entry["level"] == "AUDIT"
    assert entry["src"] == "qrtrack.store"
    assert entry["event"] == "record.stored"
    assert entry["ctx"] == {"record": "QR_1"}
    assert entry["ts"].endswith("Z")


def test_console_formatter_plain_message():
    log = get_logger("store")
    record = log.makeRecord(log.name, logging.INFO, "", 0, "Loaded %d records", (3,), None)
    assert "Loaded 3 records" in ConsoleFormatter().format(record)


def test_setup_logging_writes_json_file(restore_root, tmp_path):
    path = tmp_path / "qrtrack.log"
    setup_logging("AUDIT", log_file=str(path))
    assert restore_root.level == AUDIT
    audit("code.generated", code="QR_1")
    for handler in restore_root.handlers:
        handler.flush()
    entry = json.loads(path.read_text().splitlines()[-1])
    assert entry["event"] == "code.generated"
    assert entry["ctx"] == {"code": "QR_1"}
