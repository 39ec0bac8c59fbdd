"""Tests for the log formatters."""

import json
import logging

from restocked.logging_config import ContextFilter, CustomJsonFormatter


def _record(msg="Check run finished", **extra):
    record = logging.LogRecord(
        name="restocked.worker.check_scheduler",
        level=logging.INFO,
        pathname="check_scheduler.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=None,
        func="run_cycle",
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_groups_context_ids():
    formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")

    line = json.loads(formatter.format(_record(run_id="abc123", product_id=7)))

    assert line["message"] == "Check run finished"
    assert line["level"] == "INFO"
    assert line["source"] == "check_scheduler.py:42"
    assert line["context"] == {"run_id": "abc123", "product_id": 7}
    assert "run_id" not in line
    assert "product_id" not in line


def test_json_formatter_omits_empty_context():
    formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")

    line = json.loads(formatter.format(_record()))

    assert "context" not in line


def test_console_filter_renders_context():
    record = _record(run_id="f" * 32, notification_id=12)

    assert ContextFilter().filter(record) is True
    assert record.context == f" [run_id={'f' * 16} notification_id=12]"

    plain = _record()
    ContextFilter().filter(plain)
    assert plain.context == ""


def test_json_formatter_ignores_console_rendering():
    record = _record(run_id="abc123")
    ContextFilter().filter(record)

    line = json.loads(CustomJsonFormatter("%(message)s").format(record))

    assert line["context"] == {"run_id": "abc123"}
