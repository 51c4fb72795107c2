"""Structured Logging — JSON shape, degrade-safety, and lifecycle.

Tests cover:
    - JSONFormatter emits core and known extra fields
    - An unusable file destination falls back instead of raising
    - log_event never raises, even with reserved extra keys
    - fields named logger, level or message never collide with the positionals
    - setup/shutdown drain queued records to the sink
"""

import json
import logging

import pytest

from gatehouse.infrastructure import observability
from gatehouse.infrastructure.observability import (
    JSONFormatter,
    SafeStreamHandler,
    log_event,
    setup_logging,
    shutdown_logging,
)


@pytest.fixture(autouse=True)
def _restore_logging():
    level = logging.root.level
    yield
    shutdown_logging()
    logging.root.setLevel(level)


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("gatehouse.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
    record.__dict__.update(extra)
    return record


def test_json_formatter_core_fields():
    out = json.loads(JSONFormatter().format(_record()))
    assert out["level"] == "INFO"
    assert out["logger"] == "gatehouse.test"
    assert out["message"] == "hello world"
    assert "timestamp" in out


def test_json_formatter_includes_known_extras_only():
    out = json.loads(JSONFormatter().format(_record(request_id="r1", error_kind="NotFound", secret="x")))
    assert out["request_id"] == "r1"
    assert out["error_kind"] == "NotFound"
    assert "secret" not in out


def test_setup_writes_json_to_file_and_shutdown_flushes(tmp_path):
    target = tmp_path / "app.log"
    setup_logging("INFO", "json", str(target))
    log_event(logging.getLogger("gatehouse.test"), logging.INFO, "boot", phase="serving")
    shutdown_logging()

    lines = target.read_text().strip().splitlines()
    payload = json.loads(lines[-1])
    assert payload["message"] == "boot"
    assert payload["phase"] == "serving"


def test_unwritable_destination_falls_back(tmp_path):
    missing_dir = tmp_path / "nope" / "deeper" / "app.log"
    setup_logging("INFO", "json", str(missing_dir))
    log_event(logging.getLogger("gatehouse.test"), logging.INFO, "still alive")
    assert not missing_dir.exists()


def test_log_event_never_raises_on_reserved_keys():
    # "message" collides with LogRecord attributes; stdlib raises KeyError
    log_event(logging.getLogger("gatehouse.test"), logging.INFO, "x", message="boom")


@pytest.mark.parametrize("field", ["logger", "level", "message", "msg", "args"])
def test_log_event_accepts_any_field_name(field):
    log_event(logging.getLogger("gatehouse.test"), logging.INFO, "x", **{field: "boom"})


def test_log_event_field_named_level_keeps_positional_level(caplog):
    caplog.set_level(logging.INFO, logger="gatehouse.test")

    log_event(logging.getLogger("gatehouse.test"), logging.WARNING, "hi", level="debug")

    assert [r.levelno for r in caplog.records] == [logging.WARNING]


def test_broken_sink_does_not_raise():
    class _Broken:
        def write(self, _):
            raise OSError("disk full")

        def flush(self):
            raise OSError("disk full")

    handler = SafeStreamHandler(_Broken())
    handler.handle(_record())


def test_shutdown_is_idempotent():
    setup_logging()
    shutdown_logging()
    shutdown_logging()
    assert observability._listener is None
