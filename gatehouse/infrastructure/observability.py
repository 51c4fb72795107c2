"""Structured Logging — process-wide, non-blocking, never-raising log sink.

Invariants:
    - All logs include timestamp, level, logger name, and message
    - Extra fields (request_id, path, error_kind, phase, ...) surfaced when present
    - Producers only enqueue; sink I/O happens on the QueueListener thread
    - A broken sink degrades to stderr (or silence), never to an exception

Design Decisions:
    - JSONFormatter over third-party libs: zero dependencies, full control
    - QueueHandler/QueueListener: the response path never waits on log I/O
    - setup_logging/shutdown_logging give the sink an explicit lifecycle
      owned by the Bootstrapper (init at boot, flush on shutdown)
"""

import json
import logging
import logging.handlers
import queue
import sys
from datetime import datetime, timezone
from typing import Any

EXTRA_FIELDS = (
    "request_id", "client", "method", "path", "status_code", "duration_ms",
    "error_kind", "phase", "previous_phase", "state", "identity", "option",
    "context", "stack",
)

_listener: logging.handlers.QueueListener | None = None
_queue_handler: logging.handlers.QueueHandler | None = None


class JSONFormatter(logging.Formatter):
    """Format logs as JSON for structured logging in production."""

    def format(self, record: logging.LogRecord) -> str:
        log: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in EXTRA_FIELDS:
            val = record.__dict__.get(key)
            if val is not None:
                log[key] = val
        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)
        return json.dumps(log, ensure_ascii=False, default=str)


class SilentFailureMixin:
    """Sink errors are dropped instead of printed or raised."""

    def handleError(self, record: logging.LogRecord) -> None:  # noqa: N802
        return None


class SafeStreamHandler(SilentFailureMixin, logging.StreamHandler):
    pass


class SafeFileHandler(SilentFailureMixin, logging.handlers.WatchedFileHandler):
    pass


def _build_sink(destination: str) -> logging.Handler:
    """Sink for destination; unusable file paths fall back to stderr."""
    if destination == "stdout":
        return SafeStreamHandler(sys.stdout)
    if destination in ("", "stderr"):
        return SafeStreamHandler(sys.stderr)
    try:
        return SafeFileHandler(destination, encoding="utf-8")
    except OSError as e:
        fallback = SafeStreamHandler(sys.stderr)
        fallback.handle(logging.makeLogRecord({
            "name": __name__, "levelno": logging.WARNING, "levelname": "WARNING",
            "msg": f"Log destination {destination!r} unavailable ({e}); using stderr",
        }))
        return fallback


def setup_logging(
    level: str = "INFO", fmt: str = "json", destination: str = "stderr",
) -> None:
    """Configure the process-wide sink. Calling again replaces the previous one."""
    global _listener, _queue_handler
    shutdown_logging()

    sink = _build_sink(destination)
    if fmt == "json":
        sink.setFormatter(JSONFormatter())
    else:
        sink.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s — %(message)s",
        ))

    log_queue: queue.SimpleQueue = queue.SimpleQueue()
    _queue_handler = logging.handlers.QueueHandler(log_queue)
    _listener = logging.handlers.QueueListener(
        log_queue, sink, respect_handler_level=False,
    )
    _listener.start()

    logging.root.addHandler(_queue_handler)
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))


def shutdown_logging() -> None:
    """Drain queued records to the sink and detach it. Safe to call twice."""
    global _listener, _queue_handler
    if _queue_handler is not None:
        logging.root.removeHandler(_queue_handler)
        _queue_handler = None
    if _listener is not None:
        listener, _listener = _listener, None
        try:
            listener.stop()
        finally:
            for handler in listener.handlers:
                handler.close()


def log_event(
    logger: logging.Logger, level: int, message: str, /,
    exc_info: Any = None, **fields: Any,
) -> None:
    """Log with structured fields; never raises into the caller.

    The first three parameters are positional-only so that fields named
    logger, level or message land in **fields instead of colliding.
    """
    try:
        logger.log(level, message, exc_info=exc_info, extra=fields)
    except Exception:  # noqa: BLE001 - logging must not affect control flow
        try:
            sys.stderr.write(f"log failure: {message}\n")
        except Exception:  # noqa: BLE001
            pass
