"""QR-Image structured logging: audit events, JSON log files and call tracing."""

import functools
import json
import logging
import sys
import time
import traceback
from datetime import datetime, timezone

import numpy as np
from PIL import Image

NAMESPACE = "qrimg"

# Custom AUDIT level (between WARNING=30 and ERROR=40)
AUDIT = 35
logging.addLevelName(AUDIT, "AUDIT")


def _truncate(value: object, max_len: int = 80) -> str:
    """Truncate a string for safe logging."""
    s = str(value)
    if len(s) > max_len:
        return s[:max_len] + "..."
    return s


def _timestamp(record: logging.LogRecord, fmt: str) -> str:
    return datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(fmt)[:-3]


class JsonFormatter(logging.Formatter):
    """One JSON object per line, used for --log-file."""

    def format(self, record):
        entry = {
            "ts": _timestamp(record, "%Y-%m-%dT%H:%M:%S.%f") + "Z",
            "level": record.levelname,
            "src": record.name,
        }
        event = getattr(record, "event", None)
        if event:
            entry["event"] = event
        elif record.getMessage():
            entry["msg"] = record.getMessage()
        if hasattr(record, "duration_ms"):
            entry["duration_ms"] = round(record.duration_ms, 2)
        if getattr(record, "ctx", None):
            entry["ctx"] = record.ctx
        if record.exc_info and record.exc_info[1]:
            entry["traceback"] = traceback.format_exception(*record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable console output, coloured when attached to a terminal."""

    COLORS = {
        "DEBUG": "\033[36m",    # cyan
        "INFO": "\033[32m",     # green
        "AUDIT": "\033[35m",    # magenta
        "WARNING": "\033[33m",  # yellow
        "ERROR": "\033[31m",    # red
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def format(self, record):
        level = f"{record.levelname:5s}"
        if self.color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        parts = [_timestamp(record, "%H:%M:%S.%f"), level, f"[{record.name}]"]

        event = getattr(record, "event", None)
        if event:
            parts.append(event)
        if hasattr(record, "duration_ms"):
            parts.append(f"({record.duration_ms:.1f}ms)")

        ctx = getattr(record, "ctx", None)
        if ctx:
            parts.append(" ".join(f"{k}={_truncate(v)}" for k, v in ctx.items()))
        elif not event and record.getMessage():
            parts.append(record.getMessage())

        if record.exc_info and record.exc_info[1]:
            parts.append(f"\n{''.join(traceback.format_exception(*record.exc_info))}")

        return " ".join(parts)


def setup_logging(level: str = "INFO", log_file: str | None = None, json_format: bool = False):
    """Configure the root qrimg logger.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR, AUDIT).
        log_file: If set, also write JSON logs to this file path.
        json_format: If True, use JSON format on the console too.
    """
    root = logging.getLogger(NAMESPACE)
    level_value = logging.getLevelName(level.upper())
    root.setLevel(level_value if isinstance(level_value, int) else logging.INFO)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    if json_format:
        console.setFormatter(JsonFormatter())
    else:
        console.setFormatter(ConsoleFormatter(color=sys.stderr.isatty()))
    root.addHandler(console)

    if log_file:
        fh = logging.FileHandler(log_file)
        fh.setFormatter(JsonFormatter())
        root.addHandler(fh)


def get_logger(module_name: str) -> logging.Logger:
    """Get a logger scoped under the qrimg namespace."""
    return logging.getLogger(f"{NAMESPACE}.{module_name}")


def _emit(log: logging.Logger, level: int, event: str, ctx: dict,
          duration_ms: float | None = None, exc_info=None):
    """Hand a structured record straight to the logger's handlers."""
    if not log.isEnabledFor(level):
        return
    record = log.makeRecord(
        name=log.name, level=level, fn="", lno=0,
        msg="", args=(), exc_info=exc_info,
    )
    record.event = event
    record.ctx = ctx
    if duration_ms is not None:
        record.duration_ms = duration_ms
    log.handle(record)


def audit(event: str, logger: logging.Logger | None = None, **context):
    """Emit an AUDIT-level structured log entry.

    Args:
        event: Machine-readable event tag (e.g., "qr.embedded").
        logger: Logger to use. Defaults to the qrimg root.
        **context: Key-value pairs for the event context.
    """
    _emit(logger or logging.getLogger(NAMESPACE), AUDIT, event, context)


def _summarize_arg(value: object) -> str:
    """Short description of a traced value; pixel data is never dumped."""
    if isinstance(value, Image.Image):
        return f"<Image {value.mode} {value.width}x{value.height}>"
    if isinstance(value, np.ndarray):
        return f"<ndarray {value.dtype} {'x'.join(map(str, value.shape))}>"
    text = repr(value)
    return _truncate(text) if len(text) <= 100 else f"<{type(value).__name__}>"


def _summarize_result(result: object) -> str:
    if isinstance(result, (list, tuple)):
        return f"{type(result).__name__}[{len(result)}]"
    if isinstance(result, dict):
        return f"dict[{len(result)} keys]"
    return _summarize_arg(result)


def trace(func=None, *, logger_name: str | None = None):
    """Decorator that auto-logs function entry/exit with timing.

    - DEBUG on entry with arguments
    - INFO on exit with duration
    - ERROR on exception with traceback and duration
    """
    def decorator(fn):
        _logger_name = logger_name or fn.__module__.replace(f"{NAMESPACE}.", "")
        log = get_logger(_logger_name)

        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            fn_name = fn.__name__

            # Argument formatting is skipped unless DEBUG is enabled
            if log.isEnabledFor(logging.DEBUG):
                _emit(log, logging.DEBUG, f"{fn_name}.enter", {
                    "args": [_summarize_arg(a) for a in args],
                    "kwargs": {k: _summarize_arg(v) for k, v in kwargs.items()},
                })

            start = time.perf_counter()
            try:
                result = fn(*args, **kwargs)
            except Exception:
                elapsed = (time.perf_counter() - start) * 1000
                _emit(log, logging.ERROR, f"{fn_name}.error", {"function": fn_name},
                      duration_ms=elapsed, exc_info=sys.exc_info())
                raise

            elapsed = (time.perf_counter() - start) * 1000
            _emit(log, logging.INFO, f"{fn_name}.done", {"result": _summarize_result(result)},
                  duration_ms=elapsed)
            return result

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator
