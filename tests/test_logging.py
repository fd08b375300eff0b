import json
import logging

import numpy as np
import pytest
from PIL import Image

from qrimg.logging import AUDIT, ConsoleFormatter, audit, get_logger, setup_logging, trace


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    setup_logging()


def _read(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


def test_audit_writes_json(tmp_path):
    path = tmp_path / "log.jsonl"
    setup_logging(level="INFO", log_file=str(path))
    audit("qr.embedded", logger=get_logger("embedder"), tile=270, anchor="bottom-right")

    (entry,) = _read(path)
    assert entry["level"] == "AUDIT"
    assert entry["src"] == "qrimg.embedder"
    assert entry["event"] == "qr.embedded"
    assert entry["ctx"] == {"tile": 270, "anchor": "bottom-right"}


def test_audit_respects_level(tmp_path):
    path = tmp_path / "log.jsonl"
    setup_logging(level="ERROR", log_file=str(path))
    audit("quiet", logger=get_logger("t"))
    assert path.read_text() == ""


def test_trace_logs_exit_and_errors(tmp_path):
    path = tmp_path / "log.jsonl"
    setup_logging(level="DEBUG", log_file=str(path))

    @trace(logger_name="sample")
    def double(x):
        return x * 2

    @trace(logger_name="sample")
    def boom():
        raise RuntimeError("bad")

    assert double(21) == 42
    with pytest.raises(RuntimeError):
        boom()

    events = {e["event"]: e for e in _read(path)}
    assert events["double.enter"]["ctx"]["args"] == ["21"]
    assert events["double.done"]["ctx"]["result"] == "42"
    assert "duration_ms" in events["double.done"]
    assert events["boom.error"]["level"] == "ERROR"
    assert "RuntimeError" in "".join(events["boom.error"]["traceback"])


def test_console_formatter_without_colour():
    record = logging.LogRecord("qrimg.x", AUDIT, "", 0, "", (), None)
    record.event = "qr.validated"
    record.ctx = {"attempt": 1}
    line = ConsoleFormatter(color=False).format(record)
    assert "\033[" not in line
    assert "AUDIT [qrimg.x] qr.validated attempt=1" in line


def test_trace_summarizes_images_and_arrays(tmp_path):
    path = tmp_path / "log.jsonl"
    setup_logging(level="DEBUG", log_file=str(path))

    @trace(logger_name="sample")
    def gray(image):
        return np.zeros((image.height, image.width), dtype=np.uint8)

    gray(Image.new("RGB", (64, 48)))

    events = {e["event"]: e for e in _read(path)}
    assert events["gray.enter"]["ctx"]["args"] == ["<Image RGB 64x48>"]
    assert events["gray.done"]["ctx"]["result"] == "<ndarray uint8 48x64>"
