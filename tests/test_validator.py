import numpy as np
import pytest
import qrcode

from conftest import URL
from qrimg import validator
from qrimg.embedder import embed
from qrimg.errors import ConfigError, ValidationError, ValidationExhausted, ValidationMismatch
from qrimg.validator import (
    BASE_STRATEGIES,
    Grid,
    ValidationOutcome,
    adaptive_threshold,
    brightness_shift,
    build_strategies,
    contrast_stretch,
    decode_grid,
    detect_grids,
    original,
    quick_check,
    to_grayscale,
    validate,
)


def _reference_threshold(gray, window=15, offset=10):
    h, w = gray.shape
    half = window // 2
    out = np.zeros_like(gray)
    for y in range(h):
        for x in range(w):
            patch = gray[max(0, y - half):y + half + 1, max(0, x - half):x + half + 1]
            mean = int(patch.astype(np.int64).sum()) // patch.size
            out[y, x] = 255 if int(gray[y, x]) > mean - offset else 0
    return out


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def test_strategy_order():
    names = [s.name for s in build_strategies(6)]
    assert names == [
        "original",
        "contrast_stretch",
        "adaptive_threshold",
        "brightness_+20",
        "brightness_+40",
        "brightness_+60",
    ]


def test_short_budgets_use_a_prefix_of_the_fixed_strategies():
    assert build_strategies(2) == list(BASE_STRATEGIES[:2])
    assert build_strategies(3) == list(BASE_STRATEGIES)
    assert build_strategies(0) == []


def test_original_returns_a_copy():
    gray = np.full((4, 4), 77, dtype=np.uint8)
    out = original(gray)
    assert out is not gray
    assert np.array_equal(out, gray)


def test_contrast_stretch_spans_full_range():
    gray = np.linspace(50, 150, 100).astype(np.uint8).reshape(10, 10)
    out = contrast_stretch(gray)
    assert out.min() == 0
    assert out.max() == 255
    assert gray.min() == 50  # input untouched


def test_contrast_stretch_flat_image_unchanged():
    gray = np.full((8, 8), 90, dtype=np.uint8)
    assert np.array_equal(contrast_stretch(gray), gray)


def test_adaptive_threshold_matches_truncated_window_mean():
    rng = np.random.default_rng(5)
    gray = rng.integers(0, 256, size=(24, 31), dtype=np.uint8)
    assert np.array_equal(adaptive_threshold(gray), _reference_threshold(gray))


def test_adaptive_threshold_binarises():
    gray = np.full((40, 40), 200, dtype=np.uint8)
    gray[18:22, 18:22] = 20
    out = adaptive_threshold(gray)
    assert set(np.unique(out)) <= {0, 255}
    assert out[20, 20] == 0
    assert out[0, 0] == 255


def test_adaptive_threshold_requires_odd_window():
    with pytest.raises(ValueError):
        adaptive_threshold(np.zeros((5, 5), dtype=np.uint8), window=4)


def test_brightness_shift_clamps():
    gray = np.array([[0, 100, 250]], dtype=np.uint8)
    assert brightness_shift(20)(gray).tolist() == [[20, 120, 255]]
    assert brightness_shift(-20)(gray).tolist() == [[0, 80, 230]]


# ---------------------------------------------------------------------------
# validate() on real images
# ---------------------------------------------------------------------------

def test_validate_plain_qr():
    qr = qrcode.QRCode()
    qr.add_data(URL)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white").convert("RGB")
    assert validate(img, URL, max_attempts=3) is True


def test_validate_embedded_qr(photo):
    assert validate(embed(photo, URL), URL) is True


def test_mismatch_stops_on_first_decode(photo):
    image = embed(photo, "A")
    with pytest.raises(ValidationMismatch) as exc:
        validate(image, "B", max_attempts=5)
    assert exc.value.attempt == 1
    assert exc.value.decoded == "A"
    assert exc.value.expected == "B"
    assert "does not match" in str(exc.value)
    assert isinstance(exc.value, ValidationError)


def test_exhaustion_reports_attempt_count(blank):
    with pytest.raises(ValidationExhausted) as exc:
        validate(blank, URL, max_attempts=5)
    assert "5 attempts" in str(exc.value)
    assert exc.value.max_attempts == 5
    assert [a.index for a in exc.value.attempts] == [1, 2, 3, 4, 5]
    assert all(a.outcome is ValidationOutcome.NO_SYMBOL for a in exc.value.attempts)
    assert exc.value.attempts[3].strategy == "brightness_+20"


def test_validate_requires_an_attempt(photo):
    with pytest.raises(ConfigError):
        validate(photo, URL, max_attempts=0)


def test_quick_check(photo, blank):
    assert quick_check(embed(photo, URL)) is True
    assert quick_check(blank) is False


# ---------------------------------------------------------------------------
# OpenCV path alone (zbar finds nothing)
# ---------------------------------------------------------------------------

@pytest.fixture
def zbar_blind(monkeypatch):
    monkeypatch.setattr(validator, "pyzbar_decode", lambda *args, **kwargs: [])


def test_opencv_grid_decodes(zbar_blind, photo):
    gray = to_grayscale(embed(photo, URL))
    grids = detect_grids(gray)
    assert grids
    assert all(g.source == "opencv" and g.payload is None for g in grids)
    assert decode_grid(gray, grids[0]) == URL


def test_validate_with_opencv_only(zbar_blind, photo):
    assert validate(embed(photo, URL), URL) is True


def test_opencv_grid_over_blank_region(blank):
    corners = np.array([[50, 50], [250, 50], [250, 250], [50, 250]], dtype=np.float32)
    gray = to_grayscale(blank)
    assert decode_grid(gray, Grid(points=corners, source="opencv")) is None


# ---------------------------------------------------------------------------
# Retry loop with scripted detection
# ---------------------------------------------------------------------------

class ScriptedDetector:
    """Replaces detect_grids: one scripted result per attempt."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    def __call__(self, gray):
        result = self.results[self.calls]
        self.calls += 1
        return result


def _grid(payload=None):
    return Grid(points=np.zeros((4, 2), dtype=np.float32), source="test", payload=payload)


def test_later_attempt_can_succeed(monkeypatch, blank):
    detector = ScriptedDetector([], [], [_grid(URL)])
    monkeypatch.setattr(validator, "detect_grids", detector)
    assert validate(blank, URL, max_attempts=5) is True
    assert detector.calls == 3


def test_success_short_circuits_remaining_attempts(monkeypatch, blank):
    detector = ScriptedDetector([_grid(URL)], [_grid("other")])
    monkeypatch.setattr(validator, "detect_grids", detector)
    assert validate(blank, URL, max_attempts=2) is True
    assert detector.calls == 1


def test_first_decodable_grid_wins(monkeypatch, blank):
    detector = ScriptedDetector([_grid(None), _grid(URL), _grid("other")])
    monkeypatch.setattr(validator, "detect_grids", detector)
    monkeypatch.setattr(validator, "decode_grid", lambda gray, grid: grid.payload)
    assert validate(blank, URL, max_attempts=1) is True


def test_undecodable_grids_are_retried(monkeypatch, blank):
    detector = ScriptedDetector([_grid(None)], [_grid(None), _grid(None)])
    monkeypatch.setattr(validator, "detect_grids", detector)
    monkeypatch.setattr(validator, "decode_grid", lambda gray, grid: None)
    with pytest.raises(ValidationExhausted) as exc:
        validate(blank, URL, max_attempts=2)
    outcomes = [a.outcome for a in exc.value.attempts]
    assert outcomes == [ValidationOutcome.DECODE_FAILED, ValidationOutcome.DECODE_FAILED]
    assert exc.value.attempts[1].grids == 2


def test_mismatch_after_failed_attempts(monkeypatch, blank):
    detector = ScriptedDetector([], [_grid("wrong")], [_grid(URL)])
    monkeypatch.setattr(validator, "detect_grids", detector)
    with pytest.raises(ValidationMismatch) as exc:
        validate(blank, URL, max_attempts=3)
    assert exc.value.attempt == 2
    assert detector.calls == 2
