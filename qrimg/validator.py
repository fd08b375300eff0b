"""Validator: re-decode a composited image under escalating preprocessing until the payload is confirmed.

Strategies, in priority order:
    1  original            grayscale, untouched
    2  contrast_stretch    min..max luminance remapped to 0..255
    3  adaptive_threshold  15x15 local mean binarisation
    4+ brightness_+N       uniform shift of (attempt - 3) * 20 levels

The first decode of an attempt settles validation: a matching payload
succeeds, a different payload is a mismatch and stops the loop. Preprocessing
changes detectability, never content, so a mismatch is not retried.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import cv2
import numpy as np
from PIL import Image
from pyzbar.pyzbar import ZBarSymbol
from pyzbar.pyzbar import decode as pyzbar_decode
from scipy import ndimage

from qrimg.errors import ConfigError, ValidationExhausted, ValidationMismatch
from qrimg.logging import audit, get_logger, trace

log = get_logger("validator")

THRESHOLD_WINDOW = 15
THRESHOLD_OFFSET = 10
BRIGHTNESS_STEP = 20


class ValidationOutcome(Enum):
    MATCHED = "matched"
    MISMATCHED = "mismatched"
    NO_SYMBOL = "no_symbol"
    DECODE_FAILED = "decode_failed"


@dataclass
class ValidationAttempt:
    """One pass of the retry loop."""
    index: int
    strategy: str
    outcome: ValidationOutcome
    decoded: str | None = None
    grids: int = 0
    duration_ms: float = 0.0


@dataclass(frozen=True)
class Strategy:
    name: str
    apply: Callable[[np.ndarray], np.ndarray]


@dataclass
class Grid:
    """A located QR symbol candidate.

    zbar locates and decodes in one step, so its grids arrive with the
    payload already attached; OpenCV grids carry only their corners.
    """
    points: np.ndarray
    source: str
    payload: str | None = None


# ---------------------------------------------------------------------------
# Preprocessing strategies (pure: a new array is always returned)
# ---------------------------------------------------------------------------

def to_grayscale(image: Image.Image) -> np.ndarray:
    return np.array(image.convert("L"), dtype=np.uint8)


def original(gray: np.ndarray) -> np.ndarray:
    return gray.copy()


def contrast_stretch(gray: np.ndarray) -> np.ndarray:
    """Linear remap of the observed luminance range onto 0..255."""
    lo, hi = int(gray.min()), int(gray.max())
    if hi <= lo:
        return gray.copy()
    stretched = (gray.astype(np.float64) - lo) / (hi - lo) * 255.0
    return stretched.astype(np.uint8)


def adaptive_threshold(
    gray: np.ndarray,
    window: int = THRESHOLD_WINDOW,
    offset: int = THRESHOLD_OFFSET,
) -> np.ndarray:
    """Binarise each pixel against the mean of its centered window.

    The window is truncated at the image edges, so border pixels average
    only the neighbours that exist.
    """
    if window % 2 == 0:
        raise ValueError(f"window must be odd, got {window}")
    area = float(window * window)
    values = gray.astype(np.float64)
    # Zero padding + in-bounds count gives the truncated-window sum exactly
    sums = np.rint(ndimage.uniform_filter(values, size=window, mode="constant", cval=0.0) * area)
    counts = np.rint(ndimage.uniform_filter(np.ones_like(values), size=window, mode="constant", cval=0.0) * area)
    mean = sums.astype(np.int64) // np.maximum(counts.astype(np.int64), 1)
    return np.where(gray.astype(np.int64) > mean - offset, 255, 0).astype(np.uint8)


def brightness_shift(delta: int) -> Callable[[np.ndarray], np.ndarray]:
    def shift(gray: np.ndarray) -> np.ndarray:
        return np.clip(gray.astype(np.int16) + delta, 0, 255).astype(np.uint8)
    shift.__name__ = f"brightness_shift_{delta:+d}"
    return shift


BASE_STRATEGIES: tuple[Strategy, ...] = (
    Strategy("original", original),
    Strategy("contrast_stretch", contrast_stretch),
    Strategy("adaptive_threshold", adaptive_threshold),
)


def build_strategies(max_attempts: int) -> list[Strategy]:
    """Ordered strategies for attempts 1..max_attempts.

    The fixed strategies come first; every attempt past them adds another
    BRIGHTNESS_STEP of uniform shift.
    """
    strategies = list(BASE_STRATEGIES[:max(max_attempts, 0)])
    for step in range(1, max_attempts - len(BASE_STRATEGIES) + 1):
        delta = step * BRIGHTNESS_STEP
        strategies.append(Strategy(f"brightness_{delta:+d}", brightness_shift(delta)))
    return strategies


# ---------------------------------------------------------------------------
# Detection and decoding
# ---------------------------------------------------------------------------

def detect_grids(gray: np.ndarray) -> list[Grid]:
    """Locate QR symbols, zbar candidates first, then OpenCV quadrilaterals."""
    grids: list[Grid] = []

    for symbol in pyzbar_decode(Image.fromarray(gray), symbols=[ZBarSymbol.QRCODE]):
        points = np.array([(p.x, p.y) for p in symbol.polygon], dtype=np.float32)
        grids.append(Grid(
            points=points,
            source="pyzbar/zbar",
            payload=symbol.data.decode("utf-8", errors="replace"),
        ))

    try:
        found, points = cv2.QRCodeDetector().detectMulti(gray)
    except cv2.error as e:
        log.debug("opencv detection failed: %s", e)
        found, points = False, None
    if found and points is not None:
        for quad in points:
            grids.append(Grid(points=np.asarray(quad, dtype=np.float32).reshape(4, 2), source="opencv"))

    return grids


def decode_grid(gray: np.ndarray, grid: Grid) -> str | None:
    """Decode one candidate; None when the grid cannot be read."""
    if grid.payload is not None:
        return grid.payload
    # QRCodeDetector.decode wants a (1, 4, 2) float32 corner array
    corners = np.asarray(grid.points, dtype=np.float32).reshape(1, 4, 2)
    try:
        data, _ = cv2.QRCodeDetector().decode(gray, corners)
    except cv2.error as e:
        log.warning("opencv decode of %s grid failed: %s", grid.source, e)
        return None
    return data or None


def _run_attempt(image: Image.Image, index: int, strategy: Strategy, expected: str) -> ValidationAttempt:
    start = time.perf_counter()
    prepared = strategy.apply(to_grayscale(image))
    grids = detect_grids(prepared)

    decoded = None
    for n, grid in enumerate(grids, start=1):
        decoded = decode_grid(prepared, grid)
        if decoded is not None:
            log.debug("grid %d/%d decoded by %s", n, len(grids), grid.source)
            break
        log.debug("grid %d/%d (%s) failed to decode", n, len(grids), grid.source)

    if not grids:
        outcome = ValidationOutcome.NO_SYMBOL
    elif decoded is None:
        outcome = ValidationOutcome.DECODE_FAILED
    elif decoded == expected:
        outcome = ValidationOutcome.MATCHED
    else:
        outcome = ValidationOutcome.MISMATCHED
    return ValidationAttempt(
        index=index,
        strategy=strategy.name,
        outcome=outcome,
        decoded=decoded,
        grids=len(grids),
        duration_ms=(time.perf_counter() - start) * 1000,
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

@trace
def validate(image: Image.Image, expected_payload: str, max_attempts: int = 3) -> bool:
    """Confirm that *image* carries a QR code decoding to *expected_payload*.

    Returns:
        True as soon as an attempt decodes the expected payload.

    Raises:
        ValidationMismatch: a symbol decoded to a different payload.
        ValidationExhausted: no attempt decoded anything.
        ConfigError: max_attempts is below 1.
    """
    if max_attempts < 1:
        raise ConfigError(f"max_attempts must be at least 1, got {max_attempts}")

    history: list[ValidationAttempt] = []
    for index, strategy in enumerate(build_strategies(max_attempts), start=1):
        attempt = _run_attempt(image, index, strategy, expected_payload)
        history.append(attempt)

        if attempt.outcome is ValidationOutcome.MATCHED:
            audit("qr.validated", logger=log, attempt=index, strategy=strategy.name,
                  time_ms=round(attempt.duration_ms, 1))
            return True

        if attempt.outcome is not ValidationOutcome.MISMATCHED:
            log.warning("attempt %d/%d (%s) failed: %s, %d grid(s)",
                        index, max_attempts, strategy.name, attempt.outcome.value, attempt.grids)
            continue

        audit("qr.mismatch", logger=log, attempt=index, strategy=strategy.name,
              expected=expected_payload, decoded=attempt.decoded)
        raise ValidationMismatch(expected_payload, attempt.decoded, index)

    audit("qr.exhausted", logger=log, attempts=max_attempts,
          outcomes=",".join(a.outcome.value for a in history))
    raise ValidationExhausted(max_attempts, history)


@trace
def quick_check(image: Image.Image) -> bool:
    """Whether any QR symbol is detectable in *image*, without comparing payloads."""
    return bool(detect_grids(to_grayscale(image)))
