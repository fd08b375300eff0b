"""Embedder: render a QR tile with a translucent backing plate and composite it onto a photo."""

import numpy as np
import qrcode
import qrcode.constants
from qrcode.exceptions import DataOverflowError
from PIL import Image

from qrimg.config import Anchor, EmbedConfig
from qrimg.errors import CompositingError, QrEncodeError
from qrimg.logging import audit, get_logger, trace

log = get_logger("embedder")

MIN_TILE_SIZE = 200
MAX_TILE_SIZE = 800
PADDING_FRACTION = 0.1
QUIET_ZONE = 4

DARK = (0, 0, 0, 255)
LIGHT_RGB = (255, 255, 255)
BORDER_RGB = (200, 200, 200)


# ---------------------------------------------------------------------------
# QR encoding
# ---------------------------------------------------------------------------

@trace
def encode_modules(payload: str) -> np.ndarray:
    """Encode *payload* and return the module matrix (True = dark).

    The matrix includes the standard quiet zone. Error correction is the
    library default (M) and the smallest fitting version is chosen.
    """
    if not payload:
        raise QrEncodeError("Cannot encode an empty payload")

    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=1,
        border=QUIET_ZONE,
    )
    try:
        qr.add_data(payload)
        qr.make(fit=True)
    except DataOverflowError as e:
        raise QrEncodeError(
            f"Payload of {len(payload.encode('utf-8'))} bytes exceeds QR capacity"
        ) from e
    except ValueError as e:
        raise QrEncodeError(f"Payload cannot be encoded: {e}") from e

    modules = np.array(qr.get_matrix(), dtype=bool)
    audit("qr.encoded", logger=log, version=qr.version, modules=f"{modules.shape[0]}x{modules.shape[1]}",
          data_len=len(payload))
    return modules


# ---------------------------------------------------------------------------
# Tile geometry
# ---------------------------------------------------------------------------

def compute_tile_size(width: int, height: int, size_ratio: float) -> int:
    """Tile side: shorter background side times ratio, clamped to [200, 800]."""
    size = int(min(width, height) * size_ratio)
    return max(MIN_TILE_SIZE, min(size, MAX_TILE_SIZE))


def compute_padding(tile_size: int) -> int:
    return int(tile_size * PADDING_FRACTION)


def _axis_offset(bg: int, tile: int, margin: int, far: bool) -> int:
    if tile + margin > bg:
        return 0
    return bg - tile - margin if far else margin


def compute_position(
    bg_size: tuple[int, int],
    tile_size: int,
    anchor: Anchor,
    margin: int,
) -> tuple[int, int]:
    """Top-left coordinates of the tile for *anchor*; never negative.

    Corner anchors keep *margin* pixels from their corner. When the tile plus
    margin does not fit on an axis, the tile is anchored at 0 on that axis.
    """
    bg_w, bg_h = bg_size
    if anchor is Anchor.CENTER:
        return max(bg_w - tile_size, 0) // 2, max(bg_h - tile_size, 0) // 2

    far_x = anchor in (Anchor.TOP_RIGHT, Anchor.BOTTOM_RIGHT)
    far_y = anchor in (Anchor.BOTTOM_LEFT, Anchor.BOTTOM_RIGHT)
    return (
        _axis_offset(bg_w, tile_size, margin, far_x),
        _axis_offset(bg_h, tile_size, margin, far_y),
    )


# ---------------------------------------------------------------------------
# Tile rendering
# ---------------------------------------------------------------------------

@trace
def render_tile(modules: np.ndarray, tile_size: int, opacity: int) -> Image.Image:
    """Render the QR module matrix as a square RGBA tile.

    Layout, from the outside in:
        - a light-gray border of padding/2 px at the plate opacity
        - the rest of the padding: white plate at the plate opacity
        - the QR pattern, nearest-neighbour scaled: dark modules opaque
          black, light modules white at the plate opacity
    """
    padding = compute_padding(tile_size)
    content = tile_size - 2 * padding
    if content <= 0:
        raise CompositingError(f"Tile of {tile_size}px leaves no room for the QR pattern")

    # Native resolution first, then NEAREST only: smoothing blurs module edges
    native = Image.fromarray(np.where(modules, 0, 255).astype(np.uint8))
    scaled = np.array(native.resize((content, content), Image.NEAREST)) < 128

    tile = np.empty((tile_size, tile_size, 4), dtype=np.uint8)
    tile[...] = (*LIGHT_RGB, opacity)

    region = tile[padding:padding + content, padding:padding + content]
    region[scaled] = DARK

    border = padding // 2
    if border > 0:
        edge = (*BORDER_RGB, opacity)
        tile[:border, :] = edge
        tile[-border:, :] = edge
        tile[:, :border] = edge
        tile[:, -border:] = edge

    return Image.fromarray(tile)


# ---------------------------------------------------------------------------
# Compositing
# ---------------------------------------------------------------------------

def alpha_blend(bg: np.ndarray, fg: np.ndarray) -> np.ndarray:
    """Porter-Duff "over" of *fg* onto *bg* (uint8 RGBA arrays, same shape).

    out_a = fa + ba * (1 - fa)
    out_c = (fc * fa + bc * ba * (1 - fa)) / out_a, or 0 where out_a == 0
    """
    bg_f = np.asarray(bg, dtype=np.float64)
    fg_f = np.asarray(fg, dtype=np.float64)
    fa = fg_f[..., 3:4] / 255.0
    ba = bg_f[..., 3:4] / 255.0

    out_a = fa + ba * (1.0 - fa)
    weighted = fg_f[..., :3] * fa + bg_f[..., :3] * ba * (1.0 - fa)
    safe_a = np.where(out_a > 0, out_a, 1.0)
    out_c = np.where(out_a > 0, weighted / safe_a, 0.0)

    out = np.empty(np.broadcast(bg_f, fg_f).shape, dtype=np.uint8)
    out[..., :3] = np.clip(np.rint(out_c), 0, 255)
    out[..., 3:4] = np.clip(np.rint(out_a * 255.0), 0, 255)
    return out


@trace
def composite(background: Image.Image, tile: Image.Image, position: tuple[int, int]) -> Image.Image:
    """Alpha-composite *tile* onto a copy of *background* at *position*.

    Tile pixels falling outside the background are dropped.
    """
    canvas = np.array(background.convert("RGBA"))
    fg = np.asarray(tile.convert("RGBA"))
    bg_h, bg_w = canvas.shape[:2]
    x, y = position

    x0, y0 = max(x, 0), max(y, 0)
    x1, y1 = min(x + fg.shape[1], bg_w), min(y + fg.shape[0], bg_h)
    if x1 > x0 and y1 > y0:
        canvas[y0:y1, x0:x1] = alpha_blend(
            canvas[y0:y1, x0:x1],
            fg[y0 - y:y1 - y, x0 - x:x1 - x],
        )
    return Image.fromarray(canvas)


@trace
def embed(background: Image.Image, payload: str, config: EmbedConfig | None = None) -> Image.Image:
    """Encode *payload* as a QR tile and composite it onto *background*.

    Args:
        background: Photo to host the code. It is not modified.
        payload: Text to encode.
        config: Size ratio, anchor, plate opacity and margin.

    Returns:
        A new RGBA image.

    Raises:
        CompositingError: the background has a zero dimension.
        QrEncodeError: the payload does not fit in a QR symbol.
    """
    config = config or EmbedConfig()
    width, height = background.size
    if width <= 0 or height <= 0:
        raise CompositingError(f"Background must have nonzero size, got {width}x{height}")

    modules = encode_modules(payload)
    tile_size = compute_tile_size(width, height, config.size_ratio)
    tile = render_tile(modules, tile_size, config.opacity)
    position = compute_position((width, height), tile_size, config.anchor, config.margin)
    log.debug("tile=%dpx position=%s anchor=%s", tile_size, position, config.anchor.value)

    result = composite(background, tile, position)
    audit("qr.embedded", logger=log,
          background=f"{width}x{height}", tile=tile_size, x=position[0], y=position[1],
          anchor=config.anchor.value, opacity=config.opacity)
    return result
