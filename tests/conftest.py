import numpy as np
import pytest
from PIL import Image

URL = "https://example.com"


def make_photo(width: int, height: int, seed: int = 7) -> Image.Image:
    """A busy, photo-like RGB background: colour gradients plus noise."""
    rng = np.random.default_rng(seed)
    ys, xs = np.mgrid[0:height, 0:width]
    base = np.stack([
        xs / max(width - 1, 1) * 180,
        ys / max(height - 1, 1) * 160,
        (xs + ys) / max(width + height - 2, 1) * 200,
    ], axis=-1)
    noise = rng.integers(0, 60, size=(height, width, 3))
    return Image.fromarray(np.clip(base + noise, 0, 255).astype(np.uint8))


@pytest.fixture
def photo() -> Image.Image:
    return make_photo(800, 600)


@pytest.fixture
def blank() -> Image.Image:
    return Image.new("RGB", (400, 400), (128, 128, 128))
