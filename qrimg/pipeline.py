"""Orchestrator: background -> embed -> validate -> save."""

from pathlib import Path

from PIL import Image

from qrimg.config import Config
from qrimg.embedder import embed
from qrimg.logging import audit, get_logger, trace
from qrimg.provider import ImageProvider
from qrimg.validator import quick_check, validate

log = get_logger("pipeline")

# Containers that cannot store an alpha channel
_OPAQUE_FORMATS = {".jpg", ".jpeg", ".bmp"}


@trace
def save_image(image: Image.Image, path: str | Path) -> Path:
    """Write *image* to *path*, creating parent directories as needed."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix.lower() in _OPAQUE_FORMATS and image.mode != "RGB":
        image = image.convert("RGB")
    image.save(path)
    audit("image.saved", logger=log, path=str(path), size=f"{image.size[0]}x{image.size[1]}")
    return path


class QrImageGenerator:
    """Produces background images carrying a verified QR code.

    Validation failures propagate unchanged: the generator never re-embeds
    with different parameters to recover.
    """

    def __init__(self, config: Config | None = None, provider: ImageProvider | None = None):
        self.config = config or Config.from_env()
        self.provider = provider or ImageProvider(self.config)

    @trace
    def embed_and_validate(self, background: Image.Image, payload: str) -> Image.Image:
        image = embed(background, payload, self.config.embed_config())
        validate(image, payload, self.config.max_validation_attempts)
        return image

    @trace
    def generate(self, keyword: str, payload: str) -> Image.Image:
        """Fetch a background for *keyword* and return it with *payload* embedded and verified."""
        background = self.provider.fetch(keyword)
        log.info("background %dx%d for keyword %r", background.size[0], background.size[1], keyword)
        return self.embed_and_validate(background, payload)

    def generate_and_save(self, keyword: str, payload: str, output_path: str | Path) -> Path:
        image = self.generate(keyword, payload)
        return save_image(image, output_path)

    def quick_validate(self, image: Image.Image) -> bool:
        return quick_check(image)
