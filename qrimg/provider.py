"""Background provider: keyword photos from Unsplash, with a generated placeholder as last resort."""

import io

import numpy as np
import requests
from PIL import Image, UnidentifiedImageError

from qrimg.config import Config
from qrimg.errors import ProviderError
from qrimg.logging import audit, get_logger, trace

log = get_logger("provider")

UNSPLASH_API_URL = "https://api.unsplash.com/photos/random"
FALLBACK_IMAGE_URL = "https://source.unsplash.com/random"
USER_AGENT = "QR-Image-Generator/1.0"
TIMEOUT_S = 30


class ImageProvider:
    """Fetches a background image of the configured size for a keyword.

    Order: Unsplash API (when a key is configured), the public Unsplash
    source endpoint, then a deterministic gradient placeholder. fetch()
    therefore always returns an image.
    """

    def __init__(self, config: Config, session: requests.Session | None = None):
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT})

    @trace
    def fetch(self, keyword: str) -> Image.Image:
        api_key = self.config.unsplash_api_key
        if api_key:
            try:
                img = self.fetch_from_unsplash(keyword, api_key)
                audit("background.fetched", logger=log, source="unsplash-api", keyword=keyword)
                return img
            except ProviderError as e:
                log.warning("Unsplash API failed: %s, trying fallback", e)
        else:
            log.warning("No Unsplash API key provided, using fallback")

        try:
            img = self.fetch_fallback(keyword)
            audit("background.fetched", logger=log, source="unsplash-source", keyword=keyword)
            return img
        except ProviderError as e:
            log.warning("Fallback failed (%s), generating placeholder", e)

        audit("background.fetched", logger=log, source="placeholder", keyword=keyword)
        return self.placeholder(keyword)

    def fetch_from_unsplash(self, keyword: str, api_key: str) -> Image.Image:
        try:
            response = self.session.get(
                UNSPLASH_API_URL,
                params={"query": keyword, "orientation": "landscape", "content_filter": "high"},
                headers={"Authorization": f"Client-ID {api_key}"},
                timeout=TIMEOUT_S,
            )
            response.raise_for_status()
            raw_url = response.json()["urls"]["raw"]
        except requests.RequestException as e:
            raise ProviderError(f"Unsplash API request failed: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(f"Unexpected Unsplash API response: {e}") from e

        url = f"{raw_url}&w={self.config.image_width}&h={self.config.image_height}&fit=crop"
        return self.download(url)

    def fetch_fallback(self, keyword: str) -> Image.Image:
        return self.download(f"{FALLBACK_IMAGE_URL}/?{keyword.replace(' ', '+')}")

    def download(self, url: str) -> Image.Image:
        """Download and decode an image, resized exactly to the configured size."""
        log.debug("downloading %s", url)
        try:
            response = self.session.get(url, timeout=TIMEOUT_S)
            response.raise_for_status()
        except requests.RequestException as e:
            raise ProviderError(f"Image download failed: {e}") from e

        try:
            img = Image.open(io.BytesIO(response.content))
            img.load()
        except (UnidentifiedImageError, OSError) as e:
            raise ProviderError(f"Failed to decode image: {e}") from e

        size = (self.config.image_width, self.config.image_height)
        return img.convert("RGB").resize(size, Image.LANCZOS)

    def placeholder(self, keyword: str) -> Image.Image:
        """Solid colour derived from the keyword, darkened towards the left edge."""
        width, height = self.config.image_width, self.config.image_height
        h = sum(keyword.encode("utf-8"))
        color = np.array([(h * 137) % 256, (h * 193) % 256, (h * 241) % 256], dtype=np.float64)

        factor = np.arange(width, dtype=np.float64) / width * 0.3 + 0.7
        row = (factor[:, None] * color[None, :]).astype(np.uint8)
        return Image.fromarray(np.ascontiguousarray(np.broadcast_to(row, (height, width, 3))))
