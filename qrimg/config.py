"""Configuration: QR anchors, per-embed parameters and the generator settings."""

import os
from dataclasses import dataclass, field, replace
from enum import Enum

from qrimg.errors import ConfigError

MIN_SIZE_RATIO = 0.1
MAX_SIZE_RATIO = 0.5


class Anchor(Enum):
    TOP_LEFT = "top-left"
    TOP_RIGHT = "top-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_RIGHT = "bottom-right"
    CENTER = "center"

    @classmethod
    def parse(cls, value: "Anchor | str") -> "Anchor":
        """Accept an Anchor or one of its names ("bottom-right", "BOTTOM_RIGHT", ...)."""
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower().replace("_", "-")
        for anchor in cls:
            if anchor.value == key:
                return anchor
        choices = ", ".join(a.value for a in cls)
        raise ConfigError(f"Invalid position {value!r}. Use: {choices}")


ANCHOR_NAMES = [a.value for a in Anchor]


def clamp_ratio(ratio: float) -> float:
    return min(max(float(ratio), MIN_SIZE_RATIO), MAX_SIZE_RATIO)


def _check_opacity(opacity: int) -> int:
    if not 0 <= int(opacity) <= 255:
        raise ConfigError(f"Opacity must be within 0-255, got {opacity}")
    return int(opacity)


@dataclass(frozen=True)
class EmbedConfig:
    """Parameters of one embed call.

    size_ratio is a fraction of the shorter background side and is clamped
    to [0.1, 0.5]; the resulting tile side is clamped separately.
    """
    size_ratio: float = 0.25
    anchor: Anchor = Anchor.BOTTOM_RIGHT
    opacity: int = 230
    margin: int = 30

    def __post_init__(self):
        object.__setattr__(self, "size_ratio", clamp_ratio(self.size_ratio))
        object.__setattr__(self, "anchor", Anchor.parse(self.anchor))
        object.__setattr__(self, "opacity", _check_opacity(self.opacity))
        if self.margin < 0:
            raise ConfigError(f"Margin must be non-negative, got {self.margin}")


@dataclass(frozen=True)
class Config:
    """Settings shared by the provider, embedder and validator."""
    unsplash_api_key: str | None = field(default=None, repr=False)
    image_width: int = 1920
    image_height: int = 1080
    qr_size_ratio: float = 0.25
    qr_position: Anchor = Anchor.BOTTOM_RIGHT
    max_validation_attempts: int = 3
    qr_background_opacity: int = 230
    margin: int = 30

    def __post_init__(self):
        object.__setattr__(self, "qr_position", Anchor.parse(self.qr_position))
        object.__setattr__(self, "qr_background_opacity", _check_opacity(self.qr_background_opacity))
        if self.image_width <= 0 or self.image_height <= 0:
            raise ConfigError(f"Image dimensions must be positive, got {self.image_width}x{self.image_height}")
        if self.max_validation_attempts < 1:
            raise ConfigError("max_validation_attempts must be at least 1")

    @classmethod
    def from_env(cls, **overrides) -> "Config":
        """Build a Config, taking the Unsplash key from UNSPLASH_API_KEY unless overridden."""
        overrides.setdefault("unsplash_api_key", os.environ.get("UNSPLASH_API_KEY") or None)
        return cls(**overrides)

    def with_api_key(self, key: str) -> "Config":
        return replace(self, unsplash_api_key=key)

    def with_dimensions(self, width: int, height: int) -> "Config":
        return replace(self, image_width=width, image_height=height)

    def with_qr_size_ratio(self, ratio: float) -> "Config":
        return replace(self, qr_size_ratio=clamp_ratio(ratio))

    def with_qr_position(self, position: Anchor | str) -> "Config":
        return replace(self, qr_position=Anchor.parse(position))

    def embed_config(self) -> EmbedConfig:
        return EmbedConfig(
            size_ratio=self.qr_size_ratio,
            anchor=self.qr_position,
            opacity=self.qr_background_opacity,
            margin=self.margin,
        )
