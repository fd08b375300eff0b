"""Error types raised by QR-Image.

Callers branch on the exception class; messages are for humans only.
"""


class QrImageError(Exception):
    """Base class for every failure QR-Image reports."""


class QrEncodeError(QrImageError):
    """The payload cannot be encoded as a QR symbol (capacity or charset)."""


class CompositingError(QrImageError):
    """The background geometry cannot host a QR tile (e.g. zero-sized image)."""


class ProviderError(QrImageError):
    """A background image could not be fetched or decoded."""


class ConfigError(QrImageError, ValueError):
    """A configuration value is out of range or unknown."""


class ValidationError(QrImageError):
    """The composited image did not verifiably carry the payload."""


class ValidationMismatch(ValidationError):
    """A QR symbol decoded, but its payload differs from the expected one."""

    def __init__(self, expected: str, decoded: str, attempt: int):
        self.expected = expected
        self.decoded = decoded
        self.attempt = attempt
        super().__init__(
            f"Decoded data does not match expected data (attempt {attempt}: "
            f"got {decoded[:80]!r}, expected {expected[:80]!r})"
        )


class ValidationExhausted(ValidationError):
    """No attempt within the budget produced a successful decode."""

    def __init__(self, max_attempts: int, attempts: list | None = None):
        self.max_attempts = max_attempts
        self.attempts = list(attempts or [])
        super().__init__(f"Failed to decode QR code after {max_attempts} attempts")
