"""Image normalization ahead of OCR.

Decodes a transported invoice image (raw bytes, base64 or a
``data:image/*;base64,`` URI) and applies a fixed enhancement sequence:
grayscale, contrast stretch, then unsharp-mask sharpening. Sharpening runs
last so low-contrast noise is not amplified before the range is stretched.
"""

import base64
import binascii
import io
import re
from dataclasses import dataclass

import cv2
import numpy as np
from PIL import Image

from invoice_ocr.utils.config import PreprocessingConfig
from invoice_ocr.utils.exceptions import ImageProcessingError, InputError
from invoice_ocr.utils.logger import get_logger

logger = get_logger(__name__)

_DATA_URI_PREFIX = re.compile(r"^data:image/[\w.+-]+;base64,", re.IGNORECASE)


@dataclass(frozen=True)
class RawImage:
    """Decoded image bytes and the format Pillow recognized them as."""

    data: bytes
    encoding: str | None


@dataclass(frozen=True)
class NormalizedImage:
    """Single-channel, contrast-normalized, sharpened image ready for OCR."""

    pixels: np.ndarray
    source_encoding: str | None = None

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])


@dataclass
class QualityMetrics:
    """Before/after image quality measurements."""

    sharpness_before: float
    sharpness_after: float
    contrast_before: float
    contrast_after: float


def calculate_sharpness(image: np.ndarray) -> float:
    """Laplacian variance of a grayscale image (higher means sharper)."""
    return float(cv2.Laplacian(image, cv2.CV_64F).var())


def calculate_contrast(image: np.ndarray) -> float:
    """Standard deviation of pixel intensities (higher means more contrast)."""
    return float(image.std())


def strip_data_uri(payload: str) -> str:
    """Remove a leading ``data:image/*;base64,`` prefix if present."""
    return _DATA_URI_PREFIX.sub("", payload.strip(), count=1)


def _check_size(size: int, max_bytes: int | None) -> None:
    if max_bytes is not None and size > max_bytes:
        raise InputError(
            "Image payload exceeds the size limit",
            {"size": size, "limit": max_bytes},
        )


def read_payload(encoded: bytes | str, max_bytes: int | None = None) -> bytes:
    """Turn a transported payload into raw image bytes.

    Strings are treated as base64, optionally data-URI prefixed. Bytes are
    treated as a binary image unless they carry a data-URI prefix.

    Args:
        encoded: Raw bytes, base64 text or a data URI.
        max_bytes: Largest accepted image size in bytes; ``None`` disables
            the check.

    Raises:
        InputError: If the payload is missing, empty, of the wrong type or
            larger than ``max_bytes``.
        ImageProcessingError: If the base64 text cannot be decoded.
    """
    if encoded is None:
        raise InputError("No image provided")
    if isinstance(encoded, (bytes, bytearray)):
        if not encoded:
            raise InputError("No image provided")
        if bytes(encoded[:5]).lower() != b"data:":
            _check_size(len(encoded), max_bytes)
            return bytes(encoded)
        try:
            encoded = bytes(encoded).decode("ascii")
        except UnicodeDecodeError as exc:
            raise ImageProcessingError("Data URI payload is not ASCII") from exc
    if not isinstance(encoded, str):
        raise InputError(
            "Image must be provided as bytes or a base64 string",
            {"type": type(encoded).__name__},
        )
    if not encoded.strip():
        raise InputError("No image provided")

    body = strip_data_uri(encoded)
    # reject before decoding: base64 expands 3 bytes into 4 characters
    _check_size(len(body) * 3 // 4 - body[-2:].count("="), max_bytes)
    try:
        data = base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ImageProcessingError("Image payload is not valid base64") from exc
    if not data:
        raise ImageProcessingError("Image payload decoded to zero bytes")
    return data


def decode_image(data: bytes) -> tuple[np.ndarray, RawImage]:
    """Decode image bytes into an RGB or grayscale array.

    Returns:
        Tuple of (pixels, raw_image).
    """
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        encoding = img.format
        if img.mode != "L":
            img = img.convert("RGB")
        pixels = np.array(img)
    return pixels, RawImage(data=data, encoding=encoding)


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """Convert an RGB image to a single channel; grayscale passes through."""
    if image.ndim == 3:
        return cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
    return image


def stretch_contrast(image: np.ndarray) -> np.ndarray:
    """Stretch intensities to the full 0..255 range."""
    return cv2.normalize(image, None, 0, 255, cv2.NORM_MINMAX)


def sharpen(image: np.ndarray, amount: float = 1.0, sigma: float = 1.0) -> np.ndarray:
    """Apply an unsharp mask.

    Args:
        image: Grayscale image.
        amount: Weight of the high-frequency detail added back.
        sigma: Gaussian blur sigma used to build the mask.

    Returns:
        Sharpened ``uint8`` image.
    """
    blurred = cv2.GaussianBlur(image, (0, 0), sigma)
    return cv2.addWeighted(image, 1.0 + amount, blurred, -amount, 0)


class ImageNormalizer:
    """Decodes and enhances invoice images for OCR.

    Args:
        config: Sharpening parameters. The step order is not configurable.
    """

    def __init__(self, config: PreprocessingConfig | None = None) -> None:
        self.config = config or PreprocessingConfig()

    def normalize(self, encoded: bytes | str) -> NormalizedImage:
        """Decode and enhance an encoded image.

        Args:
            encoded: Raw image bytes, base64 text, or a data URI.

        Returns:
            Normalized grayscale image.

        Raises:
            InputError: If no usable payload was provided.
            ImageProcessingError: If decoding or any transform fails.
        """
        data = read_payload(encoded, self.config.max_payload_bytes)
        try:
            pixels, raw = decode_image(data)
            gray = to_grayscale(pixels)
            sharpness_before = calculate_sharpness(gray)
            contrast_before = calculate_contrast(gray)

            result = stretch_contrast(gray)
            result = sharpen(
                result,
                amount=self.config.sharpen_amount,
                sigma=self.config.sharpen_sigma,
            )
        except (OSError, ValueError, cv2.error, Image.DecompressionBombError) as exc:
            raise ImageProcessingError(f"Failed to preprocess image: {exc}") from exc

        metrics = QualityMetrics(
            sharpness_before=sharpness_before,
            sharpness_after=calculate_sharpness(result),
            contrast_before=contrast_before,
            contrast_after=calculate_contrast(result),
        )
        logger.info(
            "Normalized %s image %dx%d: sharpness %.1f->%.1f, contrast %.1f->%.1f",
            raw.encoding or "unknown",
            result.shape[1],
            result.shape[0],
            metrics.sharpness_before,
            metrics.sharpness_after,
            metrics.contrast_before,
            metrics.contrast_after,
        )
        return NormalizedImage(pixels=result, source_encoding=raw.encoding)
