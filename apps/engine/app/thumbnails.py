"""Plate thumbnail decoding and placeholder generation."""

import base64
import binascii
import io
import logging
from typing import Optional

from PIL import Image, ImageDraw, UnidentifiedImageError

logger = logging.getLogger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
PLACEHOLDER_SIZE = 64
PLACEHOLDER_BACKGROUND = (48, 48, 48)
PLACEHOLDER_PLATE = (200, 200, 200)


def decode_base64(data: Optional[str]) -> Optional[bytes]:
    """Decode a base64 thumbnail string; None if empty or malformed."""
    if not data or not data.strip():
        return None
    try:
        return base64.b64decode("".join(data.split()), validate=True)
    except (binascii.Error, ValueError):
        logger.debug("Thumbnail is not valid base64")
        return None


def encode_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def to_png(image_bytes: bytes) -> Optional[bytes]:
    """Return PNG bytes for any image Pillow can read.

    PNG input is passed through unchanged; other formats are re-encoded.
    Returns None when the bytes are not a readable image.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            if img.format == "PNG" and image_bytes.startswith(PNG_SIGNATURE):
                img.verify()
                return image_bytes
            if img.mode not in ("RGB", "RGBA"):
                img = img.convert("RGBA")
            out = io.BytesIO()
            img.save(out, format="PNG")
            return out.getvalue()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError) as e:
        logger.debug(f"Thumbnail could not be decoded: {e}")
        return None


def placeholder_png(size: int = PLACEHOLDER_SIZE) -> bytes:
    """Small solid image with a build-plate outline."""
    img = Image.new("RGB", (size, size), PLACEHOLDER_BACKGROUND)
    draw = ImageDraw.Draw(img)
    margin = max(2, size // 8)
    draw.rectangle([margin, margin, size - 1 - margin, size - 1 - margin],
                   outline=PLACEHOLDER_PLATE, width=max(1, size // 32))
    out = io.BytesIO()
    img.save(out, format="PNG")
    return out.getvalue()


def thumbnail_png(thumbnail: Optional[str]) -> bytes:
    """PNG bytes for a base64 thumbnail, falling back to the placeholder."""
    raw = decode_base64(thumbnail)
    png = to_png(raw) if raw else None
    if png is None:
        if thumbnail:
            logger.warning("Thumbnail undecodable, using placeholder image")
        return placeholder_png()
    return png
