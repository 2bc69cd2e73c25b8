"""Raster image transcoding to WebP.

Static JPEG/PNG/BMP/TIFF images are re-encoded as lossy WebP. Animated
formats (GIF, APNG) and images that are already WebP pass through untouched.
A failed conversion is never fatal: the original bytes are served instead.
"""

from __future__ import annotations

import io
import struct

import structlog
from PIL import Image

log = structlog.get_logger()

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

CONVERTIBLE_TYPES: frozenset[str] = frozenset(
    {
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/bmp",
        "image/x-ms-bmp",
        "image/tiff",
    }
)

PASSTHROUGH_TYPES: frozenset[str] = frozenset({"image/gif", "image/apng", "image/webp"})

WEBP_TYPE = "image/webp"


def is_animated_png(data: bytes) -> bool:
    """Return True if ``data`` is a PNG carrying an ``acTL`` chunk.

    Walks the chunk list after the 8-byte signature: each chunk is a 4-byte
    big-endian length, a 4-byte ASCII type, the payload and a 4-byte CRC.
    """
    if len(data) < 16 or not data.startswith(PNG_SIGNATURE):
        return False
    offset = 8
    while offset + 8 <= len(data):
        (length,) = struct.unpack_from(">I", data, offset)
        chunk_type = data[offset + 4 : offset + 8]
        if chunk_type == b"acTL":
            return True
        offset += 8 + length + 4
    return False


def should_transcode(content_type: str, data: bytes) -> bool:
    if content_type in PASSTHROUGH_TYPES or content_type not in CONVERTIBLE_TYPES:
        return False
    return not (content_type == "image/png" and is_animated_png(data))


def _encode_webp(data: bytes, quality: int) -> bytes:
    with Image.open(io.BytesIO(data)) as image:
        if image.mode not in ("RGB", "RGBA"):
            has_alpha = image.mode in ("LA", "PA") or "transparency" in image.info
            image = image.convert("RGBA" if has_alpha else "RGB")
        out = io.BytesIO()
        image.save(out, format="WEBP", quality=quality)
        return out.getvalue()


def transcode(data: bytes, content_type: str, quality: int = 82) -> tuple[bytes, str]:
    """Return ``(body, content_type)``, converted to WebP where eligible."""
    if not should_transcode(content_type, data):
        return data, content_type
    try:
        converted = _encode_webp(data, quality)
    except (OSError, ValueError, Image.DecompressionBombError):
        log.info("image_transcode_failed", content_type=content_type, exc_info=True)
        return data, content_type
    log.debug(
        "image_transcoded",
        source_type=content_type,
        source_bytes=len(data),
        output_bytes=len(converted),
    )
    return converted, WEBP_TYPE
