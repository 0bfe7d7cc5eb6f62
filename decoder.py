import io
import logging

import numpy as np
from PIL import Image, ImageOps

from config import MAX_UPLOAD_BYTES
from errors import CorruptData, TooLarge, UnsupportedFormat
from models import RasterImage

logger = logging.getLogger(__name__)

# Decoded pixel budget; a small file can still expand into a huge bitmap.
MAX_PIXELS = 25_000_000

SUPPORTED_FORMATS = ("PNG", "JPEG", "WEBP")


def sniff_format(data: bytes):
    """Returns the image format named by the file signature, or None."""
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "PNG"
    if data.startswith(b"\xff\xd8\xff"):
        return "JPEG"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "WEBP"
    return None


def decode_image(data: bytes, max_bytes: int = MAX_UPLOAD_BYTES) -> RasterImage:
    """
    Decodes uploaded bytes into an RGBA RasterImage.

    The format is taken from the content, never from a file name. Either a
    complete image is returned or one of UnsupportedFormat, TooLarge or
    CorruptData is raised.
    """
    if len(data) > max_bytes:
        raise TooLarge(f"File too large ({len(data)} bytes). Max {max_bytes / (1024 * 1024):g}MB.")

    fmt = sniff_format(data)
    if fmt is None:
        raise UnsupportedFormat(f"Unsupported image format. Use one of: {', '.join(SUPPORTED_FORMATS)}.")

    try:
        image = Image.open(io.BytesIO(data))
        width, height = image.size
        if width * height > MAX_PIXELS:
            raise TooLarge(f"Image too large ({width}x{height} > {MAX_PIXELS} pixels)")
        image.load()
        image = ImageOps.exif_transpose(image)
        pixels = np.array(image.convert("RGBA"), dtype=np.uint8)
    except TooLarge:
        raise
    except Image.DecompressionBombError as e:
        raise TooLarge(f"Image too large: {e}") from e
    except Exception as e:
        raise CorruptData(f"Failed to decode {fmt} image: {e}") from e

    if pixels.ndim != 3 or pixels.shape[0] == 0 or pixels.shape[1] == 0:
        raise CorruptData(f"Decoded {fmt} image has no pixels")

    logger.info("Decoded %s upload: %dx%d (%d bytes)", fmt, pixels.shape[1], pixels.shape[0], len(data))
    return RasterImage(pixels)
