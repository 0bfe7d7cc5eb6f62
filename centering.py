import logging

import cv2
import numpy as np

from config import CANONICAL_SIZE
from errors import EmptyMask
from isolator import ALPHA_THRESHOLD
from models import AlphaMask, Box, CanonicalImage, RasterImage

logger = logging.getLogger(__name__)

# Margin around the content, relative to the larger content dimension.
MARGIN_FRACTION = 0.08


def content_box(mask: AlphaMask, threshold: int = ALPHA_THRESHOLD) -> Box:
    """Smallest box enclosing every mask pixel above threshold."""
    content = mask.values > threshold
    if not content.any():
        raise EmptyMask("The subject mask has no opaque pixels.")
    rows = np.flatnonzero(content.any(axis=1))
    cols = np.flatnonzero(content.any(axis=0))
    return Box(int(cols[0]), int(rows[0]), int(cols[-1]) + 1, int(rows[-1]) + 1)


def _paste(canvas: np.ndarray, tile: np.ndarray, left: int, top: int) -> None:
    """Copies tile onto canvas at (left, top), clipping whatever falls outside."""
    ch, cw = canvas.shape[:2]
    th, tw = tile.shape[:2]
    x0, y0 = max(0, left), max(0, top)
    x1, y1 = min(cw, left + tw), min(ch, top + th)
    if x1 <= x0 or y1 <= y0:
        return
    canvas[y0:y1, x0:x1] = tile[y0 - top:y1 - top, x0 - left:x1 - left]


def center_on_canvas(
    image: RasterImage,
    mask: AlphaMask,
    canvas_size: int = CANONICAL_SIZE,
    margin_fraction: float = MARGIN_FRACTION,
) -> CanonicalImage:
    """
    Crops the subject with a margin and centers it on a transparent square canvas.

    The crop is resampled so the content box plus margin spans the canvas along
    its longer side; the shorter side is letterboxed. The content box center
    lands on the canvas center even when the margin had to be clamped at the
    source edges. Pure and deterministic.
    """
    if not mask.matches(image):
        raise ValueError(f"Mask {mask.shape} does not match image {image.height}x{image.width}")

    box = content_box(mask)
    margin = int(round(max(box.width, box.height) * margin_fraction))
    crop = Box(
        max(0, box.x0 - margin),
        max(0, box.y0 - margin),
        min(image.width, box.x1 + margin),
        min(image.height, box.y1 + margin),
    )

    # Premultiply so transparent pixels do not bleed color into the edges.
    alpha = mask.values[crop.y0:crop.y1, crop.x0:crop.x1].astype(np.float32)
    rgb = image.pixels[crop.y0:crop.y1, crop.x0:crop.x1, :3].astype(np.float32)
    premultiplied = np.dstack([rgb * (alpha[:, :, None] / 255.0), alpha])

    side = max(box.width, box.height) + 2 * margin
    scale = canvas_size / float(side)
    out_w = max(1, int(round(crop.width * scale)))
    out_h = max(1, int(round(crop.height * scale)))
    interpolation = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_CUBIC
    resized = cv2.resize(premultiplied, (out_w, out_h), interpolation=interpolation)
    resized = np.clip(resized.reshape(out_h, out_w, 4), 0.0, 255.0)

    cx, cy = box.center
    left = int(round(canvas_size / 2.0 - (cx - crop.x0) * scale))
    top = int(round(canvas_size / 2.0 - (cy - crop.y0) * scale))

    canvas = np.zeros((canvas_size, canvas_size, 4), dtype=np.float32)
    _paste(canvas, resized, left, top)

    out_alpha = np.round(canvas[:, :, 3])
    with np.errstate(divide="ignore", invalid="ignore"):
        out_rgb = np.where(
            out_alpha[:, :, None] > 0,
            np.minimum(canvas[:, :, :3], canvas[:, :, 3:4]) * 255.0 / canvas[:, :, 3:4],
            0.0,
        )
    pixels = np.dstack([np.round(out_rgb), out_alpha]).clip(0, 255).astype(np.uint8)

    placed = Box(
        max(0, int(round(left + (box.x0 - crop.x0) * scale))),
        max(0, int(round(top + (box.y0 - crop.y0) * scale))),
        min(canvas_size, int(round(left + (box.x1 - crop.x0) * scale))),
        min(canvas_size, int(round(top + (box.y1 - crop.y0) * scale))),
    )
    logger.info(
        "Centered %dx%d content box %s onto %dpx canvas at %s (scale %.3f)",
        box.width, box.height, tuple(box), canvas_size, tuple(placed), scale,
    )
    return CanonicalImage(image=RasterImage(pixels), content_box=placed, source_box=box)
