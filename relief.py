import logging
import math

import cv2
import numpy as np
from stl import mesh

from placement import DesignSnapshot

logger = logging.getLogger(__name__)

RELIEF_HEIGHT_MM = 1.0
RELIEF_RESOLUTION = 128


def build_relief_mesh(
    snapshot: DesignSnapshot,
    relief_height: float = RELIEF_HEIGHT_MM,
    resolution: int = RELIEF_RESOLUTION,
) -> mesh.Mesh:
    """
    Turns a finalized design into a height-field mesh in blank coordinates.

    Height follows the subject's opacity. The grid spans the canonical image,
    scaled to transform.scale millimetres, rotated counterclockwise by
    transform.rotation and shifted by the offsets. Only cells touching the
    subject are emitted.
    """
    if snapshot.canonical is None:
        raise ValueError("The design has no image to export")
    if resolution < 2:
        raise ValueError("resolution must be at least 2")

    alpha = np.ascontiguousarray(snapshot.canonical.image.alpha).astype(np.float32)
    alpha = cv2.resize(alpha, (resolution, resolution), interpolation=cv2.INTER_AREA)
    height_map = relief_height * alpha / 255.0

    if np.max(height_map) == 0:
        raise ValueError("Image contains no printable pixels")

    t = snapshot.transform
    steps = np.linspace(-0.5, 0.5, resolution) * t.scale
    # Image rows grow downwards, blank y grows upwards.
    u, v = np.meshgrid(steps, -steps)
    cos_r, sin_r = math.cos(t.rotation), math.sin(t.rotation)
    x = u * cos_r - v * sin_r + t.offset_x
    y = u * sin_r + v * cos_r + t.offset_y
    vertices = np.stack([x, y, height_map], axis=-1)

    # Corners of every grid cell.
    top_left = vertices[:-1, :-1]
    top_right = vertices[:-1, 1:]
    bottom_left = vertices[1:, :-1]
    bottom_right = vertices[1:, 1:]

    occupied = (
        (height_map[:-1, :-1] > 0) | (height_map[:-1, 1:] > 0)
        | (height_map[1:, :-1] > 0) | (height_map[1:, 1:] > 0)
    )

    first = np.stack([bottom_left, top_right, top_left], axis=2)[occupied]
    second = np.stack([bottom_right, top_right, bottom_left], axis=2)[occupied]

    relief = mesh.Mesh(np.zeros(2 * len(first), dtype=mesh.Mesh.dtype))
    relief.vectors[0::2] = first
    relief.vectors[1::2] = second
    return relief


def export_relief_stl(snapshot: DesignSnapshot, output_path: str, **kwargs) -> str:
    """Writes the relief of a finalized design as an STL file."""
    relief = build_relief_mesh(snapshot, **kwargs)
    relief.save(output_path)
    logger.info("Exported %d triangles to %s", len(relief.vectors), output_path)
    return output_path
