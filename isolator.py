import logging
from typing import List

import cv2
import numpy as np

from errors import NoSubjectDetected
from models import AlphaMask, RasterImage

logger = logging.getLogger(__name__)

# Opacity at or below this counts as transparent.
ALPHA_THRESHOLD = 16

# Width of the sampled border ring, as a fraction of the shorter side.
BORDER_FRACTION = 0.02

# Lab distance bounds for "different from the background".
MIN_TOLERANCE = 12.0
MAX_TOLERANCE = 40.0
NOISE_FACTOR = 3.0

# Border references closer than this are treated as the same color.
MERGE_DISTANCE = 8.0

# Components smaller than this fraction of the largest one are noise.
NOISE_COMPONENT_FRACTION = 0.01
MIN_COMPONENT_PIXELS = 4

# Enclosed background pockets up to this fraction of the image get filled.
MAX_HOLE_FRACTION = 0.001

MIN_SUBJECT_FRACTION = 0.0025
MAX_SUBJECT_FRACTION = 0.995


def border_ring(height: int, width: int) -> np.ndarray:
    """Boolean mask of the border region sampled for the background estimate."""
    band = max(1, int(round(min(height, width) * BORDER_FRACTION)))
    ring = np.zeros((height, width), dtype=bool)
    ring[:band, :] = True
    ring[-band:, :] = True
    ring[:, :band] = True
    ring[:, -band:] = True
    return ring


def _to_lab(image: RasterImage) -> np.ndarray:
    rgb = np.ascontiguousarray(image.pixels[:, :, :3]).astype(np.float32) / 255.0
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2LAB)


def _background_references(lab: np.ndarray, opaque: np.ndarray) -> List[np.ndarray]:
    """
    Estimates background colors from the median of each image side.

    One reference per side lets a background that changes from edge to edge
    (vignetting, a gradient, a two-tone backdrop) still be recognized.
    """
    h, w = opaque.shape
    band = max(1, int(round(min(h, w) * BORDER_FRACTION)))
    sides = [
        (slice(0, band), slice(None)),
        (slice(h - band, h), slice(None)),
        (slice(None), slice(0, band)),
        (slice(None), slice(w - band, w)),
    ]

    references = []
    for rows, cols in sides:
        samples = lab[rows, cols][opaque[rows, cols]]
        if len(samples) == 0:
            continue
        candidate = np.median(samples, axis=0)
        if all(np.linalg.norm(candidate - ref) > MERGE_DISTANCE for ref in references):
            references.append(candidate)
    return references


def _distance_to_background(lab: np.ndarray, references: List[np.ndarray]) -> np.ndarray:
    distance = np.full(lab.shape[:2], np.inf, dtype=np.float32)
    for ref in references:
        distance = np.minimum(distance, np.linalg.norm(lab - ref.astype(np.float32), axis=2))
    return distance


def _classify_by_color(image: RasterImage, ring: np.ndarray) -> np.ndarray:
    lab = _to_lab(image)
    opaque = image.alpha > ALPHA_THRESHOLD

    references = _background_references(lab, opaque & ring)
    if not references:
        raise NoSubjectDetected("Could not sample the background from the image border.")

    distance = _distance_to_background(lab, references)

    # Tolerance follows the noise observed on the border itself.
    spread = float(np.percentile(distance[ring & opaque], 95))
    tolerance = min(MAX_TOLERANCE, max(MIN_TOLERANCE, NOISE_FACTOR * spread))
    logger.debug("Background references=%d spread=%.2f tolerance=%.2f", len(references), spread, tolerance)

    return (distance > tolerance) & opaque


def _clean_mask(subject: np.ndarray) -> np.ndarray:
    """Closes pinholes, drops speckle and fills small enclosed pockets."""
    h, w = subject.shape
    mask = subject.astype(np.uint8)

    kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (3, 3))
    mask = cv2.morphologyEx(mask, cv2.MORPH_CLOSE, kernel)

    num_labels, labels, stats, _ = cv2.connectedComponentsWithStats(mask, connectivity=8)
    if num_labels <= 1:
        return np.zeros((h, w), dtype=bool)

    areas = stats[1:, cv2.CC_STAT_AREA]
    min_area = max(MIN_COMPONENT_PIXELS, int(areas.max() * NOISE_COMPONENT_FRACTION))
    keep = np.zeros(num_labels, dtype=bool)
    keep[1:] = areas >= min_area
    cleaned = keep[labels]
    logger.debug("Kept %d of %d foreground components", int(keep.sum()), num_labels - 1)

    # Background pockets that do not reach the image edge and are tiny are holes.
    max_hole = max(1, int(h * w * MAX_HOLE_FRACTION))
    inverted = (~cleaned).astype(np.uint8)
    num_holes, hole_labels, hole_stats, _ = cv2.connectedComponentsWithStats(inverted, connectivity=4)
    edge_labels = np.unique(np.concatenate([
        hole_labels[0, :], hole_labels[-1, :], hole_labels[:, 0], hole_labels[:, -1],
    ]))
    fill = np.zeros(num_holes, dtype=bool)
    fill[1:] = hole_stats[1:, cv2.CC_STAT_AREA] <= max_hole
    fill[edge_labels] = False
    return cleaned | fill[hole_labels]


def isolate_subject(image: RasterImage) -> AlphaMask:
    """
    Separates the subject from its background.

    The background is assumed to touch the image border. When most of the
    border is already transparent the alpha channel is the signal; otherwise
    pixels are classified by their Lab distance from colors sampled along the
    border. Subject pixels keep their own opacity so anti-aliased edges
    survive. Raises NoSubjectDetected when nothing stands out.
    """
    ring = border_ring(image.height, image.width)
    alpha = image.alpha

    transparent_border = np.count_nonzero(alpha[ring] <= ALPHA_THRESHOLD) >= 0.5 * np.count_nonzero(ring)
    if transparent_border:
        subject = alpha > ALPHA_THRESHOLD
    else:
        subject = _classify_by_color(image, ring)

    subject = _clean_mask(subject)

    coverage = float(np.count_nonzero(subject)) / subject.size
    if coverage < MIN_SUBJECT_FRACTION or coverage > MAX_SUBJECT_FRACTION:
        raise NoSubjectDetected(
            f"No subject could be separated from the background (coverage {coverage:.1%})."
        )

    values = np.where(subject, alpha, 0).astype(np.uint8)
    logger.info(
        "Isolated subject: %.1f%% coverage (%s background)",
        coverage * 100, "transparent" if transparent_border else "color-keyed",
    )
    return AlphaMask(values)
