import hashlib
import io
from dataclasses import dataclass, field
from decimal import Decimal
from typing import NamedTuple, Optional, Tuple

import numpy as np
from PIL import Image
from pydantic import BaseModel, ConfigDict, Field


class Box(NamedTuple):
    """Pixel rectangle, x1/y1 exclusive."""
    x0: int
    y0: int
    x1: int
    y1: int

    @property
    def width(self) -> int:
        return self.x1 - self.x0

    @property
    def height(self) -> int:
        return self.y1 - self.y0

    @property
    def center(self) -> Tuple[float, float]:
        return ((self.x0 + self.x1) / 2.0, (self.y0 + self.y1) / 2.0)


@dataclass(frozen=True)
class RasterImage:
    """
    RGBA pixel buffer of shape (height, width, 4).

    The image owns its buffer: it is made read-only on construction, so a
    stage that wants to change pixels has to produce a new image.
    """
    pixels: np.ndarray = field(repr=False)

    def __post_init__(self):
        if self.pixels.dtype != np.uint8 or self.pixels.ndim != 3 or self.pixels.shape[2] != 4:
            raise ValueError(f"Expected uint8 RGBA pixels, got {self.pixels.dtype} {self.pixels.shape}")
        if self.pixels.shape[0] < 1 or self.pixels.shape[1] < 1:
            raise ValueError("Image must have positive width and height")
        self.pixels.setflags(write=False)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def alpha(self) -> np.ndarray:
        return self.pixels[:, :, 3]

    def to_pil(self) -> Image.Image:
        return Image.fromarray(np.ascontiguousarray(self.pixels))

    def to_png(self) -> bytes:
        buffer = io.BytesIO()
        self.to_pil().save(buffer, format="PNG")
        return buffer.getvalue()


@dataclass(frozen=True)
class AlphaMask:
    """Per-pixel subject opacity (0-255), aligned with the image it came from."""
    values: np.ndarray = field(repr=False)

    def __post_init__(self):
        if self.values.dtype != np.uint8 or self.values.ndim != 2:
            raise ValueError(f"Expected a 2D uint8 mask, got {self.values.dtype} {self.values.shape}")
        self.values.setflags(write=False)

    @property
    def shape(self) -> Tuple[int, int]:
        return (int(self.values.shape[0]), int(self.values.shape[1]))

    def coverage(self, threshold: int = 0) -> float:
        """Fraction of pixels with opacity above threshold."""
        return float(np.count_nonzero(self.values > threshold)) / self.values.size

    def matches(self, image: RasterImage) -> bool:
        return self.shape == (image.height, image.width)


@dataclass(frozen=True)
class CanonicalImage:
    """
    Cropped, centered, square image with a fully transparent background.

    content_box is where the subject's bounding box landed on the canvas;
    source_box is the subject's bounding box in the uploaded image.
    """
    image: RasterImage
    content_box: Box
    source_box: Box

    @property
    def size(self) -> int:
        return self.image.width

    @property
    def digest(self) -> str:
        """Content hash; identical pipelines produce identical digests."""
        h = hashlib.sha256()
        h.update(repr(self.image.pixels.shape).encode("ascii"))
        h.update(np.ascontiguousarray(self.image.pixels).tobytes())
        return h.hexdigest()

    def to_png(self) -> bytes:
        return self.image.to_png()


class ManufacturabilityVerdict(BaseModel):
    """Judgment returned by the manufacturability gate. Immutable once received."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    is_printable: bool = Field(alias="isPrintable")
    recommended_scale: Optional[float] = Field(default=None, alias="recommendedScale")
    # Ordered by detected dominance.
    suggested_colors: Tuple[str, ...] = Field(default=(), alias="suggestedColors")
    estimated_price: Decimal = Field(alias="estimatedPrice", ge=0)
    reasoning: str = ""
