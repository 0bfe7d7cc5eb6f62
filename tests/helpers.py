import io
import threading
import time

import numpy as np
from PIL import Image

from centering import center_on_canvas
from errors import PersistenceError
from models import AlphaMask, ManufacturabilityVerdict, RasterImage


def encode(pixels: np.ndarray, fmt: str = "PNG", **save_args) -> bytes:
    image = Image.fromarray(pixels.astype(np.uint8))
    if fmt == "JPEG":
        image = image.convert("RGB")
    buffer = io.BytesIO()
    image.save(buffer, format=fmt, **save_args)
    return buffer.getvalue()


def square_on_transparent(size=100, square=40, color=(255, 0, 0)):
    pixels = np.zeros((size, size, 4), dtype=np.uint8)
    start = (size - square) // 2
    pixels[start:start + square, start:start + square] = (*color, 255)
    return pixels


def rectangle_on_transparent(size, box, color=(0, 0, 255)):
    x0, y0, x1, y1 = box
    pixels = np.zeros((size, size, 4), dtype=np.uint8)
    pixels[y0:y1, x0:x1] = (*color, 255)
    return pixels


def circle_on_white(size=200, radius=50, center=None, color=(200, 30, 30)):
    pixels = np.full((size, size, 3), 255, dtype=np.uint8)
    cy, cx = center or (size // 2, size // 2)
    yy, xx = np.ogrid[:size, :size]
    inside = (xx - cx) ** 2 + (yy - cy) ** 2 <= radius ** 2
    pixels[inside] = color
    return pixels, inside


def uniform(size=100, value=128):
    return np.full((size, size, 3), value, dtype=np.uint8)


def small_canonical():
    pixels = square_on_transparent()
    image = RasterImage(pixels)
    return center_on_canvas(image, AlphaMask(pixels[:, :, 3].copy()), canvas_size=64)


def verdict(printable=True, scale=28.0, colors=("#000000",), reasoning="ok"):
    return ManufacturabilityVerdict(
        is_printable=printable,
        recommended_scale=scale,
        suggested_colors=colors,
        estimated_price="12.50",
        reasoning=reasoning,
    )


class FakeGate:
    """Returns canned verdicts, or raises; optionally blocks the first call."""

    def __init__(self, *results, block_first=False, delay=0.0):
        self.results = list(results)
        self.calls = []
        self.delay = delay
        self.block_first = block_first
        self.entered = threading.Event()
        self.release = threading.Event()

    def analyze(self, image_png, timeout=None):
        self.calls.append((image_png, timeout))
        index = len(self.calls) - 1
        if self.block_first and index == 0:
            self.entered.set()
            self.release.wait(5)
        if self.delay:
            time.sleep(self.delay)
        result = self.results[min(index, len(self.results) - 1)]
        if isinstance(result, Exception):
            raise result
        return result


class FakeStore:
    def __init__(self, failures=0):
        self.saved = {}
        self.failures = failures

    def save(self, snapshot):
        if self.failures:
            self.failures -= 1
            raise PersistenceError("disk full")
        design_id = f"design-{len(self.saved) + 1}"
        self.saved[design_id] = snapshot
        return design_id

    def list_designs(self):
        return []


class FakeCheckout:
    def __init__(self):
        self.requests = []

    def redirect_url(self, design_id, attributes):
        self.requests.append((design_id, attributes))
        return f"https://checkout.test/{design_id}?scale={attributes.scale:g}&colors={attributes.color_count}"
