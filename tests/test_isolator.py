import numpy as np
import pytest

from errors import NoSubjectDetected, SegmentationError
from isolator import border_ring, isolate_subject
from models import RasterImage
from tests.helpers import circle_on_white, square_on_transparent, uniform


def rgba(pixels):
    if pixels.shape[-1] == 3:
        alpha = np.full(pixels.shape[:2] + (1,), 255, dtype=np.uint8)
        pixels = np.concatenate([pixels, alpha], axis=2)
    return RasterImage(np.ascontiguousarray(pixels, dtype=np.uint8))


def iou(a, b):
    return np.count_nonzero(a & b) / np.count_nonzero(a | b)


def test_uniform_gray_has_no_subject():
    with pytest.raises(NoSubjectDetected):
        isolate_subject(rgba(uniform(100, 128)))


def test_no_subject_is_a_segmentation_error():
    assert issubclass(NoSubjectDetected, SegmentationError)


def test_transparent_background_uses_alpha():
    mask = isolate_subject(rgba(square_on_transparent()))

    expected = np.zeros((100, 100), dtype=np.uint8)
    expected[30:70, 30:70] = 255
    np.testing.assert_array_equal(mask.values, expected)


def test_partial_alpha_on_edges_is_kept():
    pixels = square_on_transparent()
    pixels[30:70, 29] = (255, 0, 0, 128)
    mask = isolate_subject(rgba(pixels))

    assert mask.values[50, 29] == 128
    assert mask.values[50, 50] == 255


def test_colored_subject_on_white():
    pixels, inside = circle_on_white()
    mask = isolate_subject(rgba(pixels))

    assert mask.matches(rgba(pixels))
    assert iou(mask.values > 0, inside) > 0.98
    assert mask.values[0, 0] == 0


def test_noisy_background_is_tolerated():
    rng = np.random.default_rng(7)
    pixels, inside = circle_on_white(color=(20, 60, 160))
    noisy = np.clip(pixels.astype(np.int16) + rng.normal(0, 4, pixels.shape), 0, 255).astype(np.uint8)

    mask = isolate_subject(rgba(noisy))

    assert iou(mask.values > 0, inside) > 0.97


def test_isolated_speck_is_removed():
    pixels = np.full((200, 200, 3), 255, dtype=np.uint8)
    pixels[60:140, 60:140] = (0, 0, 200)
    pixels[20, 20] = (0, 0, 0)

    mask = isolate_subject(rgba(pixels))

    assert mask.values[20, 20] == 0
    assert np.all(mask.values[60:140, 60:140] == 255)


def test_pinhole_in_subject_is_closed():
    pixels = np.full((200, 200, 3), 255, dtype=np.uint8)
    pixels[60:140, 60:140] = (0, 0, 200)
    pixels[100, 100] = (255, 255, 255)

    mask = isolate_subject(rgba(pixels))

    assert mask.values[100, 100] == 255


def test_large_enclosed_background_stays_open():
    # A ring: the middle is real background, not a hole to fill.
    pixels = np.full((200, 200, 3), 255, dtype=np.uint8)
    pixels[40:160, 40:160] = (0, 120, 0)
    pixels[70:130, 70:130] = (255, 255, 255)

    mask = isolate_subject(rgba(pixels))

    assert mask.values[100, 100] == 0
    assert mask.values[50, 50] == 255


def test_two_tone_background():
    pixels = np.zeros((200, 200, 3), dtype=np.uint8)
    pixels[:, :100] = (240, 240, 240)
    pixels[:, 100:] = (30, 30, 30)
    pixels[80:120, 80:120] = (220, 40, 40)

    mask = isolate_subject(rgba(pixels))
    subject = mask.values > 0

    expected = np.zeros((200, 200), dtype=bool)
    expected[80:120, 80:120] = True
    assert iou(subject, expected) > 0.95


def test_tiny_subject_is_not_a_subject():
    pixels = np.full((200, 200, 3), 255, dtype=np.uint8)
    pixels[100:104, 100:104] = (0, 0, 0)
    with pytest.raises(NoSubjectDetected):
        isolate_subject(rgba(pixels))


def test_fully_transparent_image_has_no_subject():
    with pytest.raises(NoSubjectDetected):
        isolate_subject(RasterImage(np.zeros((50, 50, 4), dtype=np.uint8)))


def test_isolation_is_deterministic():
    pixels, _ = circle_on_white()
    first = isolate_subject(rgba(pixels))
    second = isolate_subject(rgba(pixels))
    np.testing.assert_array_equal(first.values, second.values)


def test_border_ring_width():
    ring = border_ring(100, 200)
    assert ring[0, 100] and ring[99, 100] and ring[50, 0] and ring[50, 199]
    assert ring[1, 100] and not ring[2, 100]
    assert not ring[50, 100]
