import io

import numpy as np
import pytest
from PIL import Image, features

import decoder
from decoder import decode_image, sniff_format
from errors import CorruptData, InputError, TooLarge, UnsupportedFormat
from tests.helpers import encode, square_on_transparent


def noise(width=64, height=48, seed=0):
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)


def test_decodes_png_with_alpha():
    pixels = square_on_transparent()
    image = decode_image(encode(pixels))

    assert (image.width, image.height) == (100, 100)
    assert image.pixels.shape == (100, 100, 4)
    np.testing.assert_array_equal(image.pixels, pixels)


def test_decodes_jpeg_as_opaque_rgba():
    image = decode_image(encode(noise(), "JPEG", quality=90))

    assert (image.width, image.height) == (64, 48)
    assert np.all(image.alpha == 255)


@pytest.mark.skipif(not features.check("webp"), reason="Pillow built without WebP")
def test_decodes_webp():
    image = decode_image(encode(noise(), "WEBP", lossless=True))

    assert (image.width, image.height) == (64, 48)
    np.testing.assert_array_equal(image.pixels[:, :, :3], noise())


def test_palette_transparency_becomes_alpha():
    palette_image = Image.new("P", (10, 10), 0)
    palette_image.putpalette([255, 255, 255, 0, 0, 0] + [0] * 762)
    palette_image.putpixel((5, 5), 1)
    buffer = io.BytesIO()
    palette_image.save(buffer, format="PNG", transparency=0)

    image = decode_image(buffer.getvalue())

    assert image.alpha[5, 5] == 255
    assert image.alpha[0, 0] == 0


def test_exif_orientation_is_applied():
    exif = Image.Exif()
    exif[0x0112] = 6  # rotated 90 degrees clockwise
    data = encode(noise(width=40, height=20), "JPEG", exif=exif)

    image = decode_image(data)

    assert (image.width, image.height) == (20, 40)


def test_rejects_bytes_over_limit():
    data = encode(noise())
    with pytest.raises(TooLarge):
        decode_image(data, max_bytes=len(data) - 1)


def test_accepts_bytes_at_limit():
    data = encode(noise())
    assert decode_image(data, max_bytes=len(data)).width == 64


def test_rejects_too_many_pixels(monkeypatch):
    monkeypatch.setattr(decoder, "MAX_PIXELS", 100)
    with pytest.raises(TooLarge):
        decode_image(encode(noise()))


@pytest.mark.parametrize("data", [
    b"",
    b"definitely not an image",
    b"GIF89a" + b"\x00" * 32,
    b"%PDF-1.4\n",
])
def test_rejects_unknown_formats(data):
    with pytest.raises(UnsupportedFormat):
        decode_image(data)


def test_rejects_gif_even_though_pillow_reads_it():
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), "red").save(buffer, format="GIF")
    with pytest.raises(UnsupportedFormat):
        decode_image(buffer.getvalue())


def test_signature_with_garbage_is_corrupt():
    with pytest.raises(CorruptData):
        decode_image(b"\x89PNG\r\n\x1a\n" + b"\x13" * 200)


def test_truncated_png_is_corrupt():
    data = encode(noise(width=200, height=200))
    with pytest.raises(CorruptData):
        decode_image(data[: len(data) // 2])


def test_input_errors_share_a_base_class():
    for error in (UnsupportedFormat, TooLarge, CorruptData):
        assert issubclass(error, InputError)


def test_decoded_buffer_is_read_only():
    image = decode_image(encode(square_on_transparent()))
    with pytest.raises(ValueError):
        image.pixels[0, 0, 0] = 1


def test_sniff_format():
    assert sniff_format(encode(noise())) == "PNG"
    assert sniff_format(encode(noise(), "JPEG")) == "JPEG"
    assert sniff_format(b"RIFF\x00\x00\x00\x00WEBPVP8 ") == "WEBP"
    assert sniff_format(b"RIFF\x00\x00\x00\x00WAVEfmt ") is None
