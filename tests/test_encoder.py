"""Tests for I420 -> JPEG encoding."""

import io

import pytest
from PIL import Image

from monitor.encoder import encode_frame, i420_size
from monitor.errors import EncodeFailure


def _gray_frame(width, height, luma=128):
    chroma = (width // 2) * (height // 2)
    return bytes([luma]) * (width * height) + bytes([128]) * (2 * chroma)


def test_i420_size():
    assert i420_size(4, 2) == 8 + 2 * 2
    assert i420_size(640, 480) == 640 * 480 * 3 // 2


def test_encode_produces_jpeg_with_frame_dimensions():
    jpeg = encode_frame(_gray_frame(64, 48), 64, 48)

    assert jpeg[:2] == b"\xff\xd8"
    image = Image.open(io.BytesIO(jpeg))
    assert image.format == "JPEG"
    assert image.size == (64, 48)


def test_encode_preserves_luma():
    jpeg = encode_frame(_gray_frame(32, 32, luma=200), 32, 32)

    r, g, b = Image.open(io.BytesIO(jpeg)).convert("RGB").getpixel((16, 16))
    # Neutral chroma: every channel close to the luma value
    for channel in (r, g, b):
        assert abs(channel - 200) <= 3


def test_lower_quality_gives_smaller_output():
    # Noisy luma so quality actually matters
    width, height = 64, 64
    luma = bytes((x * 37 + y * 91) % 256 for y in range(height) for x in range(width))
    data = luma + bytes([128]) * (2 * (width // 2) * (height // 2))

    assert len(encode_frame(data, width, height, quality=20)) < len(
        encode_frame(data, width, height, quality=95)
    )


@pytest.mark.parametrize("width,height", [(0, 2), (2, 0), (3, 2), (4, 5), (-2, 2)])
def test_invalid_dimensions_rejected(width, height):
    with pytest.raises(EncodeFailure):
        encode_frame(b"\x00" * 64, width, height)


def test_wrong_buffer_length_rejected():
    data = _gray_frame(8, 8)
    with pytest.raises(EncodeFailure, match="expected"):
        encode_frame(data[:-1], 8, 8)
