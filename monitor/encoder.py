# =============================================================================
# Danger Monitor - Frame Encoder
# =============================================================================
# Converts raw I420 planar buffers (full-resolution Y plane followed by
# quarter-resolution U and V planes) into JPEG bytes. The chroma planes are
# upsampled to full resolution and the three planes are handed to Pillow as a
# YCbCr image, which the JPEG encoder consumes without an RGB round trip.
# =============================================================================

import io
import logging

import numpy as np
from PIL import Image

from monitor.errors import EncodeFailure

logger = logging.getLogger(__name__)

DEFAULT_JPEG_QUALITY = 85


def i420_size(width: int, height: int) -> int:
    """Number of bytes in an I420 buffer of the given dimensions."""
    return width * height + 2 * (width // 2) * (height // 2)


def encode_frame(
    data: bytes,
    width: int,
    height: int,
    quality: int = DEFAULT_JPEG_QUALITY,
) -> bytes:
    """
    Encode an I420 planar buffer as a JPEG.

    Pure function of its inputs; safe to call from any thread.

    Args:
        data:    Raw I420 bytes (Y, then U, then V).
        width:   Frame width in pixels (must be even).
        height:  Frame height in pixels (must be even).
        quality: JPEG quality, 1-95.

    Returns:
        bytes: The encoded JPEG.

    Raises:
        EncodeFailure: On invalid dimensions, a buffer of the wrong length,
            or any codec error.
    """
    if width <= 0 or height <= 0 or width % 2 or height % 2:
        raise EncodeFailure(f"Invalid frame dimensions {width}x{height}")

    expected = i420_size(width, height)
    if len(data) != expected:
        raise EncodeFailure(
            f"Buffer holds {len(data)} bytes, expected {expected} for {width}x{height}"
        )

    luma_size = width * height
    chroma_size = (width // 2) * (height // 2)
    planes = np.frombuffer(data, dtype=np.uint8)

    y = planes[:luma_size].reshape(height, width)
    u = planes[luma_size:luma_size + chroma_size].reshape(height // 2, width // 2)
    v = planes[luma_size + chroma_size:].reshape(height // 2, width // 2)

    # Nearest-neighbour 2x upsample of each chroma plane
    u_full = u.repeat(2, axis=0).repeat(2, axis=1)
    v_full = v.repeat(2, axis=0).repeat(2, axis=1)

    try:
        image = Image.merge(
            "YCbCr",
            (
                Image.fromarray(y),
                Image.fromarray(np.ascontiguousarray(u_full)),
                Image.fromarray(np.ascontiguousarray(v_full)),
            ),
        )
        out = io.BytesIO()
        image.save(out, format="JPEG", quality=quality)
    except (OSError, ValueError) as exc:
        raise EncodeFailure(f"JPEG encoding failed: {exc}") from exc

    jpeg = out.getvalue()
    logger.debug("Encoded %dx%d frame -> %d bytes JPEG", width, height, len(jpeg))
    return jpeg
