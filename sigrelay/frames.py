"""Raw video frame helpers."""
from __future__ import annotations

import numpy


def _as_rgb_array(
    rgb: bytes | numpy.ndarray,
    width: int,
    height: int,
) -> numpy.ndarray:
    if width <= 0 or height <= 0 or width % 2 or height % 2:
        raise ValueError(
            f'Frame dimensions must be positive and even, got '
            f'{width}x{height}.',
        )
    array = (
        numpy.asarray(rgb, dtype=numpy.uint8)
        if isinstance(rgb, numpy.ndarray)
        else numpy.frombuffer(rgb, dtype=numpy.uint8)
    )
    if array.size != width * height * 3:
        raise ValueError(
            f'Expected {width * height * 3} bytes for a {width}x{height} '
            f'RGB frame but got {array.size}.',
        )
    return array.reshape(height, width, 3)


def rgb_to_yuv420p(
    rgb: bytes | numpy.ndarray,
    width: int,
    height: int,
) -> bytes:
    """Convert a packed RGB24 frame to planar YUV420p.

    Uses the BT.601 limited range coefficients. Chroma planes are
    subsampled by averaging each 2x2 block of pixels.

    Args:
        rgb: Packed RGB pixels in row major order.
        width: Frame width in pixels. Must be even.
        height: Frame height in pixels. Must be even.

    Returns:
        The Y, U, and V planes concatenated.

    Raises:
        ValueError: If the dimensions are not even or do not match the
            size of `rgb`.
    """
    pixels = _as_rgb_array(rgb, width, height).astype(numpy.float32)
    r, g, b = pixels[..., 0], pixels[..., 1], pixels[..., 2]

    y = 0.257 * r + 0.504 * g + 0.098 * b + 16
    u = -0.148 * r - 0.291 * g + 0.439 * b + 128
    v = 0.439 * r - 0.368 * g - 0.071 * b + 128

    def _subsample(plane: numpy.ndarray) -> numpy.ndarray:
        blocks = plane.reshape(height // 2, 2, width // 2, 2)
        return blocks.mean(axis=(1, 3))

    planes = (y, _subsample(u), _subsample(v))
    return b''.join(
        numpy.clip(numpy.rint(plane), 0, 255).astype(numpy.uint8).tobytes()
        for plane in planes
    )


def gradient_frame(width: int, height: int, frame_index: int = 0) -> bytes:
    """Generate a moving gradient RGB24 frame for smoke testing."""
    x = numpy.arange(width, dtype=numpy.int64)[numpy.newaxis, :]
    y = numpy.arange(height, dtype=numpy.int64)[:, numpy.newaxis]
    frame = numpy.empty((height, width, 3), dtype=numpy.uint8)
    frame[..., 0] = (x + 4 * frame_index) % 256
    frame[..., 1] = (y + 2 * frame_index) % 256
    frame[..., 2] = 128
    return frame.tobytes()

