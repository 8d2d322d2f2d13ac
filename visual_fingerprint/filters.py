"""
Pixel-level filter pipeline.

Every filter exists at two levels:

    buffer level   PixelBuffer -> PixelBuffer, pure numpy
    byte level     encoded bytes -> decode -> filter -> encode -> bytes

The byte-level wrappers never raise on bad image data; an undecodable
payload or a failed encode yields b"". Invalid parameters (even kernel
size, unknown filter name) are programmer errors and raise ValueError.

Border policies differ and are part of the output contract:
the mean filter shrinks its window at the image edge, while the generic
convolution leaves a zero margin where the kernel does not fit.
"""

import os
import logging
from typing import Callable, Optional, Sequence

import numpy as np

from .pixel_buffer import PixelBuffer
from .preprocessing import (
    decode_image, encode_image, rgb_to_hsv, hsv_to_rgb, rgb_planes,
)

logger = logging.getLogger(__name__)

# ITU-R 601 style luma weights
RED_LEVEL = np.float32(0.30)
GREEN_LEVEL = np.float32(0.59)
BLUE_LEVEL = np.float32(0.11)

SOBEL_X = np.array([[-1, 0, 1], [-2, 0, 2], [-1, 0, 1]], dtype=np.float32)
SOBEL_Y = np.array([[-1, -2, -1], [0, 0, 0], [1, 2, 1]], dtype=np.float32)

HISTOGRAM_HEIGHT = int(os.environ.get("HISTOGRAM_RENDER_HEIGHT", "200"))
HUE_BUCKETS = 360
SATURATION_BUCKETS = 101


def _luma(buffer: PixelBuffer) -> np.ndarray:
    r, g, b = rgb_planes(buffer)
    return (r * RED_LEVEL + g * GREEN_LEVEL + b * BLUE_LEVEL).astype(np.float32)


def _hue_degrees(hue: np.ndarray) -> np.ndarray:
    degrees = np.trunc(np.degrees(hue.astype(np.float64))).astype(np.int64)
    return np.clip(degrees, 0, HUE_BUCKETS - 1)


def to_grayscale(buffer: PixelBuffer) -> PixelBuffer:
    """
    Replace R, G and B with the rounded luma 0.30R + 0.59G + 0.11B.

    Luma is rounded to whole sample values, so applying the filter to
    an already gray buffer returns the same samples.
    """
    if buffer.is_empty:
        return PixelBuffer.empty()
    gray = np.rint(_luma(buffer)).astype(np.float32)
    return PixelBuffer([gray, gray.copy(), gray.copy()])


def _window_bounds(length: int, radius: int):
    positions = np.arange(length)
    lower = np.clip(positions - radius, 0, length)
    upper = np.clip(positions + radius + 1, 0, length)
    return lower, upper


def _clipped_window_mean(plane: np.ndarray, radius: int) -> np.ndarray:
    h, w = plane.shape
    integral = np.zeros((h + 1, w + 1), dtype=np.float64)
    integral[1:, 1:] = plane.astype(np.float64).cumsum(axis=0).cumsum(axis=1)

    y0, y1 = _window_bounds(h, radius)
    x0, x1 = _window_bounds(w, radius)

    total = (integral[np.ix_(y1, x1)] - integral[np.ix_(y0, x1)]
             - integral[np.ix_(y1, x0)] + integral[np.ix_(y0, x0)])
    count = np.outer(y1 - y0, x1 - x0)
    return (total / count).astype(np.float32)


def apply_mean(buffer: PixelBuffer, size: int) -> PixelBuffer:
    """
    Unweighted mean over a square window centred on each pixel.

    The window spans ``size // 2`` pixels on each side. Neighbours that
    fall outside the image are excluded from both the sum and the
    count, so edge pixels average over fewer samples.

    Args:
        buffer: Source buffer; the three colour bands are filtered.
        size: Window side, at least 1.
    """
    if size < 1:
        raise ValueError(f"Mean filter size must be >= 1, got {size}")
    if buffer.is_empty:
        return PixelBuffer.empty()
    radius = size // 2
    return PixelBuffer([_clipped_window_mean(plane, radius)
                        for plane in rgb_planes(buffer)])


def convolve(plane: np.ndarray, kernel: Sequence[Sequence[float]]) -> np.ndarray:
    """
    Correlate a 2-D plane with an odd-sized square kernel.

    ``kernel[dy][dx]`` weights the pixel at offset (dx, dy) from the
    centre. Only positions where the whole kernel fits are computed; the
    margin of ``(k - 1) / 2`` pixels stays at zero.

    The running sum is an integer: after each tap (columns outer, rows
    inner) the float32 partial sum is truncated toward zero, so results
    on fractional input are reproducible across runs and platforms.
    """
    k = np.asarray(kernel, dtype=np.float32)
    if k.ndim != 2 or k.shape[0] != k.shape[1] or k.shape[0] % 2 == 0:
        raise ValueError(f"Kernel must be square with odd size, got {k.shape}")

    plane = np.asarray(plane, dtype=np.float32)
    h, w = plane.shape
    n = k.shape[0]
    radius = (n - 1) // 2
    output = np.zeros((h, w), dtype=np.float32)
    if h < n or w < n:
        return output

    inner_h, inner_w = h - 2 * radius, w - 2 * radius
    acc = np.zeros((inner_h, inner_w), dtype=np.float32)
    for dx in range(n):
        for dy in range(n):
            tap = plane[dy:dy + inner_h, dx:dx + inner_w] * k[dy, dx]
            acc = np.trunc(acc + tap)

    output[radius:h - radius, radius:w - radius] = acc
    return output


def gradient_magnitude(buffer: PixelBuffer) -> PixelBuffer:
    """Sobel gradient magnitude of the luma plane, clamped to [0, 255]."""
    if buffer.is_empty:
        return PixelBuffer.empty()
    gray = _luma(buffer)
    gx = convolve(gray, SOBEL_X).astype(np.float64)
    gy = convolve(gray, SOBEL_Y).astype(np.float64)
    magnitude = np.floor(np.sqrt(gx ** 2 + gy ** 2))
    return PixelBuffer([np.clip(magnitude, 0, 255).astype(np.float32)])


def rotate_hue(buffer: PixelBuffer, hue_degrees: int) -> PixelBuffer:
    """
    Overwrite every pixel's hue with ``hue_degrees``.

    Saturation and value are preserved, producing a single-hue recolouring
    of the original. Output samples are truncated to whole values.
    """
    if buffer.is_empty:
        return PixelBuffer.empty()
    _, saturation, value = rgb_to_hsv(*rgb_planes(buffer))
    hue = np.float32((np.pi / 180.0) * hue_degrees)
    r, g, b = hsv_to_rgb(hue, saturation, value)
    return PixelBuffer([np.trunc(c) for c in (r, g, b)])


def render_hue_histogram(buffer: PixelBuffer,
                         height: int = HISTOGRAM_HEIGHT) -> PixelBuffer:
    """
    Render a 360-bucket hue histogram as a bar chart.

    Counts are unweighted and scaled so the fullest bucket reaches the
    top of the canvas. The bottom row is always a 255 baseline.

    Returns:
        Single-band buffer of size 360 x height.
    """
    if buffer.is_empty:
        return PixelBuffer.empty()

    hue, _, _ = rgb_to_hsv(*rgb_planes(buffer))
    counts = np.bincount(_hue_degrees(hue).ravel(),
                         minlength=HUE_BUCKETS).astype(np.float32)

    factor = np.float32(height) / np.float32(counts.max())
    bars = np.trunc(counts * factor).astype(np.int64)

    canvas = np.zeros((height, HUE_BUCKETS), dtype=np.float32)
    rows = np.arange(height)[:, None]
    canvas[rows >= height - bars[None, :]] = 255
    canvas[height - 1, :] = 255
    return PixelBuffer([canvas])


def render_hue_saturation_histogram(buffer: PixelBuffer) -> PixelBuffer:
    """
    Render raw hue-degree × saturation-percent counts as a gray image.

    Each cell is clamped to 255; unlike the 1-D render there is no
    scaling by the maximum count.

    Returns:
        Single-band buffer, 360 wide (hue) and 101 high (saturation).
    """
    if buffer.is_empty:
        return PixelBuffer.empty()

    hue, saturation, _ = rgb_to_hsv(*rgb_planes(buffer))
    hue_deg = _hue_degrees(hue).ravel()
    sat_pct = np.clip(np.trunc(saturation * np.float32(100)).astype(np.int64),
                      0, SATURATION_BUCKETS - 1).ravel()

    flat = sat_pct * HUE_BUCKETS + hue_deg
    counts = np.bincount(flat, minlength=SATURATION_BUCKETS * HUE_BUCKETS)
    grid = np.minimum(counts, 255).reshape(SATURATION_BUCKETS, HUE_BUCKETS)
    return PixelBuffer([grid.astype(np.float32)])


def _filter_bytes(data: bytes, operation: Callable[[PixelBuffer], PixelBuffer],
                  name: str) -> bytes:
    buffer = decode_image(data)
    if buffer.is_empty:
        logger.warning(f"{name} filter: input could not be decoded")
        return b""
    result = operation(buffer)
    encoded = encode_image(result)
    logger.debug(f"{name} filter: {buffer!r} -> {len(encoded)} bytes")
    return encoded


def gray_filter(data: bytes) -> bytes:
    return _filter_bytes(data, to_grayscale, "Gray")


def mean_filter(data: bytes, size: int) -> bytes:
    if size < 1:
        raise ValueError(f"Mean filter size must be >= 1, got {size}")
    return _filter_bytes(data, lambda b: apply_mean(b, size), "Mean")


def sobel_filter(data: bytes) -> bytes:
    return _filter_bytes(data, gradient_magnitude, "Sobel")


def hue_filter(data: bytes, hue_degrees: int) -> bytes:
    return _filter_bytes(data, lambda b: rotate_hue(b, hue_degrees), "Color")


def hue_histogram(data: bytes) -> bytes:
    return _filter_bytes(data, render_hue_histogram, "Histogram")


def hue_saturation_histogram(data: bytes) -> bytes:
    return _filter_bytes(data, render_hue_saturation_histogram, "Histogram2D")


FILTERS = {
    "Gray": gray_filter,
    "Histogram": hue_histogram,
    "Histogram2D": hue_saturation_histogram,
    "Sobel": sobel_filter,
}

PARAM_FILTERS = {
    "Mean": mean_filter,
    "Color": hue_filter,
}


def apply_filter(data: bytes, name: str, param: Optional[int] = None) -> bytes:
    """
    Apply a filter by its product name.

    Args:
        data: Encoded source image.
        name: One of Gray, Histogram, Histogram2D, Sobel (no parameter)
            or Mean, Color (integer parameter).
        param: Window size for Mean, hue in degrees for Color.

    Returns:
        Encoded filtered image, or b"" if decoding/encoding failed.

    Raises:
        ValueError: Unknown filter name or missing parameter.
    """
    if name in FILTERS:
        return FILTERS[name](data)
    if name in PARAM_FILTERS:
        if param is None:
            raise ValueError(f"Filter {name} requires a parameter")
        return PARAM_FILTERS[name](data, int(param))
    raise ValueError(f"Unknown filter: {name}")
