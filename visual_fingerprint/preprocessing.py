"""
Codec boundary and colour-space helpers for the fingerprint pipeline.

Decoding turns compressed JPEG/PNG bytes into an RGBA PixelBuffer and
encoding turns a buffer back into compressed bytes. Both directions treat
failure as data, not control flow: a bad payload decodes to an empty
buffer and a failed encode yields b"".

The HSV conversion follows the sector formula used for the persisted
descriptors (hue in radians, saturation in [0, 1], value = max channel),
computed in float32 so bin boundaries stay stable across runs.
"""

import os
import logging
from typing import Tuple

import cv2
import numpy as np

from .pixel_buffer import PixelBuffer

logger = logging.getLogger(__name__)

OUTPUT_EXT = os.environ.get("FILTER_OUTPUT_EXT", ".jpg")

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
JPEG_SIGNATURE = b"\xff\xd8\xff"

TWO_PI = np.float32(2.0 * np.pi)
SIXTY_DEGREES = np.float32(np.pi / 3.0)


def normalize_image(image_np: np.ndarray) -> np.ndarray:
    """Ensure image is uint8."""
    if image_np.dtype == np.uint16:
        return (image_np // 257).astype(np.uint8)
    if image_np.dtype != np.uint8:
        if image_np.max() <= 1.0:
            image_np = (image_np * 255).astype(np.uint8)
        else:
            image_np = image_np.astype(np.uint8)
    return image_np


def to_uint8(image_np: np.ndarray) -> np.ndarray:
    """Round float samples to the nearest integer and clip to [0, 255]."""
    return np.clip(np.rint(image_np), 0, 255).astype(np.uint8)


def guess_media_type(data: bytes) -> str:
    """Sniff the media type of an encoded image from its magic bytes."""
    if data.startswith(PNG_SIGNATURE):
        return "image/png"
    if data.startswith(JPEG_SIGNATURE):
        return "image/jpeg"
    return "application/octet-stream"


def decode_image(data: bytes) -> PixelBuffer:
    """
    Decode compressed image bytes into a 4-band RGBA PixelBuffer.

    Sources without transparency get a fully opaque alpha band (255), so
    every consumer can weight by alpha unconditionally.

    Args:
        data: Encoded JPEG or PNG bytes.

    Returns:
        RGBA PixelBuffer, or an empty buffer if the bytes are empty or
        cannot be decoded.
    """
    if not data:
        return PixelBuffer.empty()

    try:
        raw = cv2.imdecode(np.frombuffer(data, dtype=np.uint8),
                           cv2.IMREAD_UNCHANGED)
        if raw is None:
            logger.warning(f"Could not decode {len(data)} bytes as an image")
            return PixelBuffer.empty()

        raw = normalize_image(raw)

        if raw.ndim == 2:
            rgba = cv2.cvtColor(raw, cv2.COLOR_GRAY2RGBA)
        elif raw.shape[2] == 3:
            rgba = cv2.cvtColor(raw, cv2.COLOR_BGR2RGBA)
        elif raw.shape[2] == 4:
            rgba = cv2.cvtColor(raw, cv2.COLOR_BGRA2RGBA)
        else:
            logger.warning(f"Unsupported channel count: {raw.shape[2]}")
            return PixelBuffer.empty()

        return PixelBuffer.from_array(rgba.astype(np.float32))

    except Exception as e:
        logger.error(f"Image decoding failed: {e}")
        return PixelBuffer.empty()


def encode_image(buffer: PixelBuffer, ext: str = OUTPUT_EXT) -> bytes:
    """
    Encode a PixelBuffer to compressed bytes.

    One-band buffers are written as grayscale; otherwise the first three
    bands are taken as RGB. Alpha is kept only for PNG output.

    Returns:
        Encoded bytes, or b"" on failure.
    """
    if buffer.is_empty:
        return b""

    try:
        image = to_uint8(buffer.to_array())
        if buffer.num_bands == 1:
            image = image[:, :, 0]
        elif buffer.num_bands >= 4 and ext.lower() == ".png":
            image = cv2.cvtColor(image[:, :, :4], cv2.COLOR_RGBA2BGRA)
        else:
            image = cv2.cvtColor(np.ascontiguousarray(image[:, :, :3]),
                                 cv2.COLOR_RGB2BGR)

        ok, encoded = cv2.imencode(ext, image)
        if not ok:
            logger.error(f"Image encoding to {ext} failed")
            return b""
        return encoded.tobytes()

    except Exception as e:
        logger.error(f"Image encoding failed: {e}")
        return b""


def rgb_to_hsv(r: np.ndarray, g: np.ndarray,
               b: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Convert RGB planes to hue, saturation and value planes.

    Hue is in radians [0, 2π), saturation in [0, 1] and value is the
    maximum channel, still on the [0, 255] scale. Achromatic pixels
    (all channels equal) get hue 0.
    """
    r = np.asarray(r, dtype=np.float32)
    g = np.asarray(g, dtype=np.float32)
    b = np.asarray(b, dtype=np.float32)

    max_c = np.maximum(np.maximum(r, g), b)
    min_c = np.minimum(np.minimum(r, g), b)
    delta = max_c - min_c

    saturation = np.zeros_like(max_c)
    np.divide(delta, max_c, out=saturation, where=max_c != 0)

    chromatic = delta != 0
    safe_delta = np.where(chromatic, delta, np.float32(1.0))
    hue = np.where(
        r == max_c, (g - b) / safe_delta,
        np.where(g == max_c, 2 + (b - r) / safe_delta, 4 + (r - g) / safe_delta),
    ).astype(np.float32)
    hue *= SIXTY_DEGREES
    hue = np.where(hue < 0, hue + TWO_PI, hue)
    hue = np.where(chromatic, hue, np.float32(0.0)).astype(np.float32)

    return hue, saturation, max_c


def hsv_to_rgb(h: np.ndarray, s: np.ndarray,
               v: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Inverse of rgb_to_hsv (hue in radians, value on the [0, 255] scale)."""
    h = np.asarray(h, dtype=np.float32)
    s = np.asarray(s, dtype=np.float32)
    v = np.asarray(v, dtype=np.float32)
    h, s, v = np.broadcast_arrays(h, s, v)

    sector = h / SIXTY_DEGREES
    sector_int = np.trunc(sector).astype(np.int32)
    remainder = sector - sector_int

    p = v * (1 - s)
    q = v * (1 - s * remainder)
    t = v * (1 - s * (1 - remainder))

    conditions = [sector_int < 1, sector_int < 2, sector_int < 3,
                  sector_int < 4, sector_int < 5]
    r = np.select(conditions, [v, q, p, p, t], default=v)
    g = np.select(conditions, [t, v, v, q, p], default=p)
    b = np.select(conditions, [p, p, t, v, v], default=q)

    gray = s == 0
    r = np.where(gray, v, r).astype(np.float32)
    g = np.where(gray, v, g).astype(np.float32)
    b = np.where(gray, v, b).astype(np.float32)
    return r, g, b


def rgb_planes(buffer: PixelBuffer) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Red, green and blue planes; a single-band buffer is read as gray."""
    if buffer.num_bands < 3:
        gray = buffer.band(0)
        return gray, gray, gray
    return buffer.band(0), buffer.band(1), buffer.band(2)


def buffer_to_hsv(buffer: PixelBuffer) -> PixelBuffer:
    """Convert the RGB bands of a buffer into an H, S, V buffer."""
    if buffer.is_empty:
        return PixelBuffer.empty()
    return PixelBuffer(rgb_to_hsv(*rgb_planes(buffer)))


def alpha_weights(buffer: PixelBuffer) -> np.ndarray:
    """Per-pixel histogram weight alpha/255 (1.0 where no alpha band)."""
    if buffer.num_bands >= 4:
        return buffer.band(3).astype(np.float64) / 255.0
    return np.ones((buffer.height, buffer.width), dtype=np.float64)
