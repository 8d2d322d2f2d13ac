"""
In-memory multi-band raster shared by every analysis stage.

A PixelBuffer holds one float32 plane per channel. Samples live in
[0, 255] for colour bands; derived colour spaces (hue in radians,
saturation in [0, 1]) reuse the same container. A zero-size buffer is the
sentinel returned when decoding fails, so downstream stages can compose
on it without special cases.
"""

import logging
from typing import List, Sequence

import numpy as np

logger = logging.getLogger(__name__)


class PixelBuffer:
    """
    Planar float32 image.

    Args:
        bands: Sequence of 2-D arrays, all with the same (height, width).
    """

    def __init__(self, bands: Sequence[np.ndarray] = ()):
        planes = [np.asarray(b, dtype=np.float32) for b in bands]
        for plane in planes:
            if plane.ndim != 2:
                raise ValueError(f"Band must be 2-D, got shape {plane.shape}")
        if planes and any(p.shape != planes[0].shape for p in planes[1:]):
            shapes = [p.shape for p in planes]
            raise ValueError(f"All bands must share one shape, got {shapes}")
        self._bands: List[np.ndarray] = planes

    @classmethod
    def empty(cls) -> "PixelBuffer":
        return cls()

    @classmethod
    def reshape(cls, width: int, height: int, num_bands: int = 3) -> "PixelBuffer":
        """Allocate a zero-filled buffer of the given size."""
        return cls([np.zeros((height, width), dtype=np.float32)
                    for _ in range(num_bands)])

    @classmethod
    def from_array(cls, image_np: np.ndarray) -> "PixelBuffer":
        """Split an HxW or HxWxC array into planes."""
        if image_np.ndim == 2:
            return cls([image_np])
        return cls([image_np[:, :, c] for c in range(image_np.shape[2])])

    @property
    def width(self) -> int:
        return int(self._bands[0].shape[1]) if self._bands else 0

    @property
    def height(self) -> int:
        return int(self._bands[0].shape[0]) if self._bands else 0

    @property
    def num_bands(self) -> int:
        return len(self._bands)

    @property
    def bands(self) -> List[np.ndarray]:
        return list(self._bands)

    @property
    def is_empty(self) -> bool:
        return self.width == 0 or self.height == 0

    def band(self, index: int) -> np.ndarray:
        return self._bands[index]

    def to_array(self) -> np.ndarray:
        """Interleave planes into an HxWxC float32 array."""
        if not self._bands:
            return np.zeros((0, 0, 0), dtype=np.float32)
        return np.stack(self._bands, axis=-1)

    def copy(self) -> "PixelBuffer":
        return PixelBuffer([b.copy() for b in self._bands])

    def __repr__(self) -> str:
        return (f"PixelBuffer(width={self.width}, height={self.height}, "
                f"bands={self.num_bands})")
