"""
Colour histogram descriptors and FAISS-based similarity search.

Two fixed-shape fingerprints are extracted from every image:

    RGB       10×10×10 bins over [0, 255] per channel
    Hue/Sat   12×12 bins over hue [0, 2π) × saturation [0, 1]

Each pixel contributes alpha/255 to its bin, so partially transparent
pixels count fractionally. The flattened vector is L2-normalized, which
makes the descriptor independent of image resolution. Bin counts are
configurable via environment variables (RGB_HIST_BINS, HS_HIST_BINS) but
the defaults must stay fixed for persisted descriptors to remain
comparable.
"""

import os
import logging
from typing import Sequence, Tuple

import faiss
import numpy as np

from .pixel_buffer import PixelBuffer
from .preprocessing import (
    decode_image, rgb_to_hsv, rgb_planes, alpha_weights, TWO_PI,
)

logger = logging.getLogger(__name__)

RGB_BINS = int(os.environ.get("RGB_HIST_BINS", "10"))
HS_BINS = int(os.environ.get("HS_HIST_BINS", "12"))
RGB_HIST_DIM = RGB_BINS ** 3
HS_HIST_DIM = HS_BINS ** 2


class HistogramLayout:
    """
    Shape and per-dimension value range of a multi-dimensional histogram.

    A raw sample maps to bin ``int((v - min) / (max - min) * bins)``,
    clamped to the last bin so that ``v == max`` stays in range.
    """

    def __init__(self, bins: Sequence[int], ranges: Sequence[Tuple[float, float]]):
        if len(bins) != len(ranges):
            raise ValueError("bins and ranges must have the same length")
        self.bins = tuple(int(b) for b in bins)
        self.ranges = tuple((float(lo), float(hi)) for lo, hi in ranges)

    @property
    def size(self) -> int:
        return int(np.prod(self.bins))

    def dimension_index(self, dimension: int, values: np.ndarray) -> np.ndarray:
        lo, hi = self.ranges[dimension]
        n = self.bins[dimension]
        values = np.nan_to_num(np.asarray(values, dtype=np.float64))
        index = np.trunc((values - lo) / (hi - lo) * n).astype(np.int64)
        return np.clip(index, 0, n - 1)

    def accumulate(self, samples: Sequence[np.ndarray],
                   weights: np.ndarray) -> np.ndarray:
        """Weighted count of samples (one array per dimension) into bins."""
        coords = [self.dimension_index(d, s).ravel()
                  for d, s in enumerate(samples)]
        flat = np.ravel_multi_index(coords, self.bins)
        return np.bincount(flat, weights=np.ravel(weights).astype(np.float64),
                           minlength=self.size)


RGB_LAYOUT = HistogramLayout([RGB_BINS] * 3, [(0, 255)] * 3)
HS_LAYOUT = HistogramLayout([HS_BINS] * 2, [(0, float(TWO_PI)), (0, 1.0)])


def normalize_l2(hist: np.ndarray) -> np.ndarray:
    """Divide by the Euclidean norm; an all-zero vector is left as is."""
    norm = np.linalg.norm(hist)
    if norm > 0:
        hist = hist / norm
    return hist


def compute_rgb_histogram(buffer: PixelBuffer) -> np.ndarray:
    """
    Extract the alpha-weighted, L2-normalized RGB histogram.

    Args:
        buffer: RGB or RGBA PixelBuffer. A missing alpha band counts as
            fully opaque.

    Returns:
        Float64 vector of RGB_BINS**3 values, or an empty vector when the
        buffer is empty.
    """
    if buffer.is_empty:
        return np.empty(0, dtype=np.float64)

    hist = RGB_LAYOUT.accumulate(rgb_planes(buffer), alpha_weights(buffer))
    return normalize_l2(hist)


def compute_hsv_histogram(buffer: PixelBuffer) -> np.ndarray:
    """
    Extract the alpha-weighted, L2-normalized hue/saturation histogram.

    Returns:
        Float64 vector of HS_BINS**2 values (hue major), or an empty
        vector when the buffer is empty.
    """
    if buffer.is_empty:
        return np.empty(0, dtype=np.float64)

    hue, saturation, _ = rgb_to_hsv(*rgb_planes(buffer))
    hist = HS_LAYOUT.accumulate([hue, saturation], alpha_weights(buffer))
    return normalize_l2(hist)


def extract_histograms(data: bytes) -> Tuple[np.ndarray, np.ndarray]:
    """
    Decode image bytes once and compute both descriptors.

    Returns:
        Tuple of (hsv_histogram, rgb_histogram). Both are empty when the
        bytes are empty or undecodable.
    """
    buffer = decode_image(data)
    if buffer.is_empty:
        logger.debug("No pixels decoded, returning empty descriptors")
    return compute_hsv_histogram(buffer), compute_rgb_histogram(buffer)


def search_faiss_index(index: faiss.Index,
                       query_histogram: np.ndarray,
                       k: int = 20,
                       nprobe: int = 20) -> Tuple[np.ndarray, np.ndarray]:
    """
    Search a FAISS index for nearest neighbors to a query histogram.

    FAISS reports squared L2 distances; they are converted back to plain
    Euclidean distances so they can be compared with rank() output.

    Args:
        index: Loaded FAISS index.
        query_histogram: Query descriptor (same shape as indexed vectors).
        k: Number of neighbors to retrieve.
        nprobe: Number of cluster probes (for IVF indexes).

    Returns:
        Tuple of (distances, indices) arrays, each shape (1, k).

    Raises:
        ValueError: If query dimensions don't match index.
    """
    query = np.asarray(query_histogram, dtype=np.float32).reshape(1, -1)

    if query.shape[1] != index.d:
        raise ValueError(
            f"Query dimension {query.shape[1]} doesn't match "
            f"index dimension {index.d}"
        )

    if hasattr(index, 'nprobe'):
        index.nprobe = nprobe

    k = min(k, index.ntotal)
    if k <= 0:
        return np.empty((1, 0), dtype=np.float32), np.empty((1, 0), dtype=np.int64)
    distances, indices = index.search(query, k)

    return np.sqrt(np.maximum(distances, 0)), indices
