"""Tests for histogram extraction and FAISS search."""

import numpy as np
import faiss
import pytest

from visual_fingerprint.histograms import (
    compute_rgb_histogram, compute_hsv_histogram, extract_histograms,
    normalize_l2, search_faiss_index, HistogramLayout,
    RGB_HIST_DIM, HS_HIST_DIM,
)
from visual_fingerprint.pixel_buffer import PixelBuffer
from visual_fingerprint.preprocessing import decode_image


class TestRgbHistogram:
    """Tests for the 10x10x10 RGB histogram."""

    def test_output_shape(self, red_square_buffer):
        hist = compute_rgb_histogram(red_square_buffer)
        assert hist.shape == (RGB_HIST_DIM,)

    def test_l2_normalized(self, noise_buffer):
        hist = compute_rgb_histogram(noise_buffer)
        assert np.linalg.norm(hist) == pytest.approx(1.0, abs=1e-6)

    def test_non_negative(self, noise_buffer):
        assert np.all(compute_rgb_histogram(noise_buffer) >= 0)

    def test_solid_color_single_bin(self, solid_red_image):
        hist = compute_rgb_histogram(PixelBuffer.from_array(solid_red_image))
        # r=255 clamps into bin 9; g=b=0 fall into bin 0
        assert hist[900] == pytest.approx(1.0)
        assert np.count_nonzero(hist) == 1

    def test_bin_layout_is_row_major(self, red_square_buffer):
        hist = compute_rgb_histogram(red_square_buffer)
        # (200, 30, 30) -> bins (7, 1, 1); white -> (9, 9, 9)
        assert np.flatnonzero(hist).tolist() == [711, 999]

    def test_empty_buffer(self):
        hist = compute_rgb_histogram(PixelBuffer.empty())
        assert hist.size == 0


class TestHsvHistogram:
    """Tests for the 12x12 hue/saturation histogram."""

    def test_output_shape(self, red_square_buffer):
        hist = compute_hsv_histogram(red_square_buffer)
        assert hist.shape == (HS_HIST_DIM,)

    def test_l2_normalized(self, noise_buffer):
        hist = compute_hsv_histogram(noise_buffer)
        assert np.linalg.norm(hist) == pytest.approx(1.0, abs=1e-6)

    def test_pure_red_bin(self, solid_red_image):
        hist = compute_hsv_histogram(PixelBuffer.from_array(solid_red_image))
        # hue 0 -> bin 0; saturation 1.0 clamps into bin 11
        assert hist[11] == pytest.approx(1.0)
        assert np.count_nonzero(hist) == 1

    def test_gray_lands_in_first_bin(self):
        gray = np.full((5, 5, 3), 128, dtype=np.uint8)
        hist = compute_hsv_histogram(PixelBuffer.from_array(gray))
        assert hist[0] == pytest.approx(1.0)

    def test_different_images_different_histograms(self, red_square_buffer,
                                                     blue_circle_image):
        hist_red = compute_hsv_histogram(red_square_buffer)
        hist_blue = compute_hsv_histogram(PixelBuffer.from_array(blue_circle_image))
        assert np.linalg.norm(hist_red - hist_blue) > 0.1

    def test_no_nan_or_inf(self, noise_buffer):
        hist = compute_hsv_histogram(noise_buffer)
        assert np.all(np.isfinite(hist))


class TestAlphaWeighting:
    """Alpha scales each pixel's contribution."""

    def test_partial_alpha_scales_bins(self, half_transparent_png):
        hist = compute_rgb_histogram(decode_image(half_transparent_png))
        red_bin, blue_bin = 711, 117
        assert hist[blue_bin] / hist[red_bin] == pytest.approx(0.2, rel=1e-6)

    def test_fully_transparent_pixels_ignored(self):
        img = np.zeros((4, 4, 4), dtype=np.float32)
        img[:, :2] = [255, 0, 0, 255]
        img[:, 2:] = [0, 0, 255, 0]
        hist = compute_hsv_histogram(PixelBuffer.from_array(img))
        assert np.count_nonzero(hist) == 1


class TestExtractHistograms:

    def test_from_bytes(self, red_square_png):
        hsv, rgb = extract_histograms(red_square_png)
        assert hsv.shape == (HS_HIST_DIM,)
        assert rgb.shape == (RGB_HIST_DIM,)

    def test_undecodable_bytes(self):
        hsv, rgb = extract_histograms(b"\x00\x01\x02")
        assert hsv.size == 0 and rgb.size == 0


class TestHistogramLayout:

    def test_upper_bound_clamped(self):
        layout = HistogramLayout([4], [(0, 1.0)])
        idx = layout.dimension_index(0, np.array([0.0, 0.24, 0.25, 0.99, 1.0]))
        assert idx.tolist() == [0, 0, 1, 3, 3]

    def test_zero_vector_left_unchanged(self):
        zero = np.zeros(8)
        assert np.array_equal(normalize_l2(zero), zero)


class TestSearchFaissIndex:
    """Tests for FAISS index search."""

    @pytest.fixture
    def small_index(self):
        """Create a small FAISS index with 10 random vectors."""
        rng = np.random.RandomState(42)
        vectors = rng.rand(10, HS_HIST_DIM).astype(np.float32)
        index = faiss.IndexFlatL2(HS_HIST_DIM)
        index.add(vectors)
        return index, vectors

    def test_search_returns_correct_shape(self, small_index):
        index, vectors = small_index
        distances, indices = search_faiss_index(index, vectors[0], k=5)
        assert distances.shape == (1, 5)
        assert indices.shape == (1, 5)

    def test_self_is_nearest(self, small_index):
        index, vectors = small_index
        distances, indices = search_faiss_index(index, vectors[3], k=3)
        assert indices[0][0] == 3
        assert distances[0][0] == pytest.approx(0.0, abs=1e-3)

    def test_distances_are_euclidean(self, small_index):
        index, vectors = small_index
        distances, indices = search_faiss_index(index, vectors[0], k=2)
        expected = np.linalg.norm(vectors[0] - vectors[indices[0][1]])
        assert distances[0][1] == pytest.approx(expected, rel=1e-4)

    def test_k_larger_than_index(self, small_index):
        index, vectors = small_index
        distances, indices = search_faiss_index(index, vectors[0], k=100)
        assert indices.shape == (1, 10)

    def test_dimension_mismatch_raises(self, small_index):
        index, _ = small_index
        with pytest.raises(ValueError, match="dimension"):
            search_faiss_index(index, np.zeros(10, dtype=np.float32))
