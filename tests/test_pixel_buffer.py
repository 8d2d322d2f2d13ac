"""Tests for the planar PixelBuffer container."""

import numpy as np
import pytest

from visual_fingerprint.pixel_buffer import PixelBuffer


class TestPixelBuffer:
    """Tests for construction, shape and conversion."""

    def test_reshape_allocates_zero_planes(self):
        buf = PixelBuffer.reshape(7, 3, num_bands=4)
        assert buf.width == 7
        assert buf.height == 3
        assert buf.num_bands == 4
        assert all(b.dtype == np.float32 for b in buf.bands)
        assert not np.any(buf.to_array())

    def test_from_array_round_trip(self, red_square_image):
        buf = PixelBuffer.from_array(red_square_image)
        assert buf.num_bands == 3
        assert np.array_equal(buf.to_array(), red_square_image.astype(np.float32))

    def test_grayscale_array_gives_one_band(self):
        buf = PixelBuffer.from_array(np.ones((4, 5), dtype=np.uint8))
        assert buf.num_bands == 1
        assert (buf.width, buf.height) == (5, 4)

    def test_mismatched_bands_rejected(self):
        with pytest.raises(ValueError, match="shape"):
            PixelBuffer([np.zeros((2, 2)), np.zeros((3, 2))])

    def test_empty_buffer(self):
        buf = PixelBuffer.empty()
        assert buf.is_empty
        assert buf.width == 0 and buf.height == 0

    def test_copy_is_independent(self):
        buf = PixelBuffer.reshape(2, 2)
        clone = buf.copy()
        clone.band(0)[0, 0] = 9
        assert buf.band(0)[0, 0] == 0
