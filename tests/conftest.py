"""Shared test fixtures for visual fingerprint tests."""

import numpy as np
import cv2
import pytest

from visual_fingerprint.pixel_buffer import PixelBuffer


def encode_png(image_rgb: np.ndarray) -> bytes:
    """Encode an RGB or RGBA uint8 array as PNG bytes."""
    if image_rgb.shape[2] == 4:
        bgr = cv2.cvtColor(image_rgb, cv2.COLOR_RGBA2BGRA)
    else:
        bgr = cv2.cvtColor(image_rgb, cv2.COLOR_RGB2BGR)
    ok, buf = cv2.imencode(".png", bgr)
    assert ok
    return buf.tobytes()


class FakeBackend:
    """In-process stand-in for the detector network."""

    def __init__(self, outputs=None, error=None):
        self.outputs = outputs if outputs is not None else []
        self.error = error
        self.calls = 0
        self.blobs = []
        self.closed = False

    def forward(self, blob):
        self.calls += 1
        self.blobs.append(blob)
        if self.error is not None:
            raise self.error
        return self.outputs

    def close(self):
        self.closed = True


@pytest.fixture
def red_square_image():
    """Generate a 200x200 red square on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    img[40:160, 40:160] = [200, 30, 30]  # Red square
    return img


@pytest.fixture
def blue_circle_image():
    """Generate a 200x200 blue circle on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    cv2.circle(img, (100, 100), 60, (30, 30, 200), -1)
    return img


@pytest.fixture
def noise_image():
    """Generate a 200x200 random noise image."""
    rng = np.random.RandomState(42)
    return rng.randint(0, 255, (200, 200, 3), dtype=np.uint8)


@pytest.fixture
def solid_red_image():
    img = np.zeros((20, 20, 3), dtype=np.uint8)
    img[:, :] = [255, 0, 0]
    return img


@pytest.fixture
def red_square_png(red_square_image):
    return encode_png(red_square_image)


@pytest.fixture
def blue_circle_png(blue_circle_image):
    return encode_png(blue_circle_image)


@pytest.fixture
def noise_png(noise_image):
    return encode_png(noise_image)


@pytest.fixture
def half_transparent_png():
    """Left half opaque red, right half blue at alpha 51 (weight 0.2)."""
    img = np.zeros((20, 20, 4), dtype=np.uint8)
    img[:, :10] = [200, 30, 30, 255]
    img[:, 10:] = [30, 30, 200, 51]
    return encode_png(img)


@pytest.fixture
def red_square_buffer(red_square_image):
    return PixelBuffer.from_array(red_square_image.astype(np.float32))


@pytest.fixture
def noise_buffer(noise_image):
    return PixelBuffer.from_array(noise_image.astype(np.float32))
