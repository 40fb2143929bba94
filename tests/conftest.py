"""Shared synthetic images for the test suite."""

import numpy as np
import pytest

from qr_matrix_art.image_utils import RasterImage
from qr_matrix_art.matrix import QRMatrix
from qr_matrix_art.qr_generator import render_matrix_image

SAMPLE_URL = "https://example.com"


def draw_finder(gray: np.ndarray, x: int, y: int, size: int) -> None:
    """Paint a 1:1:3:1:1 finder pattern with its top-left corner at (x, y)."""
    unit = size / 7.0
    edges = [int(round(k * unit)) for k in (0, 1, 2, 5, 6, 7)]
    gray[y:y + size, x:x + size] = 0
    gray[y + edges[1]:y + edges[4], x + edges[1]:x + edges[4]] = 255
    gray[y + edges[2]:y + edges[3], x + edges[2]:x + edges[3]] = 0


def finder_raster(width: int, height: int, corners, size: int) -> RasterImage:
    gray = np.full((height, width), 255, dtype=np.uint8)
    for x, y in corners:
        draw_finder(gray, x, y, size)
    return RasterImage.from_array(gray)


@pytest.fixture
def make_finder_raster():
    """Factory: ``make_finder_raster(width, height, corners, size)``."""
    return finder_raster


@pytest.fixture
def white_raster():
    return RasterImage.from_array(np.full((100, 100), 255, dtype=np.uint8))


@pytest.fixture
def three_finder_raster():
    """512x512 white image with 30px finder patterns at (20,20), (450,20), (20,450)."""
    return finder_raster(512, 512, [(20, 20), (450, 20), (20, 450)], 30)


@pytest.fixture
def qr_matrix():
    return QRMatrix.from_data(SAMPLE_URL)


@pytest.fixture
def qr_raster(qr_matrix):
    """The sample matrix at 8 px per module, no quiet zone."""
    return RasterImage.from_pil(render_matrix_image(qr_matrix, 8))


@pytest.fixture
def checkerboard():
    """64x64 RGB checkerboard of 1-pixel black/white squares."""
    yy, xx = np.mgrid[0:64, 0:64]
    gray = np.where((yy + xx) % 2 == 0, 0, 255).astype(np.uint8)
    return np.stack([gray, gray, gray], axis=-1)


@pytest.fixture
def noisy_background():
    rng = np.random.default_rng(7)
    return rng.integers(0, 256, size=(300, 400, 3), dtype=np.uint8)


@pytest.fixture
def image_file(tmp_path):
    """Factory writing a PIL image to a PNG under tmp_path."""

    def _write(image, name="image.png"):
        path = tmp_path / name
        image.save(path)
        return str(path)

    return _write
