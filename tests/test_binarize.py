import numpy as np
import pytest

from qr_matrix_art.binarize import (
    binarize,
    gaussian_blur,
    gaussian_kernel,
    luminance,
    otsu_threshold,
)
from qr_matrix_art.image_utils import RasterImage


def test_luminance_weights():
    assert luminance(np.array([255, 0, 0])) == pytest.approx(0.299 * 255)
    assert luminance(np.array([0, 255, 0])) == pytest.approx(0.587 * 255)
    assert luminance(np.array([0, 0, 255])) == pytest.approx(0.114 * 255)


def test_gaussian_kernel_is_odd_and_normalized():
    kernel = gaussian_kernel(1.0)
    assert len(kernel) == 7
    assert kernel.sum() == pytest.approx(1.0)
    assert kernel[3] == kernel.max()
    assert np.allclose(kernel, kernel[::-1])


def test_blur_keeps_uniform_image():
    gray = np.full((20, 30), 77.0)
    assert np.allclose(gaussian_blur(gray, 1.5), 77.0)


def test_otsu_splits_two_levels():
    gray = np.array([[10.0] * 50 + [200.0] * 50])
    t = otsu_threshold(gray)
    assert 10 < t <= 200
    assert ((gray < t) == (gray == 10.0)).all()


def test_otsu_is_idempotent():
    rng = np.random.default_rng(3)
    gray = rng.normal(120, 40, size=(64, 64)).clip(0, 255)
    assert otsu_threshold(gray) == otsu_threshold(gray)
    assert otsu_threshold(gray.copy()) == otsu_threshold(gray)


@pytest.mark.parametrize("value", [0, 128, 255])
def test_otsu_degenerate_histogram(value):
    assert otsu_threshold(np.full((10, 10), float(value))) == 0


def test_binarize_marks_dark_pixels():
    arr = np.full((10, 10), 255, dtype=np.uint8)
    arr[2:5, 2:5] = 0
    result = binarize(RasterImage.from_array(arr))
    assert result.bitmap.dtype == np.uint8
    assert result.bitmap.sum() == 9
    assert result.bitmap[3, 3] == 1 and result.bitmap[0, 0] == 0
    assert (result.width, result.height) == (10, 10)


def test_binarize_all_white_has_no_dark(white_raster):
    result = binarize(white_raster, blur_sigma=1.0)
    assert result.threshold == 0
    assert result.bitmap.sum() == 0
