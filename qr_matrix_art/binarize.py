"""Grayscale conversion, Gaussian smoothing and Otsu binarization."""

import logging
import math
from dataclasses import dataclass

import numpy as np

from qr_matrix_art.image_utils import RasterImage

logger = logging.getLogger(__name__)

LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float64)


@dataclass(frozen=True)
class Binarization:
    """Binary bitmap (1 = dark) together with the threshold that produced it."""

    bitmap: np.ndarray  # (H, W) uint8 in {0, 1}
    threshold: int
    gray: np.ndarray  # grayscale the threshold was computed on

    @property
    def height(self) -> int:
        return self.bitmap.shape[0]

    @property
    def width(self) -> int:
        return self.bitmap.shape[1]


def luminance(rgb: np.ndarray) -> np.ndarray:
    """Rec. 601 luma of an (..., 3) array, as float64 in [0, 255]."""
    return np.asarray(rgb, dtype=np.float64)[..., :3] @ LUMA_WEIGHTS


def to_grayscale(raster: RasterImage) -> np.ndarray:
    return luminance(raster.rgb)


def gaussian_kernel(sigma: float) -> np.ndarray:
    """Normalized 1-D Gaussian kernel with ceil(6*sigma) taps, forced odd."""
    size = math.ceil(sigma * 6) | 1
    center = size // 2
    x = np.arange(size, dtype=np.float64) - center
    kernel = np.exp(-(x * x) / (2 * sigma * sigma))
    return kernel / kernel.sum()


def gaussian_blur(gray: np.ndarray, sigma: float) -> np.ndarray:
    """Separable Gaussian blur with clamped (edge-replicated) borders."""
    kernel = gaussian_kernel(sigma)
    half = len(kernel) // 2
    padded = np.pad(np.asarray(gray, dtype=np.float64), half, mode="edge")

    h, w = gray.shape
    rows = np.zeros((h + 2 * half, w), dtype=np.float64)
    for i, weight in enumerate(kernel):
        rows += weight * padded[:, i:i + w]

    out = np.zeros((h, w), dtype=np.float64)
    for i, weight in enumerate(kernel):
        out += weight * rows[i:i + h, :]
    return out


def quantize(gray: np.ndarray) -> np.ndarray:
    """Round to the 256 integer gray levels the histogram is built on."""
    return np.clip(np.rint(np.asarray(gray, dtype=np.float64)), 0, 255).astype(np.int64)


def otsu_threshold(gray: np.ndarray) -> int:
    """Otsu threshold over a 256-bin histogram.

    Returns the exclusive upper bound of the dark class: a pixel is dark
    iff its quantized level is below ``threshold``. A histogram with a
    single populated bin yields 0 (nothing is dark).
    """
    values = quantize(gray)
    hist = np.bincount(values.ravel(), minlength=256).astype(np.float64)
    total = hist.sum()
    if total == 0:
        return 0

    levels = np.arange(256, dtype=np.float64)
    w_b = np.cumsum(hist)
    w_f = total - w_b
    sum_b = np.cumsum(hist * levels)
    sum_all = sum_b[-1]

    valid = (w_b > 0) & (w_f > 0)
    if not valid.any():
        return 0

    with np.errstate(divide="ignore", invalid="ignore"):
        m_b = np.where(valid, sum_b / w_b, 0.0)
        m_f = np.where(valid, (sum_all - sum_b) / w_f, 0.0)
    between = np.where(valid, w_b * w_f * (m_b - m_f) ** 2, 0.0)

    if between.max() <= 0:
        return 0
    # argmax returns the first maximum, matching a strict ">" scan.
    return int(np.argmax(between)) + 1


def binarize(raster: RasterImage, blur_sigma: float | None = None) -> Binarization:
    """Convert a raster to a dark/light bitmap using a global Otsu threshold.

    When ``blur_sigma`` is given, the grayscale image is smoothed before the
    histogram is built.
    """
    gray = to_grayscale(raster)
    if blur_sigma:
        gray = gaussian_blur(gray, blur_sigma)

    threshold = otsu_threshold(gray)
    bitmap = (quantize(gray) < threshold).astype(np.uint8)
    logger.debug(
        "Binarized %dx%d raster: threshold=%d, dark fraction=%.3f",
        raster.width, raster.height, threshold, float(bitmap.mean()) if bitmap.size else 0.0,
    )
    return Binarization(bitmap=bitmap, threshold=threshold, gray=gray)
