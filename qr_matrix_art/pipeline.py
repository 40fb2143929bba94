"""Binarize -> locate -> fit -> extract, as one call."""

import logging
from dataclasses import dataclass

from qr_matrix_art.binarize import Binarization, binarize
from qr_matrix_art.grid import GridInfo, fit_grid
from qr_matrix_art.image_utils import RasterImage
from qr_matrix_art.locator import FinderCandidate, LocatorDetector
from qr_matrix_art.matrix import QRMatrix, extract_matrix
from qr_matrix_art.settings import DetectionConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatrixRecovery:
    """Everything recovered from one image, kept for summaries and debugging."""

    matrix: QRMatrix
    grid: GridInfo
    binarization: Binarization
    candidates: tuple[FinderCandidate, ...]

    def to_dict(self) -> dict:
        return {
            "module_count": self.grid.module_count,
            "module_size": round(self.grid.module_size, 3),
            "version": self.grid.version,
            "origin": [round(v, 2) for v in self.grid.origin],
            "threshold": self.binarization.threshold,
            "dark_ratio": round(self.matrix.dark_ratio, 4),
            "anchors": [
                {"x": c.x, "y": c.y, "size": c.size, "module_size": c.module_size}
                for c in self.candidates
            ],
            "matrix": self.matrix.to_rows(),
        }


def recover_matrix(raster: RasterImage, config: DetectionConfig | None = None) -> MatrixRecovery:
    """Recover the module matrix of the QR code in ``raster``.

    Raises:
        LocatorNotFound: If fewer than three finder patterns are found.
    """
    config = config or DetectionConfig()
    binarization = binarize(raster, blur_sigma=config.blur_sigma)
    candidates = LocatorDetector(config).detect(binarization.bitmap)
    grid = fit_grid(candidates, raster.width, raster.height, config, bitmap=binarization.bitmap)
    matrix = extract_matrix(binarization.bitmap, grid, radius_ratio=config.sample_radius_ratio)

    logger.info(
        "Recovered %dx%d matrix (version ~%d, %.2f px/module)",
        grid.module_count, grid.module_count, grid.version, grid.module_size,
    )
    return MatrixRecovery(matrix=matrix, grid=grid, binarization=binarization, candidates=candidates)
