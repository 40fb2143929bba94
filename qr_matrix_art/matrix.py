"""The QR module matrix and its extraction from a binary bitmap."""

import logging
import math

import numpy as np

from qr_matrix_art.grid import GridInfo
from qr_matrix_art.settings import SAMPLE_RADIUS_RATIO

logger = logging.getLogger(__name__)


class QRMatrix:
    """Immutable square grid of modules; ``True`` is a dark module."""

    __slots__ = ("_cells",)

    def __init__(self, cells):
        arr = np.array(cells, dtype=bool)
        if arr.ndim != 2 or arr.shape[0] != arr.shape[1] or arr.shape[0] == 0:
            raise ValueError(f"QR matrix must be a non-empty square grid, got shape {arr.shape}")
        arr.setflags(write=False)
        self._cells = arr

    @classmethod
    def from_data(cls, data: str, error_correction: str = "H") -> "QRMatrix":
        """Module matrix of ``data`` as encoded by python-qrcode (no quiet zone)."""
        from qr_matrix_art.qr_generator import build_qr

        qr = build_qr(data, error_correction=error_correction, border=0)
        return cls(qr.get_matrix())

    @property
    def cells(self) -> np.ndarray:
        return self._cells

    @property
    def size(self) -> int:
        return self._cells.shape[0]

    @property
    def dark_ratio(self) -> float:
        return float(self._cells.mean())

    def __getitem__(self, key) -> bool:
        row, col = key
        return bool(self._cells[row, col])

    def __len__(self) -> int:
        return self.size

    def __eq__(self, other) -> bool:
        if not isinstance(other, QRMatrix):
            return NotImplemented
        return self._cells.shape == other._cells.shape and bool(np.array_equal(self._cells, other._cells))

    def __hash__(self) -> int:
        return hash((self.size, self._cells.tobytes()))

    def __repr__(self) -> str:
        return f"QRMatrix(size={self.size}, dark_ratio={self.dark_ratio:.2f})"

    def bit_errors(self, other: "QRMatrix") -> int:
        """Number of differing modules; a size mismatch counts every module."""
        if other.size != self.size:
            return self.size * self.size
        return int(np.count_nonzero(self._cells != other._cells))

    def error_rate(self, other: "QRMatrix") -> float:
        return self.bit_errors(other) / float(self.size * self.size)

    def inverted(self) -> "QRMatrix":
        return QRMatrix(~self._cells)

    def to_rows(self) -> list[list[int]]:
        return self._cells.astype(int).tolist()

    def to_text(self, dark: str = "██", light: str = "  ") -> str:
        return "\n".join("".join(dark if v else light for v in row) for row in self._cells)


def extract_matrix(
    bitmap: np.ndarray,
    grid: GridInfo,
    radius_ratio: float = SAMPLE_RADIUS_RATIO,
) -> QRMatrix:
    """Majority-vote each module from a small neighborhood around its center.

    Samples outside the bitmap are ignored; a module with no in-bounds
    samples is light.
    """
    height, width = bitmap.shape
    ms = grid.module_size
    ox, oy = grid.origin
    radius = max(1, int(math.floor(ms * radius_ratio)))
    count = grid.module_count

    centers = np.arange(count, dtype=np.float64) * ms + ms / 2.0
    col_centers = np.round(centers + ox).astype(int)
    row_centers = np.round(centers + oy).astype(int)

    table = np.zeros((height + 1, width + 1), dtype=np.int64)
    table[1:, 1:] = np.cumsum(np.cumsum(bitmap, axis=0, dtype=np.int64), axis=1)

    x0 = np.clip(col_centers - radius, 0, width)
    x1 = np.clip(col_centers + radius + 1, 0, width)
    y0 = np.clip(row_centers - radius, 0, height)
    y1 = np.clip(row_centers + radius + 1, 0, height)

    ys0, ys1 = y0[:, None], y1[:, None]
    xs0, xs1 = x0[None, :], x1[None, :]
    dark = table[ys1, xs1] - table[ys0, xs1] - table[ys1, xs0] + table[ys0, xs0]
    total = (ys1 - ys0) * (xs1 - xs0)

    cells = np.where(total > 0, dark / np.maximum(total, 1) > 0.5, False)

    matrix = QRMatrix(cells)
    logger.debug("Extracted %dx%d matrix (sample radius %d px)", count, count, radius)
    return matrix
