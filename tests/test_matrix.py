import numpy as np
import pytest
from PIL import Image

from qr_matrix_art.binarize import binarize
from qr_matrix_art.grid import GridInfo
from qr_matrix_art.image_utils import RasterImage
from qr_matrix_art.matrix import QRMatrix, extract_matrix
from qr_matrix_art.pipeline import recover_matrix
from qr_matrix_art.qr_generator import render_matrix_image
from qr_matrix_art.settings import DetectionConfig


def test_matrix_basics():
    m = QRMatrix([[1, 0], [0, 0]])
    assert m.size == 2 and len(m) == 2
    assert m[0, 0] is True and m[1, 1] is False
    assert m.dark_ratio == pytest.approx(0.25)
    assert m.to_rows() == [[1, 0], [0, 0]]
    assert m.to_text(dark="#", light=".") == "#.\n.."
    assert m.inverted()[1, 1] is True


def test_matrix_is_immutable():
    m = QRMatrix([[1, 0], [0, 1]])
    with pytest.raises(ValueError):
        m.cells[0, 0] = False


def test_matrix_rejects_non_square():
    with pytest.raises(ValueError):
        QRMatrix([[1, 0, 1], [0, 1, 0]])
    with pytest.raises(ValueError):
        QRMatrix([])


def test_bit_errors():
    a = QRMatrix([[1, 0], [0, 1]])
    b = QRMatrix([[1, 1], [0, 1]])
    assert a.bit_errors(b) == 1
    assert a.error_rate(b) == pytest.approx(0.25)
    assert a.bit_errors(QRMatrix([[1]])) == 4
    assert a == QRMatrix([[True, False], [False, True]])
    assert hash(a) == hash(QRMatrix(a.cells))


def test_from_data_has_finders(qr_matrix):
    assert qr_matrix.size in (21, 25, 29, 33)
    corner = qr_matrix.cells[:7, :7]
    assert corner[0].all() and corner[6].all()
    assert not corner[1, 1:6].any()
    assert corner[2:5, 2:5].all()


def test_extract_on_exact_grid(qr_matrix, qr_raster):
    bitmap = binarize(qr_raster).bitmap
    grid = GridInfo(module_size=8.0, module_count=qr_matrix.size, version=1)
    assert extract_matrix(bitmap, grid) == qr_matrix


def test_extract_out_of_bounds_cells_are_light():
    bitmap = np.ones((10, 10), dtype=np.uint8)
    grid = GridInfo(module_size=10.0, module_count=3, version=1)
    m = extract_matrix(bitmap, grid)
    assert m[0, 0] is True
    assert not m.cells[1:, :].any() and not m.cells[:, 1:].any()


@pytest.mark.parametrize("module_px", [8, 11])
def test_round_trip(qr_matrix, module_px):
    raster = RasterImage.from_pil(render_matrix_image(qr_matrix, module_px))
    recovery = recover_matrix(raster)
    assert recovery.grid.module_count == qr_matrix.size
    assert recovery.matrix.bit_errors(qr_matrix) == 0


def test_round_trip_other_content():
    matrix = QRMatrix.from_data("QR MATRIX ART 0123456789", error_correction="M")
    raster = RasterImage.from_pil(render_matrix_image(matrix, 9))
    recovery = recover_matrix(raster, DetectionConfig(blur_sigma=None))
    assert recovery.matrix == matrix


@pytest.mark.parametrize("border", [2, 4])
def test_round_trip_with_quiet_zone(qr_matrix, border):
    raster = RasterImage.from_pil(render_matrix_image(qr_matrix, 8, border=border))
    recovery = recover_matrix(raster)
    assert recovery.grid.module_count == qr_matrix.size
    assert recovery.grid.origin == (pytest.approx(border * 8, abs=1.5), pytest.approx(border * 8, abs=1.5))
    assert recovery.matrix.bit_errors(qr_matrix) == 0


def test_round_trip_off_center(qr_matrix):
    canvas = Image.new("RGB", (400, 330), "white")
    canvas.paste(render_matrix_image(qr_matrix, 9), (61, 23))
    recovery = recover_matrix(RasterImage.from_pil(canvas))
    assert recovery.grid.module_count == qr_matrix.size
    assert recovery.matrix == qr_matrix


def test_full_frame_counts_the_quiet_zone(qr_matrix):
    raster = RasterImage.from_pil(render_matrix_image(qr_matrix, 8, border=4))
    recovery = recover_matrix(raster, DetectionConfig(crop_to_content=False))
    assert recovery.grid.origin == (0.0, 0.0)
    assert recovery.grid.module_count > qr_matrix.size
