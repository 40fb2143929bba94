import numpy as np
import pytest
from PIL import Image

from qr_matrix_art.art import (
    CONTRAST_MARGIN,
    DARK_CEILING,
    ELEMENT_RENDERERS,
    LIGHT_FLOOR,
    LIGHTING,
    adjust_brightness,
    apply_lighting,
    cell_edges,
    enforce_module_contrast,
    enhance_contrast,
    render_art,
    render_control_image,
)
from qr_matrix_art.binarize import luminance
from qr_matrix_art.generation import MatrixVerifier
from qr_matrix_art.image_utils import RasterImage
from qr_matrix_art.pipeline import recover_matrix
from qr_matrix_art.settings import ArtSettings, ArtStyle


def _cell_means(image, matrix, border=0):
    rgb = np.asarray(image.convert("RGB"), dtype=np.float64)
    edges = cell_edges(matrix.size, border, image.width)
    means = np.zeros((matrix.size, matrix.size))
    for r in range(matrix.size):
        for c in range(matrix.size):
            cell = rgb[edges[r]:edges[r + 1], edges[c]:edges[c + 1]]
            means[r, c] = luminance(cell).mean()
    return means


def _assert_contract(image, matrix, border=0):
    means = _cell_means(image, matrix, border)
    assert means[matrix.cells].max() < DARK_CEILING
    assert means[~matrix.cells].min() > LIGHT_FLOOR


def test_every_style_has_renderers():
    assert set(ELEMENT_RENDERERS) == set(ArtStyle)


def test_cell_edges_cover_canvas():
    edges = cell_edges(29, 4, 370)
    assert edges[0] == 40 and edges[-1] == 330
    assert np.all(np.diff(edges) >= 9)


@pytest.mark.parametrize("style", list(ArtStyle))
def test_art_keeps_luminance_contract(qr_matrix, style):
    settings = ArtSettings(style=style, size_px=qr_matrix.size * 12, seed=5)
    image = render_art(qr_matrix, settings)
    assert image.size == (settings.size_px, settings.size_px)
    _assert_contract(image, qr_matrix)


@pytest.mark.parametrize("style", list(ArtStyle))
def test_palettes_hold_contract_without_correction(qr_matrix, style):
    settings = ArtSettings(style=style, size_px=qr_matrix.size * 12, enforce_contrast=False)
    _assert_contract(render_art(qr_matrix, settings), qr_matrix)


def test_softened_art_is_corrected(qr_matrix):
    settings = ArtSettings(style=ArtStyle.FOREST_CABIN, size_px=qr_matrix.size * 10, denoising_strength=0.7)
    _assert_contract(render_art(qr_matrix, settings), qr_matrix)


def test_border_is_quiet(qr_matrix):
    settings = ArtSettings(style=ArtStyle.ABSTRACT, size_px=(qr_matrix.size + 8) * 10, border_modules=4)
    image = render_art(qr_matrix, settings)
    rgb = np.asarray(image)
    assert (rgb[:40] == rgb[0, 0]).all()
    _assert_contract(image, qr_matrix, border=4)


@pytest.mark.parametrize("style", list(ArtStyle))
def test_art_reads_back_as_the_same_matrix(qr_matrix, style):
    image = render_art(qr_matrix, ArtSettings(style=style, size_px=qr_matrix.size * 10))
    assert MatrixVerifier(qr_matrix).measure(RasterImage.from_pil(image)) <= 0.02


@pytest.mark.parametrize("style", list(ArtStyle))
def test_art_recovers_from_pixels_alone(qr_matrix, style):
    settings = ArtSettings(style=style, size_px=(qr_matrix.size + 8) * 10, border_modules=4, seed=3)
    recovery = recover_matrix(RasterImage.from_pil(render_art(qr_matrix, settings)))
    assert recovery.grid.module_count == qr_matrix.size
    assert recovery.matrix.bit_errors(qr_matrix) == 0


def test_every_style_has_light_lighting():
    assert set(LIGHTING) == set(ArtStyle)
    for lighting in LIGHTING.values():
        for color in (lighting.start_color, lighting.end_color):
            assert luminance(np.array(color, dtype=np.float64)) >= LIGHT_FLOOR + CONTRAST_MARGIN


@pytest.mark.parametrize("style", list(ArtStyle))
def test_lighting_touches_only_light_modules(qr_matrix, style):
    border = 2
    base = ArtSettings(style=style, size_px=(qr_matrix.size + 2 * border) * 8, border_modules=border,
                       enforce_contrast=False, lighting=False)
    plain = render_art(qr_matrix, base)
    lit = np.asarray(apply_lighting(plain, qr_matrix, style, border=border)).astype(int)
    plain = np.asarray(plain).astype(int)

    edges = cell_edges(qr_matrix.size, border, base.size_px)
    assert (lit[:edges[0]] == plain[:edges[0]]).all()
    assert (lit[edges[-1]:] == plain[edges[-1]:]).all()
    changed = np.zeros(qr_matrix.cells.shape, dtype=bool)
    for r in range(qr_matrix.size):
        for c in range(qr_matrix.size):
            ys, xs = slice(edges[r], edges[r + 1]), slice(edges[c], edges[c + 1])
            changed[r, c] = (lit[ys, xs] != plain[ys, xs]).any()
    assert not changed[qr_matrix.cells].any()
    assert changed[~qr_matrix.cells].any()


def test_art_is_deterministic_per_seed(qr_matrix):
    settings = ArtSettings(style=ArtStyle.WINTER_VILLAGE, size_px=qr_matrix.size * 12, seed=9)
    a = np.asarray(render_art(qr_matrix, settings))
    b = np.asarray(render_art(qr_matrix, settings))
    assert (a == b).all()


def test_enforce_pulls_cells_into_range(qr_matrix):
    gray = Image.new("RGB", (qr_matrix.size * 6, qr_matrix.size * 6), (128, 128, 128))
    _assert_contract(enforce_module_contrast(gray, qr_matrix), qr_matrix)


def test_control_image_is_black_and_white(qr_matrix):
    image = render_control_image(qr_matrix, 300, blur_radius=0)
    assert image.size == (300, 300)
    assert set(np.unique(np.asarray(image))) <= {0, 255}
    assert np.asarray(render_control_image(qr_matrix, 300)).std() > 0


def test_enhance_contrast():
    image = Image.new("RGB", (2, 1))
    image.putpixel((0, 0), (100, 100, 100))
    image.putpixel((1, 0), (200, 200, 200))
    out = np.asarray(enhance_contrast(image, 0.5))
    assert out[0, 0, 0] == 86 and out[0, 1, 0] == 236
    assert out[0, 0, 3] == 255


def test_adjust_brightness():
    assert adjust_brightness("#808080", 0.5) == (192, 192, 192)
    assert adjust_brightness((100, 50, 0), -0.5) == (50, 25, 0)
