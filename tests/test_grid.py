import numpy as np
import pytest

from qr_matrix_art.binarize import binarize
from qr_matrix_art.grid import (
    GridInfo,
    anchor_module_size,
    assign_roles,
    content_bounds,
    finder_bounds,
    fit_grid,
    match_version,
    modules_for_version,
)
from qr_matrix_art.locator import FinderCandidate, LocatorDetector
from qr_matrix_art.pipeline import recover_matrix
from qr_matrix_art.settings import DetectionConfig


def _version1_anchors(ms, measured=False):
    """Finder centers of a 21-module symbol drawn at ``ms`` px per module."""
    near, far = 3.5 * ms, (21 - 3.5) * ms
    module_size = ms if measured else None
    return [
        FinderCandidate(near, near, 7 * ms, module_size),
        FinderCandidate(far, near, 7 * ms, module_size),
        FinderCandidate(near, far, 7 * ms, module_size),
    ]


def test_modules_for_version():
    assert modules_for_version(1) == 21
    assert modules_for_version(40) == 177


@pytest.mark.parametrize("count, version", [(21, 1), (22, 1), (25, 2), (29, 3), (177, 40)])
def test_match_version_within_tolerance(count, version):
    assert match_version(count) == version


def test_match_version_tie_prefers_lower():
    # 119 is two modules from both 117 (v25) and 121 (v26)
    assert match_version(119) == 25


def test_match_version_clamps_outside_range():
    assert match_version(5) == 1
    assert match_version(400) == 40


def test_assign_roles():
    tl, tr, bl = _version1_anchors(10)
    assert assign_roles([bl, tr, tl], 210, 210) == (tl, tr, bl)
    assert assign_roles([tl, tr, FinderCandidate(150, 150, 70)], 210, 210) is None


def test_anchor_spacing_estimate():
    assert anchor_module_size(_version1_anchors(10), 210, 210) == pytest.approx(10.0)


def test_anchor_spacing_is_clamped():
    close = [FinderCandidate(0, 0, 7), FinderCandidate(10, 0, 7), FinderCandidate(0, 10, 7)]
    assert anchor_module_size(close, 100, 100, min_module_size=4.0) == 4.0


@pytest.mark.parametrize("ms", [6, 8, 10, 13])
def test_fit_from_anchor_spacing(ms):
    size = 21 * ms
    grid = fit_grid(_version1_anchors(ms), size, size)
    assert grid.module_size == pytest.approx(ms, rel=0.1)
    assert abs(grid.version - 1) <= 1
    assert grid.module_count == 21


def test_fit_prefers_measured_module_size():
    # Measured finders of a version 3 symbol (29 modules at 8 px)
    anchors = [
        FinderCandidate(28, 28, 56, 8.0),
        FinderCandidate(204, 28, 56, 8.0),
        FinderCandidate(28, 204, 56, 8.0),
    ]
    grid = fit_grid(anchors, 232, 232)
    assert grid.module_size == pytest.approx(8.0)
    assert grid.module_count == 29
    assert grid.version == 3


def test_fit_snaps_near_miss_counts():
    anchors = [FinderCandidate(0, 0, 56, 7.75)] * 3
    grid = fit_grid(anchors, 232, 232)
    # 232 / 7.75 = 29.9 -> 30, one module off version 3
    assert grid.module_count == 29
    assert grid.module_size == pytest.approx(8.0)


def test_grid_info_rejects_bad_geometry():
    with pytest.raises(ValueError):
        GridInfo(module_size=0, module_count=21, version=1)
    with pytest.raises(ValueError):
        GridInfo(module_size=4, module_count=0, version=1)


def test_three_pattern_scenario(three_finder_raster):
    # Measured against the whole 512 px frame
    recovery = recover_matrix(three_finder_raster, DetectionConfig(crop_to_content=False))
    grid = recovery.grid
    assert abs(grid.module_count - 119) <= 2
    assert 1 <= grid.version <= 40
    assert grid.module_size == pytest.approx(30 / 7, rel=0.1)
    assert recovery.matrix.size == grid.module_count


@pytest.mark.parametrize("ms, version", [(6, 2), (9, 4)])
def test_fit_from_detected_patterns(make_finder_raster, ms, version):
    count = modules_for_version(version)
    side = count * ms
    far = (count - 7) * ms
    raster = make_finder_raster(side, side, [(0, 0), (far, 0), (0, far)], 7 * ms)
    found = LocatorDetector().detect(binarize(raster, blur_sigma=1.0).bitmap)
    grid = fit_grid(found, side, side)
    assert grid.module_size == pytest.approx(ms, rel=0.1)
    assert abs(grid.version - version) <= 1


def test_three_pattern_scenario_cropped_to_code_area(three_finder_raster):
    recovery = recover_matrix(three_finder_raster)
    grid = recovery.grid
    assert grid.origin == (pytest.approx(20, abs=1.5), pytest.approx(20, abs=1.5))
    assert grid.pixel_extent == pytest.approx(460, abs=15)
    assert recovery.matrix.size == grid.module_count


def test_content_bounds():
    bitmap = np.zeros((50, 60), dtype=np.uint8)
    assert content_bounds(bitmap) is None
    bitmap[5:20, 12:40] = 1
    bitmap[30, 7] = 1
    assert content_bounds(bitmap) == (7, 5, 40, 31)


def test_finder_bounds_are_clipped():
    anchors = [FinderCandidate(28, 28, 56), FinderCandidate(204, 28, 56), FinderCandidate(28, 210, 70)]
    assert finder_bounds(anchors, 240, 240) == (0.0, 0.0, 232.0, 240.0)


def test_fit_crops_to_dark_pixels_without_measurements():
    # Version 1 symbol at 10 px drawn with a 30 px margin
    bitmap = np.zeros((270, 270), dtype=np.uint8)
    bitmap[30:240, 30:240] = 1
    anchors = [FinderCandidate(x + 30, y + 30, 70) for x, y in [(35, 35), (175, 35), (35, 175)]]
    grid = fit_grid(anchors, 270, 270, bitmap=bitmap)
    assert grid.origin == (30.0, 30.0)
    assert grid.module_count == 21
    assert grid.module_size == pytest.approx(10.0)


def test_fit_ignores_implausibly_small_bounds():
    anchors = [FinderCandidate(10, 10, 20, 8.0)] * 3
    grid = fit_grid(anchors, 232, 232)
    assert grid.origin == (0.0, 0.0)
    assert grid.module_count == 29
