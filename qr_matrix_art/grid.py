"""Fit a module grid (module size, count and version) to detected finder patterns."""

import logging
from dataclasses import dataclass
from itertools import combinations

import numpy as np

from qr_matrix_art import MAX_VERSION, MIN_VERSION
from qr_matrix_art.locator import FinderCandidate
from qr_matrix_art.settings import DetectionConfig

logger = logging.getLogger(__name__)

# Finder centers sit 14 modules apart along an axis on a version 1 symbol.
ANCHOR_SPACING_MODULES = 14


@dataclass(frozen=True)
class GridInfo:
    """Pixel geometry of a QR module grid."""

    module_size: float
    module_count: int
    version: int
    anchors: tuple[FinderCandidate, ...] = ()
    origin: tuple[float, float] = (0.0, 0.0)

    def __post_init__(self):
        if self.module_size <= 0:
            raise ValueError(f"module_size must be positive, got {self.module_size}")
        if self.module_count <= 0:
            raise ValueError(f"module_count must be positive, got {self.module_count}")

    @property
    def pixel_extent(self) -> float:
        return self.module_size * self.module_count


def modules_for_version(version: int) -> int:
    return 17 + 4 * version


def match_version(module_count: int, tolerance: int = 2) -> int:
    """Closest QR version for a module count.

    Versions within ``tolerance`` modules win (lowest on ties); otherwise
    ``round((count - 17) / 4)`` clamped to the valid range.
    """
    best, best_diff = None, None
    for version in range(MIN_VERSION, MAX_VERSION + 1):
        diff = abs(modules_for_version(version) - module_count)
        if diff <= tolerance and (best_diff is None or diff < best_diff):
            best, best_diff = version, diff
    if best is not None:
        return best
    return max(MIN_VERSION, min(MAX_VERSION, round((module_count - 17) / 4)))


def pairwise_mean_distance(candidates) -> float:
    pairs = list(combinations(candidates, 2))
    if not pairs:
        return 0.0
    return sum(a.distance_to(b) for a, b in pairs) / len(pairs)


def assign_roles(candidates, width: int, height: int):
    """Label candidates as (top_left, top_right, bottom_left) by quadrant.

    Returns None unless exactly one candidate falls in each of those three
    quadrants relative to the image center.
    """
    cx, cy = width / 2.0, height / 2.0
    roles = {"tl": [], "tr": [], "bl": []}
    for c in candidates:
        if c.y < cy:
            roles["tl" if c.x < cx else "tr"].append(c)
        elif c.x < cx:
            roles["bl"].append(c)
    if any(len(v) != 1 for v in roles.values()):
        return None
    return roles["tl"][0], roles["tr"][0], roles["bl"][0]


def anchor_module_size(candidates, width: int, height: int, min_module_size: float = 4.0) -> float:
    """Module size from finder spacing, assuming 14 modules between centers."""
    roles = assign_roles(candidates, width, height)
    if roles is not None:
        tl, tr, bl = roles
        distance = (abs(tr.x - tl.x) + abs(bl.y - tl.y)) / 2.0
    else:
        distance = pairwise_mean_distance(candidates)
    return max(min_module_size, distance / ANCHOR_SPACING_MODULES)


def content_bounds(bitmap: np.ndarray):
    """Bounding box ``(x0, y0, x1, y1)`` of all dark pixels, or None if there are none.

    ``x1``/``y1`` are exclusive.
    """
    rows = np.flatnonzero(bitmap.any(axis=1))
    cols = np.flatnonzero(bitmap.any(axis=0))
    if rows.size == 0:
        return None
    return int(cols[0]), int(rows[0]), int(cols[-1]) + 1, int(rows[-1]) + 1


def finder_bounds(candidates, width: int, height: int):
    """Box covered by the finder footprints, clipped to the image.

    The three finders sit in three corners of the symbol, so this is the
    symbol's extent.
    """
    x0 = max(0.0, min(c.x - c.size / 2.0 for c in candidates))
    y0 = max(0.0, min(c.y - c.size / 2.0 for c in candidates))
    x1 = min(float(width), max(c.x + c.size / 2.0 for c in candidates))
    y1 = min(float(height), max(c.y + c.size / 2.0 for c in candidates))
    return x0, y0, x1, y1


def fit_grid(
    candidates,
    width: int,
    height: int,
    config: DetectionConfig | None = None,
    bitmap: np.ndarray | None = None,
) -> GridInfo:
    """Derive module size, module count, version and origin from finder candidates.

    Measured per-pattern module sizes (finder width / 7) are used when every
    candidate carries one; otherwise the anchor-spacing estimate applies.

    With ``config.crop_to_content`` the grid covers only the code area: the
    box spanned by the measured finders, or failing that the dark-pixel
    bounds of ``bitmap``. Margins and quiet zones are then left out of the
    module count. A code area too small to hold a version 1 symbol is
    ignored and the whole frame is used.
    """
    config = config or DetectionConfig()
    candidates = tuple(candidates)

    measured = [c.module_size for c in candidates if c.module_size]
    fully_measured = bool(candidates) and len(measured) == len(candidates)
    if fully_measured:
        module_size = sum(measured) / len(measured)
        source = "finder width"
    else:
        module_size = anchor_module_size(candidates, width, height, config.min_module_size)
        source = "anchor spacing"
    module_size = max(config.min_module_size, module_size)

    bounds = None
    if config.crop_to_content:
        if fully_measured:
            bounds = finder_bounds(candidates, width, height)
        elif bitmap is not None:
            bounds = content_bounds(bitmap)

    origin = (0.0, 0.0)
    dimension = float(min(width, height))
    if bounds is not None:
        x0, y0, x1, y1 = bounds
        extent = min(x1 - x0, y1 - y0)
        if extent / module_size >= modules_for_version(MIN_VERSION) - config.snap_tolerance:
            origin = (float(x0), float(y0))
            dimension = float(extent)

    module_count = max(1, round(dimension / module_size))
    version = match_version(module_count, config.version_tolerance)

    expected = modules_for_version(version)
    if module_count != expected and abs(module_count - expected) <= config.snap_tolerance:
        module_count = expected
        module_size = dimension / float(module_count)

    logger.debug(
        "Grid fit from %s: module_size=%.2f count=%d version=%d origin=(%.1f, %.1f)",
        source, module_size, module_count, version, origin[0], origin[1],
    )
    return GridInfo(
        module_size=module_size,
        module_count=module_count,
        version=version,
        anchors=candidates,
        origin=origin,
    )
