"""Finder (locator) pattern detection on a binary bitmap.

Two detectors share the same dedupe step and failure contract:

* ``DetectionMode.DENSITY`` slides a small window over the bitmap and keeps
  windows whose dark fraction sits in a band around 0.5. It is cheap but
  fires on any half-dark texture, including QR data regions.
* ``DetectionMode.RINGS`` (default) looks for the 1:1:3:1:1 dark/light run
  structure along rows, then confirms it along the column and row through
  the candidate center. Each confirmed pattern also yields a measured
  module size, which the grid fitter prefers over anchor spacing.
"""

import logging
import math
from dataclasses import dataclass

import numpy as np

from qr_matrix_art import FINDER_MODULES
from qr_matrix_art.errors import LocatorNotFound
from qr_matrix_art.settings import DetectionConfig, DetectionMode

logger = logging.getLogger(__name__)

MIN_RING_HITS = 2


@dataclass(frozen=True)
class FinderCandidate:
    """A locator-pattern-like region.

    ``x``/``y`` is the center in pixels and ``size`` the pattern footprint.
    ``module_size`` is only known when the ring structure was measured.
    """

    x: float
    y: float
    size: float
    module_size: float | None = None
    hits: int = 1

    def distance_to(self, other: "FinderCandidate") -> float:
        return math.hypot(self.x - other.x, self.y - other.y)


# ---------------------------------------------------------------------------
# Density heuristic
# ---------------------------------------------------------------------------

def _integral(bitmap: np.ndarray) -> np.ndarray:
    table = np.zeros((bitmap.shape[0] + 1, bitmap.shape[1] + 1), dtype=np.int64)
    table[1:, 1:] = np.cumsum(np.cumsum(bitmap, axis=0, dtype=np.int64), axis=1)
    return table


def scan_density_candidates(
    bitmap: np.ndarray,
    patch_size: int,
    stride: int,
    band: tuple[float, float],
) -> list[FinderCandidate]:
    """Windows whose dark-pixel fraction lies strictly inside ``band``.

    Windows are centered on a grid starting ``patch_size`` pixels from the
    top-left edge and returned in row-major scan order.
    """
    height, width = bitmap.shape
    ys = np.arange(patch_size, height - patch_size, stride)
    xs = np.arange(patch_size, width - patch_size, stride)
    if len(ys) == 0 or len(xs) == 0:
        return []

    half = patch_size // 2
    side = 2 * half + 1
    table = _integral(bitmap)
    y0, y1 = (ys - half)[:, None], (ys + half + 1)[:, None]
    x0, x1 = (xs - half)[None, :], (xs + half + 1)[None, :]
    dark = table[y1, x1] - table[y0, x1] - table[y1, x0] + table[y0, x0]
    ratio = dark / float(side * side)

    low, high = band
    hits = np.argwhere((ratio > low) & (ratio < high))
    return [
        FinderCandidate(x=float(xs[c]), y=float(ys[r]), size=float(patch_size))
        for r, c in hits
    ]


def dedupe_candidates(
    candidates: list[FinderCandidate],
    min_separation: float,
    limit: int = 3,
) -> list[FinderCandidate]:
    """Greedily keep candidates farther than ``min_separation`` px from all kept ones."""
    kept: list[FinderCandidate] = []
    for candidate in candidates:
        if len(kept) >= limit:
            break
        if all(candidate.distance_to(existing) > min_separation for existing in kept):
            kept.append(candidate)
    return kept


def min_separation_for(width: int, height: int, config: DetectionConfig) -> float:
    """Minimum anchor separation scaled from the reference resolution."""
    return config.min_separation * max(width, height) / float(config.reference_resolution)


# ---------------------------------------------------------------------------
# Ring-structure detector
# ---------------------------------------------------------------------------

def _runs(line: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Run-length encode a 1-D 0/1 array into (starts, lengths, values)."""
    change = np.flatnonzero(np.diff(line)) + 1
    starts = np.concatenate(([0], change))
    ends = np.concatenate((change, [len(line)]))
    return starts, ends - starts, line[starts]


def ring_ratio_ok(counts) -> bool:
    """True if five run lengths approximate the 1:1:3:1:1 finder ratio."""
    total = sum(counts)
    if total < FINDER_MODULES:
        return False
    unit = total / float(FINDER_MODULES)
    tolerance = unit / 2.0
    return (
        abs(unit - counts[0]) < tolerance
        and abs(unit - counts[1]) < tolerance
        and abs(3.0 * unit - counts[2]) < 3.0 * tolerance
        and abs(unit - counts[3]) < tolerance
        and abs(unit - counts[4]) < tolerance
    )


def _cross_check(line: np.ndarray, center: int, max_count: int) -> tuple[float, int] | None:
    """Measure the finder runs through ``center`` along one line.

    Returns the refined center coordinate and the total pattern length, or
    None when the runs don't form a finder pattern.
    """
    n = len(line)
    if not 0 <= center < n or line[center] != 1:
        return None
    counts = [0, 0, 0, 0, 0]

    i = center
    while i >= 0 and line[i] == 1:
        counts[2] += 1
        i -= 1
    if i < 0:
        return None
    while i >= 0 and line[i] == 0 and counts[1] <= max_count:
        counts[1] += 1
        i -= 1
    if i < 0 or counts[1] > max_count:
        return None
    while i >= 0 and line[i] == 1 and counts[0] <= max_count:
        counts[0] += 1
        i -= 1
    if counts[0] > max_count:
        return None

    i = center + 1
    while i < n and line[i] == 1:
        counts[2] += 1
        i += 1
    if i == n:
        return None
    while i < n and line[i] == 0 and counts[3] < max_count:
        counts[3] += 1
        i += 1
    if i == n or counts[3] >= max_count:
        return None
    while i < n and line[i] == 1 and counts[4] < max_count:
        counts[4] += 1
        i += 1
    if counts[4] >= max_count:
        return None

    if not ring_ratio_ok(counts):
        return None
    stone_end = i - counts[4] - counts[3]
    return stone_end - counts[2] / 2.0, sum(counts)


@dataclass
class _Cluster:
    x: float
    y: float
    size: float
    hits: int
    order: int

    def absorb(self, x: float, y: float, size: float) -> None:
        n = self.hits
        self.x = (self.x * n + x) / (n + 1)
        self.y = (self.y * n + y) / (n + 1)
        self.size = (self.size * n + size) / (n + 1)
        self.hits = n + 1


def find_ring_candidates(bitmap: np.ndarray, stride: int) -> list[FinderCandidate]:
    """Finder patterns confirmed horizontally and vertically, by hit count."""
    height, width = bitmap.shape
    clusters: list[_Cluster] = []

    for y in range(0, height, stride):
        row = bitmap[y]
        starts, lengths, values = _runs(row)
        for i in range(len(starts) - 4):
            if values[i] != 1:
                continue
            counts = lengths[i:i + 5]
            if not ring_ratio_ok(counts):
                continue

            cx = int(starts[i + 2] + lengths[i + 2] // 2)
            vertical = _cross_check(bitmap[:, cx], y, int(lengths[i + 2]) * 2)
            if vertical is None:
                continue
            cy, v_total = vertical
            horizontal = _cross_check(bitmap[int(cy)], cx, int(lengths[i + 2]) * 2)
            if horizontal is None:
                continue
            hx, h_total = horizontal
            size = (h_total + v_total) / 2.0

            for cluster in clusters:
                if math.hypot(cluster.x - hx, cluster.y - cy) < cluster.size / 2.0:
                    cluster.absorb(hx, cy, size)
                    break
            else:
                clusters.append(_Cluster(hx, cy, size, 1, len(clusters)))

    ranked = sorted(clusters, key=lambda c: (-c.hits, c.order))
    return [
        FinderCandidate(
            x=c.x, y=c.y, size=c.size,
            module_size=c.size / FINDER_MODULES, hits=c.hits,
        )
        for c in ranked
        if c.hits >= MIN_RING_HITS
    ]


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------

class LocatorDetector:
    """Finds up to three well-separated finder patterns in a bitmap."""

    def __init__(self, config: DetectionConfig | None = None):
        self.config = config or DetectionConfig()

    def candidates(self, bitmap: np.ndarray) -> list[FinderCandidate]:
        """Filtered candidates (at most 3) without enforcing the count."""
        height, width = bitmap.shape
        cfg = self.config
        if cfg.mode == DetectionMode.DENSITY:
            raw = scan_density_candidates(bitmap, cfg.patch_size, cfg.stride, cfg.density_band)
        else:
            raw = find_ring_candidates(bitmap, cfg.stride)

        kept = dedupe_candidates(raw, min_separation_for(width, height, cfg))
        logger.debug(
            "Locator (%s): %d raw candidate(s), %d kept",
            cfg.mode.value, len(raw), len(kept),
        )
        return sorted(kept, key=lambda c: (c.y, c.x))

    def detect(self, bitmap: np.ndarray) -> tuple[FinderCandidate, ...]:
        """Exactly three finder candidates.

        Raises:
            LocatorNotFound: If fewer than three survive filtering.
        """
        kept = self.candidates(bitmap)
        if len(kept) < 3:
            raise LocatorNotFound(len(kept), kept)
        return tuple(kept)
