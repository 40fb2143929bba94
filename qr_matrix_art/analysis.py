"""Background texture analysis and per-module neighbourhood context.

Region scores decide where a QR overlay is least noticeable: busy,
high-contrast areas hide it best. Module context only drives stylistic
variation in procedural art and never changes matrix values.
"""

import logging
from dataclasses import dataclass

import numpy as np

from qr_matrix_art.binarize import luminance
from qr_matrix_art.image_utils import RasterImage
from qr_matrix_art.settings import (
    POSITION_ORDER,
    BlendMode,
    Position,
    RenderSettings,
)

logger = logging.getLogger(__name__)

TEXTURE_WEIGHTS = (0.3, 0.3, 0.2, 0.2)  # contrast, variance, edges, colors
COLOR_QUANT_STEP = 32
COLOR_COMPLEXITY_CAP = 64


# ---------------------------------------------------------------------------
# Region scoring
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RegionFeatures:
    index: int
    position: Position
    contrast: float
    variance: float
    edge_strength: float
    color_complexity: float
    texture_score: float


@dataclass(frozen=True)
class BackgroundAnalysis:
    regions: tuple[RegionFeatures, ...]
    best_region: RegionFeatures
    recommended: RenderSettings


def divide_into_regions(rgb: np.ndarray, rows: int = 3, cols: int = 3) -> list[np.ndarray]:
    """Split an (H, W, C) array into rows*cols equal cells (floor sizes, row-major)."""
    height, width = rgb.shape[:2]
    rh, rw = height // rows, width // cols
    return [
        rgb[r * rh:(r + 1) * rh, c * rw:(c + 1) * rw]
        for r in range(rows)
        for c in range(cols)
    ]


def region_contrast(lum: np.ndarray) -> float:
    if lum.size == 0:
        return 0.0
    return float(lum.max() - lum.min()) / 255.0


def region_variance(lum: np.ndarray) -> float:
    """Standard deviation of luminance, normalized by 255."""
    if lum.size == 0:
        return 0.0
    return float(lum.std()) / 255.0


def region_edge_strength(lum: np.ndarray) -> float:
    """Mean central-difference gradient magnitude over interior pixels."""
    if lum.size < 4 or lum.shape[0] < 3 or lum.shape[1] < 3:
        return 0.0
    gx = lum[1:-1, 2:] - lum[1:-1, :-2]
    gy = lum[2:, 1:-1] - lum[:-2, 1:-1]
    magnitude = np.sqrt(gx * gx + gy * gy)
    return float(magnitude.sum()) / (lum.size * 255.0)


def region_color_complexity(rgb: np.ndarray) -> float:
    """Distinct 32-step quantized colors, normalized to [0, 1]."""
    if rgb.size == 0:
        return 0.0
    quant = (rgb[..., :3].astype(np.int64) // COLOR_QUANT_STEP).reshape(-1, 3)
    keys = quant[:, 0] * 64 + quant[:, 1] * 8 + quant[:, 2]
    return min(len(np.unique(keys)) / float(COLOR_COMPLEXITY_CAP), 1.0)


def texture_score(contrast: float, variance: float, edge_strength: float, color_complexity: float) -> float:
    wc, wv, we, wcc = TEXTURE_WEIGHTS
    return wc * contrast + wv * variance + we * edge_strength + wcc * color_complexity


def score_region(rgb: np.ndarray, index: int = 0, position: Position = Position.CENTER) -> RegionFeatures:
    lum = luminance(rgb)
    contrast = region_contrast(lum)
    variance = region_variance(lum)
    edges = region_edge_strength(lum)
    colors = region_color_complexity(rgb)
    return RegionFeatures(
        index=index,
        position=position,
        contrast=contrast,
        variance=variance,
        edge_strength=edges,
        color_complexity=colors,
        texture_score=texture_score(contrast, variance, edges, colors),
    )


def find_best_hiding_region(regions) -> RegionFeatures:
    """Most textured region, excluding the center (usually the subject)."""
    candidates = [r for r in regions if r.position != Position.CENTER]
    if not candidates:
        return regions[0]
    return max(candidates, key=lambda r: r.texture_score)


def recommend_settings(region: RegionFeatures) -> RenderSettings:
    """Starting compositing parameters tuned to a region's texture."""
    opacity, blend_mode = 0.3, BlendMode.MULTIPLY
    if region.contrast > 0.6:
        # Busy area: fainter overlay is enough
        opacity, blend_mode = 0.2, BlendMode.SOFT_LIGHT
    elif region.contrast < 0.3:
        opacity, blend_mode = 0.4, BlendMode.OVERLAY

    if region.texture_score > 0.7:
        edge_strength, texture_adaption = 0.3, 0.8
    else:
        edge_strength, texture_adaption = 0.7, 0.5

    return RenderSettings(
        opacity=opacity,
        blend_mode=blend_mode,
        position=region.position,
        size_px=150,
        edge_strength=edge_strength,
        texture_adaption=texture_adaption,
    )


def analyze_background(raster: RasterImage) -> BackgroundAnalysis:
    """Score a 3x3 grid of regions and pick the best place to hide a QR code."""
    regions = tuple(
        score_region(cell, index=i, position=POSITION_ORDER[i])
        for i, cell in enumerate(divide_into_regions(raster.rgb, 3, 3))
    )
    best = find_best_hiding_region(regions)
    logger.info(
        "Best hiding region: %s (texture %.3f)", best.position.value, best.texture_score,
    )
    return BackgroundAnalysis(regions=regions, best_region=best, recommended=recommend_settings(best))


# ---------------------------------------------------------------------------
# Module context
# ---------------------------------------------------------------------------

NEIGHBOR_OFFSETS = tuple(
    (dr, dc) for dr in (-1, 0, 1) for dc in (-1, 0, 1) if (dr, dc) != (0, 0)
)


@dataclass(frozen=True)
class ModuleContext:
    """Neighbourhood of one module; ``None`` marks neighbours outside the grid."""

    neighbor_states: tuple[bool | None, ...]
    matching_neighbor_count: int
    is_edge: bool
    is_corner: bool


def module_context(matrix, row: int, col: int) -> ModuleContext:
    size = matrix.size
    value = matrix[row, col]
    states = []
    for dr, dc in NEIGHBOR_OFFSETS:
        r, c = row + dr, col + dc
        states.append(matrix[r, c] if 0 <= r < size and 0 <= c < size else None)

    on_row_edge = row in (0, size - 1)
    on_col_edge = col in (0, size - 1)
    return ModuleContext(
        neighbor_states=tuple(states),
        matching_neighbor_count=sum(1 for s in states if s is not None and s == value),
        is_edge=on_row_edge or on_col_edge,
        is_corner=on_row_edge and on_col_edge,
    )


def iter_module_contexts(matrix):
    """Yield ``(row, col, is_dark, context)`` for every module, row-major."""
    for row in range(matrix.size):
        for col in range(matrix.size):
            yield row, col, matrix[row, col], module_context(matrix, row, col)


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------

def format_summary(recovery=None, background: BackgroundAnalysis | None = None) -> str:
    """Human-readable analysis summary for the CLI."""
    lines = []
    if recovery is not None:
        grid = recovery.grid
        lines.append("QR matrix")
        lines.append(f"  Modules:      {grid.module_count} x {grid.module_count}")
        lines.append(f"  Version:      ~{grid.version}")
        lines.append(f"  Module size:  {grid.module_size:.2f} px")
        lines.append(f"  Threshold:    {recovery.binarization.threshold}")
        lines.append(f"  Dark ratio:   {recovery.matrix.dark_ratio:.2f}")
        anchors = ", ".join(f"({a.x:.0f}, {a.y:.0f})" for a in grid.anchors)
        lines.append(f"  Anchors:      {anchors}")

    if background is not None:
        if lines:
            lines.append("")
        lines.append("Background regions")
        lines.append(f"  {'position':<14}{'contrast':>9}{'variance':>9}{'edges':>8}{'colors':>8}{'texture':>9}")
        for r in background.regions:
            marker = " *" if r is background.best_region else ""
            lines.append(
                f"  {r.position.value:<14}{r.contrast:>9.3f}{r.variance:>9.3f}"
                f"{r.edge_strength:>8.3f}{r.color_complexity:>8.3f}{r.texture_score:>9.3f}{marker}"
            )
        rec = background.recommended
        lines.append("")
        lines.append(f"  Best hiding position: {background.best_region.position.value}")
        lines.append(
            f"  Recommended: opacity={rec.opacity} blend={rec.blend_mode.value} "
            f"size={rec.size_px}px edge={rec.edge_strength} texture={rec.texture_adaption}"
        )
    return "\n".join(lines)
