"""Pixel-level compositing of a QR image into a background photo.

Every destination pixel gets its own opacity: lowered over busy background
texture so the code hides, raised on the QR pixels a scanner depends on
(near-black/white and edge pixels). Busy areas are blended in LAB space,
calm areas with the selected blend formula.
"""

import logging

import numpy as np
from PIL import Image

from qr_matrix_art.binarize import luminance
from qr_matrix_art.color import apply_blend_mode, lab_blend
from qr_matrix_art.settings import (
    POSITION_MARGIN,
    POSITION_OFFSET_RATIO,
    Position,
    RenderSettings,
)

logger = logging.getLogger(__name__)

HIGH_TEXTURE = 0.6
LAB_TEXTURE = 0.5
HIGH_IMPORTANCE = 0.8
TEXTURE_REDUCTION = 0.3
IMPORTANCE_BOOST = 0.5
TEXTURE_WINDOW = 5


def calculate_position(
    position: Position,
    size: int,
    width: int,
    height: int,
    margin: int = POSITION_MARGIN,
) -> tuple[int, int]:
    """Top-left corner of a ``size`` square overlay at an anchor position."""
    position = Position(position)
    dx, dy = position.offsets
    x = (width - size) / 2.0 + dx * width * POSITION_OFFSET_RATIO
    y = (height - size) / 2.0 + dy * height * POSITION_OFFSET_RATIO

    def clamp(value: float, extent: int) -> int:
        high = extent - size - margin
        if high < margin:
            return max(0, (extent - size) // 2)
        return int(round(max(margin, min(value, high))))

    return clamp(x, width), clamp(y, height)


def qr_edge_map(rgb: np.ndarray) -> np.ndarray:
    """Largest luminance step to any 8-neighbour, normalized; borders are 0."""
    lum = luminance(rgb)
    h, w = lum.shape
    edges = np.zeros((h, w), dtype=np.float64)
    if h < 3 or w < 3:
        return edges

    center = lum[1:-1, 1:-1]
    best = np.zeros_like(center)
    for dy in (-1, 0, 1):
        for dx in (-1, 0, 1):
            if dx == 0 and dy == 0:
                continue
            neighbor = lum[1 + dy:h - 1 + dy, 1 + dx:w - 1 + dx]
            np.maximum(best, np.abs(center - neighbor), out=best)
    edges[1:-1, 1:-1] = best / 255.0
    return edges


def local_texture(rgb: np.ndarray, window: int = TEXTURE_WINDOW) -> np.ndarray:
    """Local luminance standard deviation, normalized and capped at 1.

    Pixels closer than ``window // 2`` to the border are 0.
    """
    lum = luminance(rgb)
    h, w = lum.shape
    half = window // 2
    texture = np.zeros((h, w), dtype=np.float64)
    if h < window or w < window:
        return texture

    def box_sum(values: np.ndarray) -> np.ndarray:
        table = np.zeros((h + 1, w + 1), dtype=np.float64)
        table[1:, 1:] = values.cumsum(axis=0).cumsum(axis=1)
        return (
            table[window:, window:] - table[:-window, window:]
            - table[window:, :-window] + table[:-window, :-window]
        )

    n = float(window * window)
    mean = box_sum(lum) / n
    variance = np.maximum(box_sum(lum * lum) / n - mean * mean, 0.0)
    texture[half:h - half, half:w - half] = np.minimum(np.sqrt(variance) / 255.0, 1.0)
    return texture


def pixel_importance(lum, edges) -> np.ndarray:
    """How much a QR pixel matters to scanning: pure black/white and edges rank highest."""
    lum = np.asarray(lum, dtype=np.float64) / 255.0
    color_importance = 1.0 - np.minimum(lum, 1.0 - lum)
    return np.minimum(color_importance * 0.7 + np.asarray(edges, dtype=np.float64) * 0.3, 1.0)


def adaptive_opacity(
    base: float,
    texture,
    importance,
    edge_strength: float,
    texture_adaption: float,
) -> np.ndarray:
    """Per-pixel opacity, clipped to [0, 1].

    Reduced by up to 30% over high-texture background (scaled by
    ``texture_adaption``), raised by up to 50% for high-importance QR
    pixels (scaled by ``edge_strength``).
    """
    texture = np.asarray(texture, dtype=np.float64)
    importance = np.asarray(importance, dtype=np.float64)
    opacity = np.full(np.broadcast(texture, importance).shape, float(base))
    opacity = np.where(texture > HIGH_TEXTURE, opacity * (1 - texture_adaption * TEXTURE_REDUCTION), opacity)
    opacity = np.where(importance > HIGH_IMPORTANCE, opacity * (1 + edge_strength * IMPORTANCE_BOOST), opacity)
    return np.clip(opacity, 0.0, 1.0)


def blend_pixels(qr_rgba: np.ndarray, bg_rgba: np.ndarray, settings: RenderSettings) -> np.ndarray:
    """Blend two equally sized RGBA arrays pixel by pixel."""
    if qr_rgba.shape != bg_rgba.shape:
        raise ValueError(f"shape mismatch: {qr_rgba.shape} vs {bg_rgba.shape}")

    qr_rgb = qr_rgba[..., :3].astype(np.float64)
    bg_rgb = bg_rgba[..., :3].astype(np.float64)

    importance = pixel_importance(luminance(qr_rgb), qr_edge_map(qr_rgb))
    texture = local_texture(bg_rgb)
    opacity = adaptive_opacity(
        settings.opacity, texture, importance,
        settings.edge_strength, settings.texture_adaption,
    )

    standard = apply_blend_mode(qr_rgb, bg_rgb, opacity, settings.blend_mode)
    perceptual = lab_blend(qr_rgb, bg_rgb, opacity)
    rgb = np.where((texture > LAB_TEXTURE)[..., None], perceptual, standard)

    out = np.empty_like(qr_rgba, dtype=np.uint8)
    out[..., :3] = rgb.astype(np.uint8)
    out[..., 3] = np.maximum(qr_rgba[..., 3], bg_rgba[..., 3])
    return out


def composite(qr_image: Image.Image, background: Image.Image, settings: RenderSettings) -> Image.Image:
    """Place and blend a QR image onto a background; returns an RGBA image
    with the background's dimensions."""
    bg = background.convert("RGBA")
    width, height = bg.size

    size = min(settings.size_px, width, height)
    if size < settings.size_px:
        logger.warning(
            "QR size %dpx does not fit a %dx%d background, using %dpx",
            settings.size_px, width, height, size,
        )

    qr = qr_image.convert("RGBA").resize((size, size), Image.LANCZOS)
    x, y = calculate_position(settings.position, size, width, height)

    canvas = np.array(bg, dtype=np.uint8)
    region = canvas[y:y + size, x:x + size]
    canvas[y:y + size, x:x + size] = blend_pixels(np.asarray(qr, dtype=np.uint8), region, settings)

    logger.debug(
        "Composited %dpx QR at (%d, %d) with %s/%.2f",
        size, x, y, settings.blend_mode.value, settings.opacity,
    )
    return Image.fromarray(canvas)
