"""Procedural art rendering driven by a QR module matrix.

Each module becomes a small scene element: a house or snow, a tree or a
clearing, and so on. The element's look varies with its neighbourhood so
clusters read as villages and forests rather than a grid. What must not
vary is brightness: dark modules stay dark and light modules stay light on
average, so the artwork still binarizes back to the same matrix.
"""

import logging
import math
import random
from dataclasses import dataclass
from typing import Callable

import numpy as np
from PIL import Image, ImageDraw, ImageFilter

from qr_matrix_art.analysis import ModuleContext, iter_module_contexts
from qr_matrix_art.binarize import luminance
from qr_matrix_art.qr_generator import render_matrix_image
from qr_matrix_art.settings import ArtSettings, ArtStyle

logger = logging.getLogger(__name__)

# Mean-luminance contract per module
DARK_CEILING = 100.0
LIGHT_FLOOR = 160.0
CONTRAST_MARGIN = 10.0

Box = tuple[int, int, int, int]  # x0, y0, x1, y1 (exclusive)
ElementRenderer = Callable[[ImageDraw.ImageDraw, Box, ModuleContext, random.Random, int], None]


def _hex(color: str) -> tuple[int, int, int]:
    color = color.lstrip("#")
    return tuple(int(color[i:i + 2], 16) for i in (0, 2, 4))


def adjust_brightness(color, amount: float) -> tuple[int, int, int]:
    """Lighten (amount > 0) or darken (amount < 0) an RGB color."""
    rgb = _hex(color) if isinstance(color, str) else tuple(color)
    if amount >= 0:
        return tuple(int(round(c + (255 - c) * amount)) for c in rgb)
    return tuple(int(round(c * (1 + amount))) for c in rgb)


def _inset(box: Box, scale: float) -> tuple[float, float, float, float]:
    x0, y0, x1, y1 = box
    size = x1 - x0
    inner = size * scale
    off = (size - inner) / 2.0
    return x0 + off, y0 + off, x0 + off + inner, y0 + off + inner


def _fill(draw: ImageDraw.ImageDraw, box: Box, color) -> None:
    x0, y0, x1, y1 = box
    draw.rectangle((x0, y0, x1 - 1, y1 - 1), fill=color)


# ---------------------------------------------------------------------------
# Winter village
# ---------------------------------------------------------------------------

HOUSE_COLORS = {"cabin": "#5A2E0E", "cottage": "#6B3A1F", "chalet": "#432C15"}
SNOW_SHADES = ["#FFFFFF", "#F8F8FF", "#F0F8FF", "#E6E6FA"]


def draw_house(draw, box, context, rng, index):
    house_type = ("cabin", "cottage", "chalet")[index % 3]
    _fill(draw, box, "#2B1D12")

    scale = 0.8 + (context.matching_neighbor_count / 8) * 0.2
    x0, y0, x1, y1 = _inset(box, scale)
    size = x1 - x0
    body = HOUSE_COLORS[house_type]
    if context.matching_neighbor_count > 5:
        body = adjust_brightness(body, 0.1)

    draw.rectangle((x0, y0 + size * 0.3, x1, y1), fill=body)
    draw.polygon(
        [(x0, y0 + size * 0.3), ((x0 + x1) / 2, y0), (x1, y0 + size * 0.3)],
        fill=adjust_brightness(body, -0.3),
    )
    if size > 8:
        window = max(2.0, size * 0.12)
        wx, wy = x0 + size * 0.6, y0 + size * 0.5
        draw.rectangle((wx, wy, wx + window, wy + window), fill="#FFD54F")


def draw_snow(draw, box, context, rng, index):
    base = SNOW_SHADES[index % len(SNOW_SHADES)]
    _fill(draw, box, base)
    x0, y0, x1, y1 = box
    size = x1 - x0
    if size < 6:
        return
    # Drift shadow along the bottom edge
    draw.rectangle((x0, y1 - max(1, size // 8), x1 - 1, y1 - 1), fill=adjust_brightness(base, -0.06))
    for _ in range(size // 10 + 1):
        if rng.random() < 0.3:
            fx, fy = x0 + rng.random() * size, y0 + rng.random() * size
            r = max(1.0, size * 0.08)
            draw.ellipse((fx - r, fy - r, fx + r, fy + r), fill="#E0E6E6")


# ---------------------------------------------------------------------------
# Forest cabin
# ---------------------------------------------------------------------------

CLEARING_COLORS = ["#90EE90", "#98FB98", "#F0FFF0", "#ADFF2F"]


def draw_tree(draw, box, context, rng, index):
    tree_type = ("pine", "oak", "birch")[index % 3]
    _fill(draw, box, "#16301A")

    scale = 0.7 + (context.matching_neighbor_count / 8) * 0.3
    x0, y0, x1, y1 = _inset(box, scale)
    size = x1 - x0
    trunk = max(2.0, size * 0.2)
    draw.rectangle(((x0 + x1 - trunk) / 2, y1 - size * 0.4, (x0 + x1 + trunk) / 2, y1), fill="#4A2C12")

    if tree_type == "pine":
        draw.polygon(
            [((x0 + x1) / 2, y0), (x0 + size * 0.05, y0 + size * 0.75), (x1 - size * 0.05, y0 + size * 0.75)],
            fill="#0B4D0B",
        )
    else:
        crown = "#1E5E1E" if tree_type == "oak" else "#2F5F2F"
        r = size * 0.4
        cx, cy = (x0 + x1) / 2, y0 + size * 0.4
        draw.ellipse((cx - r, cy - r, cx + r, cy + r), fill=crown)


def draw_clearing(draw, box, context, rng, index):
    base = CLEARING_COLORS[index % len(CLEARING_COLORS)]
    _fill(draw, box, base)
    x0, y0, x1, y1 = box
    size = x1 - x0
    if size < 4:
        return
    blade = max(1.0, size * 0.25)
    for _ in range(size // 3):
        if rng.random() < 0.4:
            gx, gy = x0 + rng.random() * size, y0 + blade + rng.random() * (size - blade)
            draw.line((gx, gy, gx, gy - blade), fill="#3C9A3C", width=1)


# ---------------------------------------------------------------------------
# Japanese garden
# ---------------------------------------------------------------------------

PATH_COLORS = ["#D2B48C", "#DEB887", "#F5DEB3"]


def draw_building(draw, box, context, rng, index):
    _fill(draw, box, "#2E2420")
    x0, y0, x1, y1 = box
    size = x1 - x0
    draw.rectangle((x0, y0 + size * 0.4, x1 - 1, y1 - 1), fill="#5C3317")
    # Eaves overhang the cell edge only on the sides joined to other buildings
    left = x0 - (size * 0.1 if context.neighbor_states[3] else 0)
    right = x1 - 1 + (size * 0.1 if context.neighbor_states[4] else 0)
    draw.rectangle((left, y0 + size * 0.2, right, y0 + size * 0.45), fill="#3A3A3A")


def draw_path(draw, box, context, rng, index):
    _fill(draw, box, PATH_COLORS[index % len(PATH_COLORS)])
    x0, y0, x1, y1 = box
    size = x1 - x0
    if size >= 8 and rng.random() < 0.5:
        r = size * 0.15
        cx, cy = x0 + size * (0.3 + 0.4 * rng.random()), y0 + size * (0.3 + 0.4 * rng.random())
        draw.ellipse((cx - r, cy - r, cx + r, cy + r), fill="#C8A878")


# ---------------------------------------------------------------------------
# City at night
# ---------------------------------------------------------------------------

SKY_COLORS = ["#C9D6EA", "#D8E2F0", "#BFCDE3"]


def draw_skyscraper(draw, box, context, rng, index):
    _fill(draw, box, "#1F3333")
    x0, y0, x1, y1 = box
    size = x1 - x0
    if size > 6:
        window = max(1.0, size * 0.2)
        wx, wy = x0 + size * 0.65, y0 + size * 0.3
        draw.rectangle((wx, wy, wx + window, wy + window), fill="#FFD700")


def draw_sky(draw, box, context, rng, index):
    _fill(draw, box, SKY_COLORS[index % len(SKY_COLORS)])
    x0, y0, x1, y1 = box
    size = x1 - x0
    if size > 8 and rng.random() < 0.1:
        draw.ellipse((x0 + size * 0.1, y0 + size * 0.1, x0 + size * 0.5, y0 + size * 0.5), fill="#F5F5F5")


# ---------------------------------------------------------------------------
# Abstract
# ---------------------------------------------------------------------------

ABSTRACT_DARK = "#1B2631"
ABSTRACT_BACKING = "#2C3E50"
ABSTRACT_LIGHT = "#ECF0F1"


def draw_shape(draw, box, context, rng, index):
    _fill(draw, box, ABSTRACT_BACKING)
    x0, y0, x1, y1 = box
    size = x1 - x0
    cx, cy = x0 + size / 2.0, y0 + size / 2.0
    shape = index % 4
    if shape == 0:
        _fill(draw, box, ABSTRACT_DARK)
    elif shape == 1:
        draw.ellipse((x0, y0, x1 - 1, y1 - 1), fill=ABSTRACT_DARK)
    elif shape == 2:
        draw.polygon([(cx, y0), (x0, y1 - 1), (x1 - 1, y1 - 1)], fill=ABSTRACT_DARK)
    else:
        draw.polygon([(cx, y0), (x1 - 1, cy), (cx, y1 - 1), (x0, cy)], fill=ABSTRACT_DARK)


def draw_plain(draw, box, context, rng, index):
    _fill(draw, box, ABSTRACT_LIGHT)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

ELEMENT_RENDERERS: dict[ArtStyle, tuple[ElementRenderer, ElementRenderer]] = {
    ArtStyle.WINTER_VILLAGE: (draw_house, draw_snow),
    ArtStyle.FOREST_CABIN: (draw_tree, draw_clearing),
    ArtStyle.JAPANESE_GARDEN: (draw_building, draw_path),
    ArtStyle.CITY_NIGHT: (draw_skyscraper, draw_sky),
    ArtStyle.ABSTRACT: (draw_shape, draw_plain),
}

QUIET_ZONE_COLORS = {
    ArtStyle.WINTER_VILLAGE: "#FFFFFF",
    ArtStyle.FOREST_CABIN: "#F0FFF0",
    ArtStyle.JAPANESE_GARDEN: "#F5DEB3",
    ArtStyle.CITY_NIGHT: "#D8E2F0",
    ArtStyle.ABSTRACT: ABSTRACT_LIGHT,
}


def cell_edges(count: int, border: int, size_px: int) -> np.ndarray:
    """Pixel boundaries of ``count`` cells after a ``border``-module margin."""
    pitch = size_px / float(count + 2 * border)
    return np.round((np.arange(count + 1) + border) * pitch).astype(int)


# ---------------------------------------------------------------------------
# Lighting
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Lighting:
    """A tint gradient washed over the light modules.

    ``kind`` is ``"radial"`` (from ``start``, reaching ``end_color`` at
    ``radius``) or ``"linear"`` (from ``start`` to ``end``). Positions are
    fractions of the canvas. Every tint must itself be light so that the
    wash cannot pull a light module under ``LIGHT_FLOOR``.
    """

    kind: str
    start: tuple[float, float]
    start_color: tuple[int, int, int]
    start_alpha: float
    end_color: tuple[int, int, int]
    end_alpha: float
    end: tuple[float, float] = (1.0, 1.0)
    radius: float = 1.0

    def field(self, width: int, height: int) -> np.ndarray:
        """Gradient position in [0, 1] for every pixel."""
        yy, xx = np.mgrid[0:height, 0:width].astype(np.float64)
        sx, sy = self.start[0] * width, self.start[1] * height
        if self.kind == "radial":
            t = np.hypot(xx - sx, yy - sy) / (self.radius * max(width, height))
        else:
            dx, dy = self.end[0] * width - sx, self.end[1] * height - sy
            t = ((xx - sx) * dx + (yy - sy) * dy) / (dx * dx + dy * dy)
        return np.clip(t, 0.0, 1.0)


LIGHTING = {
    ArtStyle.WINTER_VILLAGE: Lighting("radial", (0.3, 0.3), (255, 255, 255), 0.3, (135, 206, 235), 0.1, radius=0.8),
    ArtStyle.FOREST_CABIN: Lighting("linear", (0.0, 0.0), (255, 255, 255), 0.2, (144, 238, 144), 0.1),
    ArtStyle.JAPANESE_GARDEN: Lighting("radial", (0.5, 0.5), (255, 228, 225), 0.2, (210, 180, 140), 0.1, radius=0.5),
    ArtStyle.CITY_NIGHT: Lighting("linear", (0.0, 0.0), (230, 236, 250), 0.2, (176, 196, 222), 0.1, end=(0.0, 1.0)),
    ArtStyle.ABSTRACT: Lighting("linear", (0.0, 0.0), (255, 255, 255), 0.15, (213, 219, 219), 0.1),
}


def _cell_index(count: int, border: int, size_px: int) -> np.ndarray:
    """Module index of every pixel along one axis; -1 outside the symbol."""
    edges = cell_edges(count, border, size_px)
    index = np.searchsorted(edges, np.arange(size_px), side="right") - 1
    index[(index < 0) | (index >= count)] = -1
    return index


def apply_lighting(image: Image.Image, matrix, style, border: int = 0) -> Image.Image:
    """Wash the style's lighting gradient over light modules only.

    Dark modules and the quiet zone are left untouched.
    """
    lighting = LIGHTING[ArtStyle(style)]
    rgb = np.array(image.convert("RGB"), dtype=np.float64)
    height, width = rgb.shape[:2]

    rows = _cell_index(matrix.size, border, height)
    cols = _cell_index(matrix.size, border, width)
    inside = (rows >= 0)[:, None] & (cols >= 0)[None, :]
    dark = matrix.cells[np.ix_(np.maximum(rows, 0), np.maximum(cols, 0))]
    target = inside & ~dark

    t = lighting.field(width, height)[..., None]
    start = np.array(lighting.start_color, dtype=np.float64)
    end = np.array(lighting.end_color, dtype=np.float64)
    color = start + (end - start) * t
    alpha = lighting.start_alpha + (lighting.end_alpha - lighting.start_alpha) * t
    lit = rgb + (color - rgb) * alpha
    rgb[target] = lit[target]
    return Image.fromarray(np.clip(np.round(rgb), 0, 255).astype(np.uint8))


def enforce_module_contrast(image: Image.Image, matrix, border: int = 0) -> Image.Image:
    """Pull modules whose mean luminance breaks the dark/light contract back in line."""
    rgb = np.array(image.convert("RGB"), dtype=np.float64)
    edges = cell_edges(matrix.size, border, image.width)
    fixed = 0
    for row in range(matrix.size):
        ys = slice(edges[row], edges[row + 1])
        for col in range(matrix.size):
            xs = slice(edges[col], edges[col + 1])
            cell = rgb[ys, xs]
            if cell.size == 0:
                continue
            mean = float(luminance(cell).mean())
            if matrix[row, col] and mean > DARK_CEILING:
                rgb[ys, xs] = cell * ((DARK_CEILING - CONTRAST_MARGIN) / mean)
                fixed += 1
            elif not matrix[row, col] and mean < LIGHT_FLOOR:
                target = LIGHT_FLOOR + CONTRAST_MARGIN
                rgb[ys, xs] = 255 - (255 - cell) * ((255 - target) / (255 - mean))
                fixed += 1
    if fixed:
        logger.debug("Adjusted contrast of %d module(s)", fixed)
    return Image.fromarray(np.clip(np.round(rgb), 0, 255).astype(np.uint8))


def render_art(matrix, settings: ArtSettings | None = None) -> Image.Image:
    """Render one themed element per module onto a ``size_px`` square canvas."""
    settings = settings or ArtSettings()
    dark_renderer, light_renderer = ELEMENT_RENDERERS[settings.style]
    rng = random.Random(settings.seed)

    canvas = Image.new("RGB", (settings.size_px, settings.size_px), QUIET_ZONE_COLORS[settings.style])
    draw = ImageDraw.Draw(canvas)
    edges = cell_edges(matrix.size, settings.border_modules, settings.size_px)

    for row, col, is_dark, context in iter_module_contexts(matrix):
        box = (int(edges[col]), int(edges[row]), int(edges[col + 1]), int(edges[row + 1]))
        if box[2] <= box[0] or box[3] <= box[1]:
            continue
        renderer = dark_renderer if is_dark else light_renderer
        renderer(draw, box, context, rng, row + col)

    if settings.lighting:
        canvas = apply_lighting(canvas, matrix, settings.style, settings.border_modules)

    radius = math.floor(settings.denoising_strength * 3)
    if radius > 0:
        canvas = canvas.filter(ImageFilter.BoxBlur(radius))

    if settings.enforce_contrast:
        canvas = enforce_module_contrast(canvas, matrix, settings.border_modules)

    logger.info(
        "Rendered %s art: %d modules at %.1f px",
        settings.style.value, matrix.size, settings.size_px / (matrix.size + 2 * settings.border_modules),
    )
    return canvas


def render_control_image(matrix, size: int, blur_radius: float = 2.0, border: int = 0) -> Image.Image:
    """High-contrast black/white rendering of the matrix for ControlNet-style backends."""
    module_px = max(1, math.ceil(size / (matrix.size + 2 * border)))
    image = render_matrix_image(matrix, module_px, border=border)
    image = image.resize((size, size), Image.NEAREST)
    if blur_radius > 0:
        image = image.filter(ImageFilter.GaussianBlur(blur_radius))
    return image


def enhance_contrast(image: Image.Image, strength: float) -> Image.Image:
    """Stretch channels away from mid-gray: ``(v - 128) * (1 + strength) + 128``."""
    rgba = np.array(image.convert("RGBA"), dtype=np.float64)
    rgba[..., :3] = np.clip((rgba[..., :3] - 128) * (1 + strength) + 128, 0, 255)
    return Image.fromarray(rgba.astype(np.uint8))
