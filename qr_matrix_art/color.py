"""Blend formulas and RGB <-> CIELAB conversion.

All functions accept scalars or numpy arrays; color arguments are
``(..., 3)`` arrays in [0, 255].
"""

import numpy as np

from qr_matrix_art.settings import BlendMode

# sRGB (D65) to XYZ and back
_RGB_TO_XYZ = np.array([
    [0.4124, 0.3576, 0.1805],
    [0.2126, 0.7152, 0.0722],
    [0.0193, 0.1192, 0.9505],
])
_XYZ_TO_RGB = np.array([
    [3.2406, -1.5372, -0.4986],
    [-0.9689, 1.8758, 0.0415],
    [0.0557, -0.2040, 1.0570],
])
_WHITE = np.array([0.95047, 1.00000, 1.08883])

_EPSILON = 0.008856
_KAPPA_SLOPE = 7.787


def rgb_to_lab(rgb) -> np.ndarray:
    """Convert sRGB in [0, 255] to CIELAB (L in [0, 100])."""
    c = np.asarray(rgb, dtype=np.float64) / 255.0
    c = np.where(c > 0.04045, ((c + 0.055) / 1.055) ** 2.4, c / 12.92)

    xyz = (c @ _RGB_TO_XYZ.T) / _WHITE
    f = np.where(xyz > _EPSILON, np.cbrt(xyz), _KAPPA_SLOPE * xyz + 16 / 116)
    fx, fy, fz = f[..., 0], f[..., 1], f[..., 2]
    return np.stack([116 * fy - 16, 500 * (fx - fy), 200 * (fy - fz)], axis=-1)


def lab_to_rgb(lab) -> np.ndarray:
    """Convert CIELAB back to sRGB, rounded and clipped to [0, 255]."""
    lab = np.asarray(lab, dtype=np.float64)
    fy = (lab[..., 0] + 16) / 116
    fx = lab[..., 1] / 500 + fy
    fz = fy - lab[..., 2] / 200
    f = np.stack([fx, fy, fz], axis=-1)

    cubed = f ** 3
    xyz = np.where(cubed > _EPSILON, cubed, (f - 16 / 116) / _KAPPA_SLOPE) * _WHITE
    c = xyz @ _XYZ_TO_RGB.T
    # np.power on negatives would produce NaN; those land in the linear branch anyway
    c = np.where(c > 0.0031308, 1.055 * np.power(np.maximum(c, 0.0031308), 1 / 2.4) - 0.055, 12.92 * c)
    return np.clip(np.round(c * 255), 0, 255)


def lab_blend(qr, bg, opacity) -> np.ndarray:
    """Linear interpolation from background to QR color in LAB space."""
    opacity = np.asarray(opacity, dtype=np.float64)
    if opacity.ndim:
        opacity = opacity[..., None]
    qr_lab = rgb_to_lab(qr)
    bg_lab = rgb_to_lab(bg)
    return lab_to_rgb(bg_lab + (qr_lab - bg_lab) * opacity)


def blend_channels(qr, bg, mode: BlendMode) -> np.ndarray:
    """Raw blend of QR (top) over background (base), before opacity."""
    qr = np.asarray(qr, dtype=np.float64)
    bg = np.asarray(bg, dtype=np.float64)

    if mode == BlendMode.MULTIPLY:
        return qr * bg / 255
    if mode == BlendMode.OVERLAY:
        return np.where(
            bg < 128,
            2 * qr * bg / 255,
            255 - 2 * (255 - qr) * (255 - bg) / 255,
        )
    if mode == BlendMode.SOFT_LIGHT:
        return np.where(
            bg < 128,
            2 * qr * bg / 255 + qr * qr * (255 - 2 * bg) / (255 * 255),
            qr * (255 + (2 * bg - 255) * (255 - qr) / 255) / 255,
        )
    return qr


def apply_blend_mode(qr, bg, opacity, mode: BlendMode = BlendMode.NORMAL) -> np.ndarray:
    """Blend and composite with ``bg + (blend - bg) * opacity``.

    Results are rounded and clipped to [0, 255] for any inputs in range.
    """
    mode = BlendMode(mode)
    bg_arr = np.asarray(bg, dtype=np.float64)
    blended = blend_channels(qr, bg_arr, mode)

    opacity = np.asarray(opacity, dtype=np.float64)
    if opacity.ndim and opacity.ndim < blended.ndim:
        opacity = opacity[..., None]
    out = bg_arr + (blended - bg_arr) * opacity
    return np.clip(np.round(out), 0, 255)
