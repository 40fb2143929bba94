"""Build QR codes and rasterize module matrices."""

import numpy as np
import qrcode
from PIL import Image

MAX_QR_DATA_LENGTH = 2953  # Max alphanumeric chars at QR version 40, EC level H

_ERROR_LEVELS = {
    "L": qrcode.constants.ERROR_CORRECT_L,
    "M": qrcode.constants.ERROR_CORRECT_M,
    "Q": qrcode.constants.ERROR_CORRECT_Q,
    "H": qrcode.constants.ERROR_CORRECT_H,
}


def build_qr(data: str, error_correction: str = "H", border: int = 4) -> qrcode.QRCode:
    """Encode ``data`` with python-qrcode at the smallest fitting version.

    Raises:
        ValueError: If the data is empty, too long, or the level is unknown.
    """
    if not data.strip():
        raise ValueError("QR data cannot be empty.")
    if len(data) > MAX_QR_DATA_LENGTH:
        raise ValueError(
            f"QR data too long ({len(data)} chars). "
            f"Maximum is {MAX_QR_DATA_LENGTH} characters with error correction level H."
        )
    if error_correction not in _ERROR_LEVELS:
        raise ValueError(f"Unknown error correction level '{error_correction}'. Choose from: L, M, Q, H")

    qr = qrcode.QRCode(
        error_correction=_ERROR_LEVELS[error_correction],
        box_size=10,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)
    return qr


def render_matrix_image(
    matrix,
    module_px: int,
    border: int = 0,
    dark=(0, 0, 0),
    light=(255, 255, 255),
) -> Image.Image:
    """Rasterize a QRMatrix with square modules of ``module_px`` pixels.

    ``border`` is the quiet zone width in modules.
    """
    if module_px <= 0:
        raise ValueError(f"module_px must be positive, got {module_px}")
    cells = np.pad(matrix.cells, border, constant_values=False)
    cells = np.repeat(np.repeat(cells, module_px, axis=0), module_px, axis=1)

    rgb = np.empty(cells.shape + (3,), dtype=np.uint8)
    rgb[cells] = dark
    rgb[~cells] = light
    return Image.fromarray(rgb)
