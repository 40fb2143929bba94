"""Image loading, conversion and saving utilities."""

import io
import os
import tempfile
from dataclasses import dataclass
from enum import Enum

import numpy as np
from PIL import Image, UnidentifiedImageError

from qr_matrix_art.errors import DecodeError


class VerifyResult(Enum):
    """Result of QR scannability verification."""
    SCANNABLE = "scannable"
    NOT_SCANNABLE = "not_scannable"
    SKIPPED = "skipped"  # pyzbar not installed


@dataclass(frozen=True)
class RasterImage:
    """Decoded RGBA raster, row-major, 4 bytes per pixel.

    The pixel array is marked read-only; every pipeline stage treats the
    raster as input and derives new buffers from it.
    """

    width: int
    height: int
    pixels: np.ndarray  # (height, width, 4) uint8

    def __post_init__(self):
        if self.pixels.shape != (self.height, self.width, 4):
            raise ValueError(
                f"pixel buffer shape {self.pixels.shape} does not match "
                f"{self.width}x{self.height} RGBA"
            )
        if self.pixels.flags.writeable:
            frozen = np.array(self.pixels, dtype=np.uint8, copy=True)
            frozen.setflags(write=False)
            object.__setattr__(self, "pixels", frozen)

    @classmethod
    def from_pil(cls, img: Image.Image) -> "RasterImage":
        rgba = img.convert("RGBA")
        arr = np.asarray(rgba, dtype=np.uint8)
        return cls(width=rgba.width, height=rgba.height, pixels=arr)

    @classmethod
    def from_array(cls, arr: np.ndarray) -> "RasterImage":
        """Build from an (H, W), (H, W, 3) or (H, W, 4) uint8 array."""
        arr = np.asarray(arr)
        if arr.ndim == 2:
            arr = np.stack([arr, arr, arr], axis=-1)
        if arr.ndim != 3 or arr.shape[2] not in (3, 4):
            raise ValueError(f"Unsupported array shape {arr.shape}")
        arr = np.clip(arr, 0, 255).astype(np.uint8)
        if arr.shape[2] == 3:
            alpha = np.full(arr.shape[:2] + (1,), 255, dtype=np.uint8)
            arr = np.concatenate([arr, alpha], axis=2)
        return cls(width=arr.shape[1], height=arr.shape[0], pixels=arr)

    @property
    def rgb(self) -> np.ndarray:
        return self.pixels[:, :, :3]

    def to_pil(self) -> Image.Image:
        return Image.fromarray(np.array(self.pixels))


def decode_image(data: bytes) -> RasterImage:
    """Decode raw image bytes (any format Pillow reads) into a RasterImage.

    Raises:
        DecodeError: If the bytes are not a valid image.
    """
    if not data:
        raise DecodeError("Empty image data.")
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise DecodeError(f"Could not decode image: {e}")
    return RasterImage.from_pil(img)


def load_raster(path: str) -> RasterImage:
    """Load an image file from disk.

    Raises:
        FileNotFoundError: If the image file doesn't exist.
        DecodeError: If the file is not a valid image.
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Image not found: {path}")

    with open(path, "rb") as fh:
        data = fh.read()
    try:
        return decode_image(data)
    except DecodeError as e:
        raise DecodeError(f"Could not open image '{path}': {e}")


def save_temp_png(img: Image.Image, prefix: str = "qr_matrix_art_") -> str:
    """Save an image to a unique temporary PNG and return its path."""
    tmp = tempfile.NamedTemporaryFile(suffix=".png", prefix=prefix, delete=False)
    img.save(tmp.name, "PNG")
    tmp.close()
    return tmp.name


def save_output(img: Image.Image, output_path: str) -> str:
    """Save a rendered image, creating parent directories as needed.

    The format follows the output extension; PNG is used when there is none.
    JPEG output drops the alpha channel.
    """
    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)

    ext = os.path.splitext(output_path)[1].lower()
    if ext in (".jpg", ".jpeg"):
        img = img.convert("RGB")
    if ext:
        img.save(output_path)
    else:
        img.save(output_path, "PNG")
    return output_path


def verify_qr_scannable(img: Image.Image) -> tuple[VerifyResult, str | None]:
    """Attempt a real decode of the rendered image.

    Uses pyzbar if available, otherwise returns SKIPPED.

    Returns:
        Tuple of (VerifyResult, decoded_data: str | None).
    """
    try:
        from pyzbar.pyzbar import decode as pyzbar_decode
    except ImportError:
        return VerifyResult.SKIPPED, None

    results = pyzbar_decode(img.convert("RGB"))
    if results:
        decoded = results[0].data.decode("utf-8", errors="replace")
        return VerifyResult.SCANNABLE, decoded
    return VerifyResult.NOT_SCANNABLE, None


def cleanup_temp_files(*paths: str) -> None:
    """Remove temporary files, silently ignoring errors."""
    for path in paths:
        if path:
            try:
                os.unlink(path)
            except OSError:
                pass
