"""Stateful front for one user's image-to-art workflow.

The session walks ``Idle -> ImageLoaded -> MatrixExtracted -> StyleSelected
-> Rendering -> Rendered``. Loading a new image always restarts it and bumps
a generation counter; work started under an older generation carries a
stale ticket and its completion is dropped.
"""

import logging
from enum import Enum

from PIL import Image

from qr_matrix_art.art import render_art
from qr_matrix_art.errors import QRMatrixArtError
from qr_matrix_art.image_utils import RasterImage, decode_image
from qr_matrix_art.matrix import QRMatrix
from qr_matrix_art.pipeline import MatrixRecovery, recover_matrix
from qr_matrix_art.settings import ArtSettings, ArtStyle, DetectionConfig

logger = logging.getLogger(__name__)


class SessionState(Enum):
    IDLE = "idle"
    IMAGE_LOADED = "image-loaded"
    MATRIX_EXTRACTED = "matrix-extracted"
    STYLE_SELECTED = "style-selected"
    RENDERING = "rendering"
    RENDERED = "rendered"


class ArtSession:
    """Drives recovery and rendering for one image at a time."""

    def __init__(self, config: DetectionConfig | None = None):
        self.config = config or DetectionConfig()
        self.generation = 0
        self._reset()

    def _reset(self) -> None:
        self.state = SessionState.IDLE
        self.raster: RasterImage | None = None
        self.recovery: MatrixRecovery | None = None
        self.matrix: QRMatrix | None = None
        self.settings: ArtSettings | None = None
        self.result: Image.Image | None = None
        self.last_error: Exception | None = None

    def _require(self, *states: SessionState) -> None:
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise RuntimeError(f"cannot do this in state '{self.state.value}' (needs {allowed})")

    def is_current(self, ticket: int) -> bool:
        return ticket == self.generation

    def _accept(self, ticket: int, what: str) -> bool:
        if not self.is_current(ticket):
            logger.debug("Dropping stale %s for ticket %d (current %d)", what, ticket, self.generation)
            return False
        return True

    # -- loading ------------------------------------------------------------

    def load_image(self, image: RasterImage | bytes) -> int:
        """Start over with a new image; returns the ticket for work on it.

        Raises:
            DecodeError: If ``image`` is bytes that do not decode.
        """
        raster = decode_image(image) if isinstance(image, (bytes, bytearray)) else image
        self.generation += 1
        self._reset()
        self.raster = raster
        self.state = SessionState.IMAGE_LOADED
        logger.debug("Session loaded %dx%d image (ticket %d)", raster.width, raster.height, self.generation)
        return self.generation

    def load_matrix(self, matrix: QRMatrix) -> int:
        """Start over from a known matrix, skipping recovery."""
        self.generation += 1
        self._reset()
        self.matrix = matrix
        self.state = SessionState.MATRIX_EXTRACTED
        return self.generation

    # -- extraction ---------------------------------------------------------

    def extract(self) -> MatrixRecovery | None:
        """Recover the matrix from the loaded image.

        On failure the session falls back to ``Idle``, keeps the error in
        ``last_error`` and returns ``None``.
        """
        self._require(SessionState.IMAGE_LOADED)
        ticket = self.generation
        try:
            recovery = recover_matrix(self.raster, self.config)
        except QRMatrixArtError as e:
            self.complete_extraction(ticket, error=e)
            return None
        self.complete_extraction(ticket, recovery)
        return recovery

    def complete_extraction(self, ticket: int, recovery: MatrixRecovery | None = None, error: Exception | None = None) -> bool:
        """Deliver an extraction result; returns False if the ticket is stale."""
        if not self._accept(ticket, "extraction"):
            return False
        self._require(SessionState.IMAGE_LOADED)
        if error is not None or recovery is None:
            self._reset()
            self.last_error = error
            logger.info("Extraction failed: %s", error)
            return True
        self.recovery = recovery
        self.matrix = recovery.matrix
        self.state = SessionState.MATRIX_EXTRACTED
        return True

    # -- rendering ----------------------------------------------------------

    def select_style(self, style: ArtSettings | ArtStyle | str) -> None:
        self._require(SessionState.MATRIX_EXTRACTED, SessionState.STYLE_SELECTED, SessionState.RENDERED)
        self.settings = style if isinstance(style, ArtSettings) else ArtSettings(style=style)
        self.result = None
        self.state = SessionState.STYLE_SELECTED

    def begin_render(self) -> int:
        self._require(SessionState.STYLE_SELECTED)
        self.state = SessionState.RENDERING
        return self.generation

    def complete_render(self, ticket: int, image: Image.Image) -> bool:
        """Deliver a rendered image; returns False if the ticket is stale."""
        if not self._accept(ticket, "render"):
            return False
        self._require(SessionState.RENDERING)
        self.result = image
        self.state = SessionState.RENDERED
        return True

    def render(self) -> Image.Image:
        ticket = self.begin_render()
        image = render_art(self.matrix, self.settings)
        self.complete_render(ticket, image)
        return image
