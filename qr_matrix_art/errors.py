"""Exception types raised across the recovery and rendering pipeline."""


class QRMatrixArtError(Exception):
    """Base class for all errors raised by qr_matrix_art."""


class DecodeError(QRMatrixArtError, ValueError):
    """Input bytes or file could not be decoded as an image."""


class LocatorNotFound(QRMatrixArtError):
    """Fewer than three finder patterns survived filtering.

    The caller should ask for a clearer, better lit photo; no matrix can be
    extracted from this image.
    """

    def __init__(self, found: int, candidates=()):
        self.found = found
        self.candidates = tuple(candidates)
        super().__init__(
            f"Found {found} finder pattern candidate(s), need 3. "
            "Try a sharper, evenly lit photo of the QR code."
        )


class GenerationServiceError(QRMatrixArtError):
    """A generative-image backend call failed or returned unusable data."""

    def __init__(self, message: str, backend: str | None = None):
        self.backend = backend
        prefix = f"[{backend}] " if backend else ""
        super().__init__(f"{prefix}{message}")


class VerificationFailed(QRMatrixArtError):
    """A rendered image no longer reproduces the expected module matrix."""

    def __init__(self, error_rate: float, max_error_rate: float):
        self.error_rate = error_rate
        self.max_error_rate = max_error_rate
        super().__init__(
            f"Recovered matrix differs in {error_rate:.1%} of modules "
            f"(allowed {max_error_rate:.1%})."
        )
