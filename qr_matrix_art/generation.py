"""Bounded-retry generation driven by a matrix-fidelity check.

One attempt asks the backend for an image, optionally boosts its contrast,
and checks that the image still binarizes to the expected module matrix.
Failed attempts nudge the strategy (stronger ControlNet conditioning, more
contrast, stronger prompt wording) and try again until the attempt budget
runs out. The best image seen is always returned; ``status`` says whether
it passed.
"""

import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable

from PIL import Image

from qr_matrix_art.art import enhance_contrast
from qr_matrix_art.binarize import binarize
from qr_matrix_art.errors import DecodeError, GenerationServiceError, VerificationFailed
from qr_matrix_art.grid import GridInfo, match_version
from qr_matrix_art.image_utils import RasterImage, cleanup_temp_files, load_raster, save_temp_png
from qr_matrix_art.matrix import QRMatrix, extract_matrix
from qr_matrix_art.settings import ArtStyle

logger = logging.getLogger(__name__)

DEFAULT_MAX_ERROR_RATE = 0.05

# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

STYLE_PROMPTS = {
    ArtStyle.WINTER_VILLAGE: (
        "A beautiful winter village scene with cozy wooden houses covered in snow, "
        "warm golden lights glowing from windows, surrounded by snow-covered pine trees "
        "and mountains in the background, peaceful evening atmosphere"
    ),
    ArtStyle.FOREST_CABIN: (
        "A serene forest landscape with tall pine trees, dappled sunlight filtering through "
        "the canopy, moss-covered ground, small clearings with wildflowers, a wooden cabin"
    ),
    ArtStyle.JAPANESE_GARDEN: (
        "A tranquil Japanese garden with traditional wooden buildings, stone pathways, "
        "carefully manicured trees, a small pond with koi fish, zen atmosphere"
    ),
    ArtStyle.CITY_NIGHT: (
        "A modern city skyline at night with illuminated skyscrapers, glowing windows, "
        "neon lights reflecting on wet streets, dramatic lighting"
    ),
    ArtStyle.ABSTRACT: (
        "An abstract artistic composition with geometric patterns, flowing organic shapes, "
        "harmonious color palette, modern art style, high contrast"
    ),
}

QUALITY_SUFFIX = "photorealistic, high quality, detailed"

EMPHASIS_PHRASES = (
    "strong contrast between light and dark areas",
    "crisp, well-defined dark shapes on bright ground",
    "deep shadows and bright highlights arranged in a clear grid",
    "bold high-contrast composition, no mid-tones",
)


def matrix_constraints(matrix: QRMatrix) -> str:
    """Composition hints derived from how much of the matrix is dark."""
    constraints = []
    if matrix.size >= 41:
        constraints.append("with intricate details and patterns that naturally incorporate geometric elements")
    elif matrix.size <= 25:
        constraints.append("with simple, clean composition and clear contrast areas")
    else:
        constraints.append("with balanced composition mixing detailed and simple areas")

    if matrix.dark_ratio > 0.5:
        constraints.append("featuring rich textures and varied light-dark contrasts")
    else:
        constraints.append("with clear distinction between light and dark areas")
    return ", ".join(constraints)


def build_prompt(style: ArtStyle | str, matrix: QRMatrix, custom: str | None = None, emphasis: int = 0) -> str:
    """Compose the generation prompt.

    ``custom`` replaces the style's scene description. Each ``emphasis``
    level appends one more contrast phrase; levels past the last phrase
    reuse it.
    """
    if custom and custom.strip():
        base = custom.strip()
    else:
        base = STYLE_PROMPTS[ArtStyle(style)]

    parts = [base, matrix_constraints(matrix)]
    for level in range(min(emphasis, len(EMPHASIS_PHRASES))):
        parts.append(EMPHASIS_PHRASES[level])
    parts.append(QUALITY_SUFFIX)
    return ". ".join(parts)


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

class MatrixVerifier:
    """Check that an image still carries an expected module matrix.

    The image is binarized and sampled on the geometry the matrix was
    rendered with (a square grid spanning the image, after ``border``
    quiet-zone modules), so finder detection is not needed.
    """

    def __init__(self, expected: QRMatrix, max_error_rate: float = DEFAULT_MAX_ERROR_RATE, border: int = 0):
        if not 0.0 <= max_error_rate <= 1.0:
            raise ValueError(f"max_error_rate must be in [0, 1], got {max_error_rate}")
        self.expected = expected
        self.max_error_rate = max_error_rate
        self.border = border

    def grid_for(self, width: int, height: int) -> GridInfo:
        count = self.expected.size
        module_size = min(width, height) / float(count + 2 * self.border)
        offset = self.border * module_size
        return GridInfo(
            module_size=module_size,
            module_count=count,
            version=match_version(count),
            origin=(offset, offset),
        )

    def measure(self, raster: RasterImage) -> float:
        """Bit-error rate of the image against the expected matrix."""
        binarization = binarize(raster)
        recovered = extract_matrix(binarization.bitmap, self.grid_for(raster.width, raster.height))
        return recovered.error_rate(self.expected)

    def verify(self, raster: RasterImage) -> float:
        """Return the error rate, or raise ``VerificationFailed`` above tolerance."""
        error_rate = self.measure(raster)
        if error_rate > self.max_error_rate:
            raise VerificationFailed(error_rate, self.max_error_rate)
        return error_rate


# ---------------------------------------------------------------------------
# Retry state machine
# ---------------------------------------------------------------------------

class AttemptResult(Enum):
    VERIFIED = "verified"
    VERIFICATION_FAILED = "verification-failed"
    SERVICE_ERROR = "service-error"


class OutcomeStatus(Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class StrategyAdjustment:
    """Accumulated changes applied on top of the base request."""

    controlnet_scale_step: float = 0.0
    strength_step: float = 0.0
    contrast_emphasis: float = 0.0
    prompt_emphasis: int = 0

    def escalate(self, policy: "RetryPolicy") -> "StrategyAdjustment":
        return StrategyAdjustment(
            controlnet_scale_step=self.controlnet_scale_step + policy.controlnet_step,
            strength_step=self.strength_step - policy.strength_step,
            contrast_emphasis=min(self.contrast_emphasis + policy.contrast_step, 1.0),
            prompt_emphasis=self.prompt_emphasis + 1,
        )


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    backoff_base: float = 0.0
    controlnet_step: float = 0.15
    strength_step: float = 0.05
    contrast_step: float = 0.2
    max_controlnet_scale: float = 2.0
    min_strength: float = 0.5
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.backoff_base < 0:
            raise ValueError("backoff_base cannot be negative")

    def delay(self, attempt: int) -> float:
        """Seconds to wait after a failed ``attempt`` (1-based)."""
        return self.backoff_base * (2 ** (attempt - 1))


@dataclass(frozen=True)
class AttemptRecord:
    index: int
    result: AttemptResult
    error_rate: float | None
    adjustment: StrategyAdjustment
    message: str = ""
    paths: tuple[str, ...] = ()


@dataclass
class GenerationOutcome:
    status: OutcomeStatus
    image: Image.Image
    image_path: str
    error_rate: float
    attempts: list[AttemptRecord]

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS


def apply_adjustment(request, adjustment: StrategyAdjustment, policy: RetryPolicy, prompt: str | None = None):
    """Copy of ``request`` with the adjustment applied and clamped to the policy."""
    changes = {
        "controlnet_scale": min(request.controlnet_scale + adjustment.controlnet_scale_step, policy.max_controlnet_scale),
        "strength": max(request.strength + adjustment.strength_step, policy.min_strength),
    }
    if prompt is not None:
        changes["prompt"] = prompt
    return replace(request, **changes)


def discard_results(records, keep: str | None = None) -> None:
    """Delete the files written by ``records`` except ``keep``."""
    stale = {path for record in records for path in record.paths if path != keep}
    cleanup_temp_files(*stale)
    if stale:
        logger.debug("Removed %d intermediate result file(s)", len(stale))


def run_generation(
    client,
    request,
    verifier: MatrixVerifier,
    policy: RetryPolicy | None = None,
    prompt_builder: Callable[[int], str] | None = None,
) -> GenerationOutcome:
    """Generate until an image verifies or the attempt budget is spent.

    Args:
        client: A ``BaseAPIClient``.
        request: The base ``GenerationRequest``; never mutated.
        verifier: Checks each result against the expected matrix.
        policy: Attempt budget and adjustment steps.
        prompt_builder: Called with the current emphasis level to rebuild
            the prompt between attempts. Without it the prompt is unchanged.

    Returns:
        A ``GenerationOutcome``; ``degraded`` when no attempt verified.
        Result files of the attempts that were not chosen are deleted;
        ``outcome.image_path`` is left for the caller to clean up.

    Raises:
        GenerationServiceError: If no attempt produced an image at all.
    """
    policy = policy or RetryPolicy()
    adjustment = StrategyAdjustment()
    records: list[AttemptRecord] = []
    best: tuple[float, Image.Image, str] | None = None
    last_error: GenerationServiceError | None = None

    for attempt in range(1, policy.max_attempts + 1):
        prompt = prompt_builder(adjustment.prompt_emphasis) if prompt_builder else None
        attempt_request = apply_adjustment(request, adjustment, policy, prompt)
        paths: list[str] = []

        try:
            path = client.generate(attempt_request)
            paths.append(path)
            try:
                raster = load_raster(path)
            except (DecodeError, FileNotFoundError) as e:
                raise GenerationServiceError(f"unreadable result: {e}", backend=client.name()) from e

            image = raster.to_pil().convert("RGB")
            if adjustment.contrast_emphasis > 0:
                image = enhance_contrast(image, adjustment.contrast_emphasis).convert("RGB")
                raster = RasterImage.from_pil(image)
                path = save_temp_png(image, prefix="qr_matrix_art_boosted_")
                paths.append(path)

            error_rate = verifier.measure(raster)
            if best is None or error_rate < best[0]:
                best = (error_rate, image, path)
            if error_rate > verifier.max_error_rate:
                raise VerificationFailed(error_rate, verifier.max_error_rate)

            records.append(AttemptRecord(attempt, AttemptResult.VERIFIED, error_rate, adjustment, paths=tuple(paths)))
            logger.info("Attempt %d/%d verified (error rate %.3f)", attempt, policy.max_attempts, error_rate)
            discard_results(records, keep=path)
            return GenerationOutcome(OutcomeStatus.SUCCESS, image, path, error_rate, records)

        except VerificationFailed as e:
            records.append(AttemptRecord(
                attempt, AttemptResult.VERIFICATION_FAILED, e.error_rate, adjustment, str(e), tuple(paths),
            ))
            logger.info("Attempt %d/%d failed verification: %s", attempt, policy.max_attempts, e)
        except GenerationServiceError as e:
            last_error = e
            records.append(AttemptRecord(
                attempt, AttemptResult.SERVICE_ERROR, None, adjustment, str(e), tuple(paths),
            ))
            logger.warning("Attempt %d/%d failed: %s", attempt, policy.max_attempts, e)

        if attempt < policy.max_attempts:
            adjustment = adjustment.escalate(policy)
            wait = policy.delay(attempt)
            if wait > 0:
                policy.sleep(wait)

    if best is None:
        discard_results(records)
        raise GenerationServiceError(
            f"no image produced after {policy.max_attempts} attempt(s): {last_error}",
            backend=last_error.backend if last_error else None,
        )

    error_rate, image, path = best
    discard_results(records, keep=path)
    logger.warning(
        "Attempt budget exhausted; returning best result (error rate %.3f) as degraded", error_rate,
    )
    return GenerationOutcome(OutcomeStatus.DEGRADED, image, path, error_rate, records)
