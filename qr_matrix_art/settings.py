"""Configuration value objects for detection, compositing and art rendering."""

from dataclasses import dataclass, replace
from enum import Enum

from qr_matrix_art import REFERENCE_RESOLUTION, TARGET_SIZE


# ---------------------------------------------------------------------------
# Named heuristics
# ---------------------------------------------------------------------------

# Dark-pixel fraction band for the sliding-window locator heuristic.
DENSITY_BAND_WIDE = (0.35, 0.65)
DENSITY_BAND_NARROW = (0.4, 0.6)

DEFAULT_PATCH_SIZE = 7
DEFAULT_STRIDE = 3
MIN_ANCHOR_SEPARATION = 50.0  # px at REFERENCE_RESOLUTION
MIN_MODULE_SIZE = 4.0
DEFAULT_BLUR_SIGMA = 1.0
VERSION_TOLERANCE = 2
SNAP_TOLERANCE = 1
SAMPLE_RADIUS_RATIO = 1 / 3

# Pixel-blend placement
POSITION_OFFSET_RATIO = 0.125  # fraction of width/height moved away from center
POSITION_MARGIN = 10


class DetectionMode(Enum):
    """How finder-pattern candidates are located."""

    RINGS = "rings"      # run-length 1:1:3:1:1 scan with cross-checks
    DENSITY = "density"  # dark-fraction band only (original heuristic)


class BlendMode(Enum):
    """Standard blend formulas available to the compositor."""

    NORMAL = "normal"
    MULTIPLY = "multiply"
    OVERLAY = "overlay"
    SOFT_LIGHT = "soft-light"


class Position(Enum):
    """Anchor positions for placing a QR overlay on a background."""

    TOP_LEFT = "top-left"
    TOP_CENTER = "top-center"
    TOP_RIGHT = "top-right"
    MIDDLE_LEFT = "middle-left"
    CENTER = "center"
    MIDDLE_RIGHT = "middle-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_CENTER = "bottom-center"
    BOTTOM_RIGHT = "bottom-right"

    @property
    def offsets(self) -> tuple[int, int]:
        """Direction away from center as (dx, dy), each in {-1, 0, 1}."""
        return _POSITION_OFFSETS[self]


_POSITION_OFFSETS = {
    Position.TOP_LEFT: (-1, -1),
    Position.TOP_CENTER: (0, -1),
    Position.TOP_RIGHT: (1, -1),
    Position.MIDDLE_LEFT: (-1, 0),
    Position.CENTER: (0, 0),
    Position.MIDDLE_RIGHT: (1, 0),
    Position.BOTTOM_LEFT: (-1, 1),
    Position.BOTTOM_CENTER: (0, 1),
    Position.BOTTOM_RIGHT: (1, 1),
}

# Row-major order of a 3x3 region grid
POSITION_ORDER = list(Position)


class ArtStyle(Enum):
    """Procedural art themes; each maps dark/light modules to scene elements."""

    WINTER_VILLAGE = "winter-village"    # houses on snow
    FOREST_CABIN = "forest-cabin"        # trees in clearings
    JAPANESE_GARDEN = "japanese-garden"  # buildings along stone paths
    CITY_NIGHT = "city-night"            # skyscrapers against a lit sky
    ABSTRACT = "abstract"                # geometric shapes


def _check_unit(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be in [0, 1], got {value}")


def _coerce(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        choices = ", ".join(m.value for m in enum_cls)
        raise ValueError(f"Unknown {enum_cls.__name__} '{value}'. Choose from: {choices}")


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DetectionConfig:
    """Tunable constants for binarization, locator detection and grid fitting."""

    blur_sigma: float | None = DEFAULT_BLUR_SIGMA
    patch_size: int = DEFAULT_PATCH_SIZE
    stride: int = DEFAULT_STRIDE
    density_band: tuple[float, float] = DENSITY_BAND_WIDE
    min_separation: float = MIN_ANCHOR_SEPARATION
    reference_resolution: int = REFERENCE_RESOLUTION
    mode: DetectionMode = DetectionMode.RINGS
    min_module_size: float = MIN_MODULE_SIZE
    version_tolerance: int = VERSION_TOLERANCE
    snap_tolerance: int = SNAP_TOLERANCE
    sample_radius_ratio: float = SAMPLE_RADIUS_RATIO
    crop_to_content: bool = True

    def __post_init__(self):
        object.__setattr__(self, "mode", _coerce(DetectionMode, self.mode))
        if self.patch_size < 1 or self.stride < 1:
            raise ValueError("patch_size and stride must be positive")
        low, high = self.density_band
        if not 0.0 <= low < high <= 1.0:
            raise ValueError(f"density_band must satisfy 0 <= low < high <= 1, got {self.density_band}")
        if self.blur_sigma is not None and self.blur_sigma <= 0:
            raise ValueError("blur_sigma must be positive or None")
        if self.min_module_size <= 0:
            raise ValueError("min_module_size must be positive")

    def with_overrides(self, **changes) -> "DetectionConfig":
        return replace(self, **changes)


@dataclass(frozen=True)
class RenderSettings:
    """Parameters for pixel-level QR compositing."""

    opacity: float = 0.3
    blend_mode: BlendMode = BlendMode.MULTIPLY
    position: Position = Position.CENTER
    size_px: int = 150
    edge_strength: float = 0.5
    texture_adaption: float = 0.7

    def __post_init__(self):
        object.__setattr__(self, "blend_mode", _coerce(BlendMode, self.blend_mode))
        object.__setattr__(self, "position", _coerce(Position, self.position))
        _check_unit("opacity", self.opacity)
        _check_unit("edge_strength", self.edge_strength)
        _check_unit("texture_adaption", self.texture_adaption)
        if self.size_px <= 0:
            raise ValueError(f"size_px must be a positive integer, got {self.size_px}")

    def with_overrides(self, **changes) -> "RenderSettings":
        return replace(self, **changes)


@dataclass(frozen=True)
class ArtSettings:
    """Parameters for procedural per-module art rendering."""

    style: ArtStyle = ArtStyle.WINTER_VILLAGE
    size_px: int = TARGET_SIZE
    border_modules: int = 0
    denoising_strength: float = 0.0
    seed: int = 0
    enforce_contrast: bool = True
    lighting: bool = True

    def __post_init__(self):
        object.__setattr__(self, "style", _coerce(ArtStyle, self.style))
        _check_unit("denoising_strength", self.denoising_strength)
        if self.size_px <= 0:
            raise ValueError(f"size_px must be a positive integer, got {self.size_px}")
        if self.border_modules < 0:
            raise ValueError("border_modules cannot be negative")
