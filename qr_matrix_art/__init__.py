"""QR Matrix Art: recover QR module grids from photos and re-render them as art."""

__version__ = "1.0.0"

# Shared constants
TARGET_SIZE = 768  # Default output size, matches SD 1.5 ControlNet inputs
REFERENCE_RESOLUTION = 512  # Resolution the detection heuristics were tuned at
FINDER_MODULES = 7  # A finder pattern is 7x7 modules
MIN_VERSION = 1
MAX_VERSION = 40
