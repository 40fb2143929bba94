"""Allow ``python -m qr_matrix_art``."""

import sys

from qr_matrix_art.cli import main

sys.exit(main())
