"""Physical constants used by cluster geometry."""

from __future__ import annotations

import math

# Tungsten lattice constant [nm]
TUNGSTEN_LATTICE_CONSTANT = 0.317

PI = math.pi
