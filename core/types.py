"""
Strongly typed containers for case configuration, moment configuration and flux results.

Global shape and index conventions (law of the land):
- Composition axes: 0 = He, 1 = D, 2 = T, 3 = V; interstitials are tracked as a count only.
- Expansion positions: 0 is the zeroth moment (average concentration); position i >= 1 is the
  first moment along composition axis MomentConfig.axis_of(i).
- ps_dim = 1 + len(MomentConfig.axes); coefficient tensors are (ps_dim, ps_dim, ps_dim) for
  production/combination and (ps_dim, ps_dim) for dissociation/emission.
- Global unknown indices are 0-based: cluster concentrations first, then super-cluster moments.
- Rate arrays are indexed by grid point xi.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

FloatArray = NDArray[np.float64]

N_AXES = 4
AXIS_NAMES: Tuple[str, ...] = ("He", "D", "T", "V")


@dataclass(frozen=True, slots=True)
class IntRange:
    """Half-open integer range [lo, hi)."""

    lo: int
    hi: int

    def __post_init__(self) -> None:
        if self.hi < self.lo:
            raise ValueError(f"IntRange upper bound {self.hi} < lower bound {self.lo}")

    @property
    def first(self) -> int:
        return self.lo

    @property
    def last(self) -> int:
        """Inclusive upper value."""
        return self.hi - 1

    def __len__(self) -> int:
        return self.hi - self.lo

    def __contains__(self, value: float) -> bool:
        return self.lo <= value < self.hi

    def __iter__(self):
        return iter(range(self.lo, self.hi))


@dataclass(frozen=True, slots=True)
class MomentConfig:
    """
    Per-network moment configuration.

    Attributes
    ----------
    axes : tuple of int
        Composition axes whose first moment is tracked, in expansion order.
        Empty tuple means only the zeroth moment is tracked (ps_dim == 1).
    """

    axes: Tuple[int, ...] = ()

    def __post_init__(self) -> None:
        if len(self.axes) > N_AXES:
            raise ValueError(f"At most {N_AXES} moment axes can be tracked, got {self.axes}")
        if len(set(self.axes)) != len(self.axes):
            raise ValueError(f"Duplicate moment axes: {self.axes}")
        for ax in self.axes:
            if not 0 <= int(ax) < N_AXES:
                raise ValueError(f"Moment axis {ax} out of range [0,{N_AXES})")

    @property
    def ps_dim(self) -> int:
        return 1 + len(self.axes)

    def axis_of(self, i: int) -> int:
        """Composition axis tracked at expansion position i (i >= 1)."""
        if i < 1 or i >= self.ps_dim:
            raise IndexError(f"Expansion position {i} out of range [1,{self.ps_dim})")
        return self.axes[i - 1]

    @classmethod
    def from_names(cls, names) -> "MomentConfig":
        axes = []
        for name in names:
            if name not in AXIS_NAMES:
                raise ValueError(f"Unknown moment axis '{name}'. Available: {list(AXIS_NAMES)}")
            axes.append(AXIS_NAMES.index(name))
        return cls(axes=tuple(axes))


@dataclass(slots=True)
class ClusterFlux:
    """Flux accumulated for one cluster at one grid point."""

    flux: float = 0.0
    moment_flux: FloatArray = field(default_factory=lambda: np.zeros(N_AXES, dtype=np.float64))

    def reset(self) -> None:
        self.flux = 0.0
        self.moment_flux[:] = 0.0


# ----------------------------------------------------------------------------
# Case configuration (YAML-aligned)
# ----------------------------------------------------------------------------


@dataclass(slots=True)
class CaseMeta:
    """Metadata for the case block."""

    id: str
    title: str = ""
    version: int = 1
    notes: Optional[str] = None


@dataclass(slots=True)
class CaseMoments:
    """Tracked moment axes (moments block)."""

    axes: List[str] = field(default_factory=list)
    zeroth_fast_path: bool = False
    release_full_lists: bool = False

    def __post_init__(self) -> None:
        if self.release_full_lists and not self.zeroth_fast_path:
            raise ValueError("release_full_lists requires zeroth_fast_path=True.")
        if self.zeroth_fast_path and self.axes:
            raise ValueError(
                f"zeroth_fast_path drops the moment expansion; moments.axes must be empty, got {self.axes}"
            )

    def to_moment_config(self) -> MomentConfig:
        return MomentConfig.from_names(self.axes)


@dataclass(slots=True)
class CaseGrid:
    """Spatial grid over which rate arrays are defined."""

    n_points: int

    def __post_init__(self) -> None:
        if self.n_points < 1:
            raise ValueError(f"grid.n_points must be >= 1, got {self.n_points}")


@dataclass(slots=True)
class CaseOutput:
    """Output options."""

    out_dir: Path
    write_coefficients: bool = True
    write_flux_csv: bool = True
    write_jacobian: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.out_dir, Path):
            raise TypeError("out_dir must be pathlib.Path (loader must convert str -> Path).")


@dataclass(slots=True)
class CaseConfig:
    """Top-level case configuration."""

    case: CaseMeta
    moments: CaseMoments
    grid: CaseGrid
    output: CaseOutput
    network: Mapping[str, Any]
    state: Mapping[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)
