"""
Reaction descriptors.

Reactions are owned by the ReactionNetwork and only read by the engine. They
hold non-owning references to their clusters; equality and hashing are by
identity so a descriptor can key the aggregated lists.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Tuple

import numpy as np

from core.types import N_AXES, FloatArray

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from network.cluster import Cluster


def _as_rate_array(k_constant) -> FloatArray:
    arr = np.atleast_1d(np.asarray(k_constant, dtype=np.float64))
    if arr.ndim != 1:
        raise ValueError(f"k_constant must be 1-D over grid points, got shape {arr.shape}")
    return arr


@dataclass(eq=False, slots=True)
class ProductionReaction:
    """A + B -> C; first and second are the operands."""

    first: "Cluster"
    second: "Cluster"
    k_constant: FloatArray

    def __post_init__(self) -> None:
        self.k_constant = _as_rate_array(self.k_constant)

    def __repr__(self) -> str:
        return f"ProductionReaction({self.first.name} + {self.second.name})"


@dataclass(eq=False, slots=True)
class DissociationReaction:
    """A -> B + C; dissociating is A, first and second are the products."""

    dissociating: "Cluster"
    first: "Cluster"
    second: "Cluster"
    k_constant: FloatArray

    def __post_init__(self) -> None:
        self.k_constant = _as_rate_array(self.k_constant)

    def __repr__(self) -> str:
        return (
            f"DissociationReaction({self.dissociating.name} -> "
            f"{self.first.name} + {self.second.name})"
        )


@dataclass(frozen=True, slots=True)
class PendingProductionReactionInfo:
    """
    Member compositions of one elementary reaction folded into a batch.

    a and b are (He, D, T, V) compositions; which operand each one refers to
    depends on the list being filled (see network.coefficients).
    """

    a: Tuple[int, int, int, int]
    b: Tuple[int, int, int, int] = field(default=(0, 0, 0, 0))

    def __post_init__(self) -> None:
        for name in ("a", "b"):
            v = getattr(self, name)
            if len(v) != N_AXES:
                raise ValueError(f"{name} must have {N_AXES} components, got {v}")
            object.__setattr__(self, name, tuple(int(x) for x in v))
