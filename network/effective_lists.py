"""
Aggregated ("effective") reaction lists of a super-cluster.

Responsibilities
----------------
- Entry types holding one coefficient tensor per aggregated key.
- EffectiveLists: insertion-ordered runtime lists, never reordered.
- EffectiveListArena: key -> position maps used only while the network is
  being assembled; discarded when the owning cluster freezes.
- Zeroth-order shadows holding only coeff0.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Hashable, List, Union

import numpy as np

from core.errors import NetworkStructureError
from core.types import FloatArray
from network.reactions import DissociationReaction, ProductionReaction

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from network.cluster import Cluster


@dataclass(eq=False, slots=True)
class ProductionPair:
    """first + second -> owner; coefs[i][j][k], i on first, j on second, k on the owner."""

    reaction: ProductionReaction
    first: "Cluster"
    second: "Cluster"
    coefs: FloatArray


@dataclass(eq=False, slots=True)
class CombiningPartner:
    """owner + other -> product; coefs[i][j][k], i on the owner, j on other, k on the owner."""

    reaction: ProductionReaction
    other: "Cluster"
    coefs: FloatArray


@dataclass(eq=False, slots=True)
class DissociationPair:
    """
    Dissociating list: first is the dissociating parent, second the co-emitted cluster.
    Emission list: first and second are the two products of the owner.
    coefs[i][j], i on the dissociating cluster, j on the owner.
    """

    reaction: DissociationReaction
    first: "Cluster"
    second: "Cluster"
    coefs: FloatArray


@dataclass(eq=False, slots=True)
class ProductionPair0:
    reaction: ProductionReaction
    first: "Cluster"
    second: "Cluster"
    coeff0: float


@dataclass(eq=False, slots=True)
class CombiningPartner0:
    reaction: ProductionReaction
    other: "Cluster"
    coeff0: float


@dataclass(eq=False, slots=True)
class DissociationPair0:
    reaction: DissociationReaction
    first: "Cluster"
    second: "Cluster"
    coeff0: float


AnyEntry = Union[ProductionPair, CombiningPartner, DissociationPair]

LIST_KINDS = ("reacting", "combining", "dissociating", "emission")


@dataclass(slots=True)
class EffectiveLists:
    """Runtime aggregated lists in insertion order."""

    reacting: List[ProductionPair] = field(default_factory=list)
    combining: List[CombiningPartner] = field(default_factory=list)
    dissociating: List[DissociationPair] = field(default_factory=list)
    emission: List[DissociationPair] = field(default_factory=list)

    def get(self, kind: str) -> List[Any]:
        if kind not in LIST_KINDS:
            raise KeyError(f"Unknown list kind '{kind}'. Available: {list(LIST_KINDS)}")
        return getattr(self, kind)

    def sizes(self) -> Dict[str, int]:
        return {kind: len(self.get(kind)) for kind in LIST_KINDS}

    def clear(self) -> None:
        for kind in LIST_KINDS:
            self.get(kind).clear()


@dataclass(slots=True)
class ZerothLists:
    """Order-0 shadows of EffectiveLists."""

    reacting: List[ProductionPair0] = field(default_factory=list)
    combining: List[CombiningPartner0] = field(default_factory=list)
    dissociating: List[DissociationPair0] = field(default_factory=list)
    emission: List[DissociationPair0] = field(default_factory=list)

    @classmethod
    def from_lists(cls, lists: EffectiveLists) -> "ZerothLists":
        return cls(
            reacting=[
                ProductionPair0(p.reaction, p.first, p.second, float(p.coefs[0, 0, 0]))
                for p in lists.reacting
            ],
            combining=[
                CombiningPartner0(c.reaction, c.other, float(c.coefs[0, 0, 0]))
                for c in lists.combining
            ],
            dissociating=[
                DissociationPair0(d.reaction, d.first, d.second, float(d.coefs[0, 0]))
                for d in lists.dissociating
            ],
            emission=[
                DissociationPair0(d.reaction, d.first, d.second, float(d.coefs[0, 0]))
                for d in lists.emission
            ],
        )


@dataclass(slots=True)
class EffectiveListArena:
    """
    Construction-phase lookup maps (key -> list position).

    Only makes repeated add calls with the same key idempotent in list growth;
    the lists themselves live in EffectiveLists.
    """

    positions: Dict[str, Dict[Hashable, int]] = field(
        default_factory=lambda: {kind: {} for kind in LIST_KINDS}
    )

    def get_or_create(
        self,
        lists: EffectiveLists,
        kind: str,
        key: Hashable,
        factory: Callable[[], AnyEntry],
    ) -> AnyEntry:
        target = lists.get(kind)
        pos_map = self.positions[kind]
        pos = pos_map.get(key)
        if pos is None:
            target.append(factory())
            pos = len(target) - 1
            pos_map[key] = pos
        if pos >= len(target):
            raise NetworkStructureError(
                f"Aggregated {kind} entry for key {key!r} missing at position {pos} "
                f"(list size {len(target)})"
            )
        return target[pos]

    def n_keys(self) -> int:
        return sum(len(m) for m in self.positions.values())


def new_tensor(ps_dim: int, rank: int) -> FloatArray:
    return np.zeros((ps_dim,) * rank, dtype=np.float64)
