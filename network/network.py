"""
Reaction network: owner of clusters, reactions and the global unknown layout.

Responsibilities
----------------
- Own single clusters and super-clusters in insertion order.
- Own reaction descriptors (production and dissociation) with rate arrays
  sized to the spatial grid.
- Assign global unknown indices once (concentrations first, then one moment
  per super-cluster and tracked axis) through core.layout.
- Run the setup-phase transitions: reset_connectivities (freeze every
  super-cluster) and the optional zeroth-order fast path.

Scope / non-responsibilities
----------------------------
- Does not decide which elementary reactions exist; callers register them
  and drive coefficient synthesis on the super-clusters directly.
- Not safe for concurrent mutation. After reset_connectivities the structure
  is read-only.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from core.errors import NetworkStructureError
from core.layout import UnknownLayout, build_layout
from core.types import AXIS_NAMES, FloatArray, MomentConfig
from network.cluster import COMPOSITION_KEYS, Cluster, SuperCluster
from network.reactions import DissociationReaction, ProductionReaction

logger = logging.getLogger(__name__)

CompositionKey = Tuple[int, int, int, int, int]


def composition_key(cluster: Cluster) -> CompositionKey:
    return tuple(int(cluster.composition[k]) for k in COMPOSITION_KEYS)  # type: ignore[return-value]


class ReactionNetwork:
    """Clusters, reactions and global indices of one reaction network."""

    def __init__(self, config: MomentConfig, n_grid: int = 1) -> None:
        if int(n_grid) < 1:
            raise ValueError(f"n_grid must be >= 1, got {n_grid}")
        self.config = config
        self.n_grid = int(n_grid)
        self.clusters: List[Cluster] = []
        self.production_reactions: List[ProductionReaction] = []
        self.dissociation_reactions: List[DissociationReaction] = []
        self._by_name: Dict[str, Cluster] = {}
        self._by_composition: Dict[CompositionKey, Cluster] = {}
        self._layout: Optional[UnknownLayout] = None
        self._frozen = False
        self._zeroth = False

    # ------------------------------------------------------------------
    # Clusters
    # ------------------------------------------------------------------
    def _require_open(self, what: str) -> None:
        if self._layout is not None:
            raise NetworkStructureError(f"Cannot {what}: global indices are already assigned.")

    def add_cluster(self, cluster: Cluster) -> Cluster:
        self._require_open(f"add cluster '{cluster.name}'")
        if cluster.name in self._by_name:
            raise NetworkStructureError(f"Duplicate cluster name '{cluster.name}'")
        if cluster.is_grouped:
            sc: SuperCluster = cluster  # type: ignore[assignment]
            if sc.config != self.config:
                raise NetworkStructureError(
                    f"Super-cluster '{sc.name}' tracks axes {sc.config.axes}, "
                    f"network tracks {self.config.axes}"
                )
        self.clusters.append(cluster)
        self._by_name[cluster.name] = cluster
        if not cluster.is_grouped:
            self._by_composition.setdefault(composition_key(cluster), cluster)
        return cluster

    def add_super_cluster(
        self,
        members: Sequence[Sequence[int]],
        *,
        name: Optional[str] = None,
    ) -> SuperCluster:
        """
        Build a super-cluster from its member (He, D, T, V) compositions.

        Mean composition, bounds and section widths are derived from the members.
        """
        arr = np.asarray(members, dtype=np.int64)
        if arr.ndim != 2 or arr.shape[1] != len(AXIS_NAMES) or arr.shape[0] == 0:
            raise ValueError(f"members must be a non-empty (n, {len(AXIS_NAMES)}) array, got shape {arr.shape}")
        lower = arr.min(axis=0)
        upper = arr.max(axis=0)
        width = upper - lower + 1
        num = arr.mean(axis=0)
        sc = SuperCluster(
            num=[float(v) for v in num],
            n_tot=int(arr.shape[0]),
            width=[int(v) for v in width],
            lower=[int(v) for v in lower],
            upper=[int(v) for v in upper],
            config=self.config,
            name=name,
        )
        sc.set_hev_vector(arr.tolist())
        self.add_cluster(sc)
        return sc

    def get_by_name(self, name: str) -> Cluster:
        try:
            return self._by_name[name]
        except KeyError:
            raise KeyError(f"No cluster named '{name}'") from None

    def get(self, he: int = 0, d: int = 0, t: int = 0, v: int = 0, i: int = 0) -> Optional[Cluster]:
        """Single cluster with the given composition, or None."""
        return self._by_composition.get((int(he), int(d), int(t), int(v), int(i)))

    @property
    def super_clusters(self) -> List[SuperCluster]:
        return [c for c in self.clusters if c.is_grouped]  # type: ignore[misc]

    def __iter__(self) -> Iterator[Cluster]:
        return iter(self.clusters)

    def __len__(self) -> int:
        return len(self.clusters)

    # ------------------------------------------------------------------
    # Reactions
    # ------------------------------------------------------------------
    def _rate_array(self, k_constant) -> FloatArray:
        arr = np.atleast_1d(np.asarray(k_constant, dtype=np.float64))
        if arr.size == 1 and self.n_grid > 1:
            arr = np.full(self.n_grid, float(arr[0]), dtype=np.float64)
        if arr.shape != (self.n_grid,):
            raise ValueError(f"Rate array must have shape ({self.n_grid},), got {arr.shape}")
        return arr

    def _require_member(self, cluster: Cluster) -> None:
        if self._by_name.get(cluster.name) is not cluster:
            raise NetworkStructureError(f"Cluster '{cluster.name}' does not belong to this network")

    def add_production(self, first: Cluster, second: Cluster, k_constant) -> ProductionReaction:
        if self._frozen:
            raise NetworkStructureError("Cannot add reactions after reset_connectivities().")
        self._require_member(first)
        self._require_member(second)
        reaction = ProductionReaction(first, second, self._rate_array(k_constant))
        self.production_reactions.append(reaction)
        return reaction

    def add_dissociation(
        self, dissociating: Cluster, first: Cluster, second: Cluster, k_constant
    ) -> DissociationReaction:
        if self._frozen:
            raise NetworkStructureError("Cannot add reactions after reset_connectivities().")
        for c in (dissociating, first, second):
            self._require_member(c)
        reaction = DissociationReaction(dissociating, first, second, self._rate_array(k_constant))
        self.dissociation_reactions.append(reaction)
        return reaction

    # ------------------------------------------------------------------
    # Global indices
    # ------------------------------------------------------------------
    def assign_ids(self) -> UnknownLayout:
        """Assign global unknown indices; idempotent, closes the cluster set."""
        if self._layout is not None:
            return self._layout
        layout = build_layout(
            [c.name for c in self.clusters],
            [c.name for c in self.clusters if c.is_grouped],
            self.config,
        )
        for cluster in self.clusters:
            cluster.id = layout.idx_conc(cluster.name)
        for sc in self.super_clusters:
            for axis in self.config.axes:
                sc.set_moment_id(axis, layout.idx_moment(sc.name, axis))
        self._layout = layout
        logger.info(
            "Assigned %d unknowns: %d clusters (%d grouped), moment axes %s",
            layout.size,
            len(self.clusters),
            len(self.super_clusters),
            [AXIS_NAMES[a] for a in self.config.axes] or "none",
        )
        return layout

    @property
    def layout(self) -> UnknownLayout:
        if self._layout is None:
            raise NetworkStructureError("Global indices not assigned yet; call assign_ids().")
        return self._layout

    @property
    def dof(self) -> int:
        return self.layout.size

    # ------------------------------------------------------------------
    # Setup phase
    # ------------------------------------------------------------------
    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def uses_zeroth_path(self) -> bool:
        return self._zeroth

    def reset_connectivities(self) -> None:
        """Rebuild connectivity of every super-cluster and freeze the aggregated lists."""
        if self._frozen:
            raise NetworkStructureError("Network is already frozen; reset_connectivities() runs once.")
        self.assign_ids()
        for sc in self.super_clusters:
            sc.reset_connectivities()
        self._frozen = True
        n_entries = sum(sum(sc.lists.sizes().values()) for sc in self.super_clusters)
        logger.info(
            "Network frozen: %d reactions registered, %d aggregated entries",
            len(self.production_reactions) + len(self.dissociation_reactions),
            n_entries,
        )

    def use_zeroth_moment_specializations(self, release_full_lists: bool = False) -> None:
        if not self._frozen:
            raise NetworkStructureError(
                "use_zeroth_moment_specializations() requires reset_connectivities() first."
            )
        if self._zeroth:
            raise NetworkStructureError("Zeroth-order fast path is already enabled.")
        for sc in self.super_clusters:
            sc.use_zeroth_moment_specializations(release_full_lists=release_full_lists)
        self._zeroth = True
        logger.info(
            "Zeroth-order fast path enabled for %d super-clusters (release_full_lists=%s)",
            len(self.super_clusters),
            release_full_lists,
        )

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------
    def zeros(self) -> FloatArray:
        return np.zeros(self.dof, dtype=np.float64)

    def state_from_mapping(self, values: Dict[str, float]) -> FloatArray:
        """
        Build a concentration vector from {unknown name: value}.

        Keys are cluster names for concentrations and '<cluster>:m<axis>' for moments.
        """
        layout = self.layout
        by_name = {e.name: e.i for e in layout.entries}
        concs = self.zeros()
        for key, value in values.items():
            if key not in by_name:
                raise KeyError(f"Unknown state entry '{key}'. Available: {sorted(by_name)}")
            concs[by_name[key]] = float(value)
        return concs
