"""
Cluster and super-cluster geometry.

Responsibilities
----------------
- Cluster: one individual composition (He, D, T, V, I). Exposes the capability
  set the engine relies on: is_grouped, is_interstitial, bounds, concentration,
  moment lookup (always zero), distance / factor primitives (always zero).
- SuperCluster: a dense or sparse group of compositions represented by its
  zeroth moment and first moments along the tracked axes. Owns the aggregated
  reaction lists, the construction arena and the connectivity sets.

Scope / non-responsibilities
----------------------------
- Coefficient formulas live in network/coefficients.py.
- Flux and partial derivative evaluation live in assembly/flux.py and
  assembly/jacobian.py; SuperCluster only binds the selected implementation.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, TextIO, Tuple

import numpy as np

from assembly import flux as flux_mod
from assembly import jacobian as jac_mod
from core.constants import PI, TUNGSTEN_LATTICE_CONSTANT
from core.errors import NetworkStructureError, UnsupportedOperationError
from core.types import AXIS_NAMES, N_AXES, ClusterFlux, FloatArray, IntRange, MomentConfig
from network import coefficients as coef_mod
from network.effective_lists import (
    CombiningPartner,
    DissociationPair,
    EffectiveListArena,
    EffectiveLists,
    ProductionPair,
    ZerothLists,
    new_tensor,
)
from network.reactions import DissociationReaction, PendingProductionReactionInfo, ProductionReaction
from output.writers import write_cluster_coefficients

logger = logging.getLogger(__name__)

COMPOSITION_KEYS = ("He", "D", "T", "V", "I")


def _reaction_radius(n_vacancy: float) -> float:
    """Radius of a vacancy-type cluster in tungsten [nm]."""
    a = TUNGSTEN_LATTICE_CONSTANT
    a_cubed = a * a * a
    return (
        (math.sqrt(3.0) / 4.0) * a
        + math.cbrt((3.0 * a_cubed * n_vacancy) / (8.0 * PI))
        - math.cbrt((3.0 * a_cubed) / (8.0 * PI))
    )


def build_name(n_he: float, n_d: float, n_t: float, n_v: float) -> str:
    return f"He_{int(n_he)}D_{int(n_d)}T_{int(n_t)}V_{int(n_v)}"


class Cluster:
    """Individual cluster with a fixed composition."""

    def __init__(
        self,
        name: str,
        composition: Mapping[str, int],
        *,
        diffusion_factor: float = 0.0,
        migration_energy: float = math.inf,
        formation_energy: float = 0.0,
        reaction_radius: float = 0.0,
    ) -> None:
        unknown = set(composition) - set(COMPOSITION_KEYS)
        if unknown:
            raise ValueError(f"Unknown composition keys {sorted(unknown)} for cluster '{name}'")
        self.name = str(name)
        self.composition: Dict[str, int] = {k: int(composition.get(k, 0)) for k in COMPOSITION_KEYS}
        for k, v in self.composition.items():
            if v < 0:
                raise ValueError(f"Negative {k} count {v} for cluster '{name}'")
        self.num_atom: FloatArray = np.array(
            [float(self.composition[k]) for k in AXIS_NAMES], dtype=np.float64
        )
        if self.is_interstitial:
            self.size = self.composition["I"]
        else:
            self.size = int(sum(self.composition[k] for k in AXIS_NAMES))
        self.diffusion_factor = float(diffusion_factor)
        self.migration_energy = float(migration_energy)
        self.formation_energy = float(formation_energy)
        self.reaction_radius = float(reaction_radius)
        self.id: Optional[int] = None
        self.reaction_connectivity: Set[int] = set()
        self.dissociation_connectivity: Set[int] = set()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, id={self.id})"

    # ------------------------------------------------------------------
    # Capability queries
    # ------------------------------------------------------------------
    @property
    def is_grouped(self) -> bool:
        return False

    @property
    def is_interstitial(self) -> bool:
        comp = self.composition
        return comp["I"] > 0 and all(comp[k] == 0 for k in AXIS_NAMES)

    def bounds(self, axis: int) -> IntRange:
        n = int(self.num_atom[axis])
        return IntRange(n, n + 1)

    def require_id(self) -> int:
        if self.id is None:
            raise NetworkStructureError(f"Cluster '{self.name}' has no global id; add it to a network first.")
        return self.id

    def moment_id(self, axis: int) -> Optional[int]:
        return None

    def get_concentration(self, concs: FloatArray) -> float:
        return float(concs[self.require_id()])

    def get_moment(self, concs: FloatArray, axis: int) -> float:
        return 0.0

    def get_distance(self, n: int, axis: int) -> float:
        return 0.0

    def get_factor(self, n: int, axis: int) -> float:
        return 0.0

    def get_connectivity(self) -> Set[int]:
        return self.reaction_connectivity | self.dissociation_connectivity


class SuperCluster(Cluster):
    """
    Group of compositions tracked through moments.

    Parameters
    ----------
    num : sequence of 4 floats
        Mean composition (He, D, T, V).
    n_tot : int
        Number of individual compositions in the group.
    width : sequence of 4 ints
        Section width per axis.
    lower, upper : sequence of 4 ints
        Inclusive bounds per axis.
    config : MomentConfig
        Tracked moment axes of the owning network.
    """

    def __init__(
        self,
        num: Sequence[float],
        n_tot: int,
        width: Sequence[int],
        lower: Sequence[int],
        upper: Sequence[int],
        config: MomentConfig,
        *,
        name: Optional[str] = None,
    ) -> None:
        for label, seq in (("num", num), ("width", width), ("lower", lower), ("upper", upper)):
            if len(seq) != N_AXES:
                raise ValueError(f"{label} must have {N_AXES} components, got {list(seq)}")
        for i in range(N_AXES):
            if int(upper[i]) < int(lower[i]):
                raise NetworkStructureError(
                    f"Super-cluster bounds upper[{i}]={upper[i]} < lower[{i}]={lower[i]}"
                )
        composition = {AXIS_NAMES[i]: int(num[i]) for i in range(N_AXES)}
        composition["I"] = int(n_tot)
        super().__init__(
            name if name is not None else build_name(*num),
            composition,
            diffusion_factor=0.0,
            migration_energy=math.inf,
            formation_energy=0.0,
        )
        self.config = config
        self.n_tot = int(n_tot)
        self.num_atom = np.array([float(v) for v in num], dtype=np.float64)
        self.size = int(sum(int(v) for v in num))
        self.section_width = np.array([int(w) for w in width], dtype=np.int64)
        self._bounds: Tuple[IntRange, ...] = tuple(
            IntRange(int(lower[i]), int(upper[i]) + 1) for i in range(N_AXES)
        )
        self.dispersion = np.ones(N_AXES, dtype=np.float64)
        self.full = int(np.prod(self.section_width)) == self.n_tot
        self.hev_list: List[Tuple[int, int, int, int]] = []
        self._moment_ids: Dict[int, int] = {}

        self.lists = EffectiveLists()
        self._arena: Optional[EffectiveListArena] = EffectiveListArena()
        self._zeroth: Optional[ZerothLists] = None
        self._flux_impl = flux_mod.compute_total_flux

    # ------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------
    @property
    def is_grouped(self) -> bool:
        return True

    @property
    def is_interstitial(self) -> bool:
        return False

    @property
    def ps_dim(self) -> int:
        return self.config.ps_dim

    @property
    def frozen(self) -> bool:
        return self._arena is None

    @property
    def uses_zeroth_path(self) -> bool:
        return self._zeroth is not None

    def bounds(self, axis: int) -> IntRange:
        return self._bounds[axis]

    def set_moment_id(self, axis: int, index: int) -> None:
        if axis not in self.config.axes:
            raise ValueError(f"Axis {axis} is not tracked by this network ({self.config.axes})")
        self._moment_ids[int(axis)] = int(index)

    def moment_id(self, axis: int) -> Optional[int]:
        return self._moment_ids.get(int(axis))

    def set_hev_vector(self, members: Iterable[Sequence[int]]) -> None:
        """Store the member compositions; compute dispersion and reaction radius."""
        self.hev_list = [tuple(int(x) for x in m) for m in members]  # type: ignore[misc]
        for m in self.hev_list:
            if len(m) != N_AXES:
                raise ValueError(f"Member composition must have {N_AXES} components, got {m}")
        if len(self.hev_list) != self.n_tot:
            raise NetworkStructureError(
                f"Super-cluster '{self.name}' expects {self.n_tot} members, got {len(self.hev_list)}"
            )

        members_arr = np.asarray(self.hev_list, dtype=np.float64).reshape(-1, N_AXES)
        self.reaction_radius = float(
            sum(_reaction_radius(m[3]) for m in members_arr) / float(self.n_tot)
        )
        n_square = np.sum(members_arr * members_arr, axis=0)
        for i in range(N_AXES):
            if self.section_width[i] == 1:
                self.dispersion[i] = 1.0
            else:
                self.dispersion[i] = (
                    2.0
                    * (n_square[i] - self.num_atom[i] * float(self.n_tot) * self.num_atom[i])
                    / (float(self.n_tot) * float(self.section_width[i] - 1))
                )

    def get_distance(self, n: int, axis: int) -> float:
        if self.section_width[axis] == 1:
            return 0.0
        return 2.0 * (float(n) - self.num_atom[axis]) / float(self.section_width[axis] - 1)

    def get_factor(self, n: int, axis: int) -> float:
        return (float(n) - self.num_atom[axis]) / self.dispersion[axis]

    # ------------------------------------------------------------------
    # Concentrations
    # ------------------------------------------------------------------
    def get_moment(self, concs: FloatArray, axis: int) -> float:
        idx = self._moment_ids.get(int(axis))
        if idx is None:
            return 0.0
        return float(concs[idx])

    def get_member_concentration(self, concs: FloatArray, distances: Sequence[float]) -> float:
        """Reconstruct a member's concentration from the moments."""
        conc = self.get_concentration(concs)
        for axis in self.config.axes:
            conc += distances[axis] * self.get_moment(concs, axis)
        return conc

    def _member_distances(self, member: Sequence[int]) -> List[float]:
        return [self.get_distance(member[ax], ax) for ax in range(N_AXES)]

    def get_total_concentration(self, concs: FloatArray) -> float:
        return float(
            sum(self.get_member_concentration(concs, self._member_distances(m)) for m in self.hev_list)
        )

    def _total_weighted(self, concs: FloatArray, axis: int) -> float:
        return float(
            sum(
                self.get_member_concentration(concs, self._member_distances(m)) * float(m[axis])
                for m in self.hev_list
            )
        )

    def get_total_atom_concentration(self, concs: FloatArray, axis: int = 0) -> float:
        """Total He (0), D (1) or T (2) content of the group."""
        if axis not in (0, 1, 2):
            raise ValueError(f"Atom axis must be 0, 1 or 2, got {axis}")
        return self._total_weighted(concs, axis)

    def get_total_vacancy_concentration(self, concs: FloatArray) -> float:
        return self._total_weighted(concs, 3)

    def get_integrated_v_concentration(self, concs: FloatArray, v: int) -> float:
        """Summed concentration of the members holding exactly v vacancies."""
        return float(
            sum(
                self.get_member_concentration(concs, self._member_distances(m))
                for m in self.hev_list
                if m[3] == v
            )
        )

    # ------------------------------------------------------------------
    # Aggregated list builder
    # ------------------------------------------------------------------
    def _require_arena(self) -> EffectiveListArena:
        if self._arena is None:
            raise NetworkStructureError(
                f"Aggregated lists of '{self.name}' are frozen; no entries may be added "
                "after reset_connectivities()."
            )
        return self._arena

    def _find_other_cluster(self, reaction: ProductionReaction) -> Cluster:
        if reaction.first is self:
            return reaction.second
        if reaction.second is self:
            return reaction.first
        raise NetworkStructureError(f"'{self.name}' is not an operand of {reaction!r}")

    def _find_emitted_cluster(self, reaction: DissociationReaction) -> Cluster:
        if reaction.first is self:
            return reaction.second
        if reaction.second is self:
            return reaction.first
        raise NetworkStructureError(f"'{self.name}' is not a product of {reaction!r}")

    def add_to_eff_reacting_list(self, reaction: ProductionReaction) -> ProductionPair:
        ps = self.ps_dim
        return self._require_arena().get_or_create(
            self.lists,
            "reacting",
            (reaction.first, reaction.second),
            lambda: ProductionPair(reaction, reaction.first, reaction.second, new_tensor(ps, 3)),
        )

    def add_to_eff_combining_list(self, reaction: ProductionReaction) -> CombiningPartner:
        ps = self.ps_dim
        other = self._find_other_cluster(reaction)
        return self._require_arena().get_or_create(
            self.lists,
            "combining",
            other,
            lambda: CombiningPartner(reaction, other, new_tensor(ps, 3)),
        )

    def add_to_eff_dissociating_list(self, reaction: DissociationReaction) -> DissociationPair:
        ps = self.ps_dim
        emitted = self._find_emitted_cluster(reaction)
        return self._require_arena().get_or_create(
            self.lists,
            "dissociating",
            (reaction.dissociating, emitted),
            lambda: DissociationPair(reaction, reaction.dissociating, emitted, new_tensor(ps, 2)),
        )

    def add_to_eff_emission_list(self, reaction: DissociationReaction) -> DissociationPair:
        if reaction.dissociating is not self:
            raise NetworkStructureError(f"'{self.name}' is not the dissociating cluster of {reaction!r}")
        ps = self.ps_dim
        return self._require_arena().get_or_create(
            self.lists,
            "emission",
            (reaction.first, reaction.second),
            lambda: DissociationPair(reaction, reaction.first, reaction.second, new_tensor(ps, 2)),
        )

    # ------------------------------------------------------------------
    # Coefficient synthesis: this cluster is the product of A + B
    # ------------------------------------------------------------------
    def result_from(self, reaction: ProductionReaction, a: Sequence[int], b: Sequence[int]) -> None:
        """a is this cluster's member, b the member of the grouped operand."""
        pair = self.add_to_eff_reacting_list(reaction)
        coef_mod.production_from_members(self, pair, a, b)

    def result_from_pending(
        self, reaction: ProductionReaction, infos: Sequence[PendingProductionReactionInfo]
    ) -> None:
        pair = self.add_to_eff_reacting_list(reaction)
        for info in infos:
            coef_mod.production_from_members(self, pair, info.a, info.b)

    def result_from_overlap(self, reaction: ProductionReaction, product: Optional[Cluster] = None) -> None:
        pair = self.add_to_eff_reacting_list(reaction)
        coef_mod.production_from_overlap(self, pair, product)

    def result_from_coefs(self, reaction: ProductionReaction, coefs: Sequence[float]) -> None:
        pair = self.add_to_eff_reacting_list(reaction)
        coef_mod.add_raw(pair.coefs, coefs)

    # ------------------------------------------------------------------
    # Coefficient synthesis: this cluster combines (A + B -> C, this is A)
    # ------------------------------------------------------------------
    def participate_in(self, reaction: ProductionReaction, a: Sequence[int]) -> None:
        """a is the member of this cluster taking part in the reaction."""
        comb = self.add_to_eff_combining_list(reaction)
        coef_mod.combination_from_member(self, comb, a)

    def participate_in_pending(
        self, reaction: ProductionReaction, infos: Sequence[PendingProductionReactionInfo]
    ) -> None:
        comb = self.add_to_eff_combining_list(reaction)
        for info in infos:
            coef_mod.combination_from_member(self, comb, info.b)

    def participate_in_overlap(self, reaction: ProductionReaction, product: Cluster) -> None:
        comb = self.add_to_eff_combining_list(reaction)
        coef_mod.combination_from_overlap(self, comb, product)

    def participate_in_coefs(self, reaction: ProductionReaction, coefs: Sequence[float]) -> None:
        comb = self.add_to_eff_combining_list(reaction)
        coef_mod.add_raw(comb.coefs, coefs)

    # ------------------------------------------------------------------
    # Coefficient synthesis: this cluster is a product of A -> B + C
    # ------------------------------------------------------------------
    def participate_in_dissociation(
        self, reaction: DissociationReaction, a: Sequence[int], b: Sequence[int]
    ) -> None:
        """a is the dissociating member, b the member of this cluster it yields."""
        pair = self.add_to_eff_dissociating_list(reaction)
        coef_mod.dissociation_from_members(self, pair, a, b)

    def participate_in_dissociation_pending(
        self, reaction: DissociationReaction, infos: Sequence[PendingProductionReactionInfo]
    ) -> None:
        pair = self.add_to_eff_dissociating_list(reaction)
        for info in infos:
            coef_mod.dissociation_from_members(self, pair, info.a, info.b)

    def participate_in_dissociation_overlap(
        self, reaction: DissociationReaction, disso: Cluster
    ) -> None:
        pair = self.add_to_eff_dissociating_list(reaction)
        coef_mod.dissociation_from_overlap(self, pair, disso)

    def participate_in_dissociation_coefs(
        self, reaction: DissociationReaction, coefs: Sequence[float]
    ) -> None:
        pair = self.add_to_eff_dissociating_list(reaction)
        coef_mod.add_raw(pair.coefs, coefs)

    # ------------------------------------------------------------------
    # Coefficient synthesis: this cluster dissociates
    # ------------------------------------------------------------------
    def emit_from(self, reaction: DissociationReaction, a: Sequence[int]) -> None:
        pair = self.add_to_eff_emission_list(reaction)
        coef_mod.emission_from_member(self, pair, a)

    def emit_from_pending(
        self, reaction: DissociationReaction, infos: Sequence[PendingProductionReactionInfo]
    ) -> None:
        pair = self.add_to_eff_emission_list(reaction)
        for info in infos:
            coef_mod.emission_from_member(self, pair, info.a)

    def emit_from_overlap(self, reaction: DissociationReaction, disso: Optional[Cluster] = None) -> None:
        pair = self.add_to_eff_emission_list(reaction)
        coef_mod.emission_from_overlap(self, pair, disso)

    def emit_from_coefs(self, reaction: DissociationReaction, coefs: Sequence[float]) -> None:
        pair = self.add_to_eff_emission_list(reaction)
        coef_mod.add_raw(pair.coefs, coefs)

    # ------------------------------------------------------------------
    # Freeze
    # ------------------------------------------------------------------
    def _own_ids(self) -> List[int]:
        ids = [self.require_id()]
        ids.extend(self._moment_ids[ax] for ax in self.config.axes if ax in self._moment_ids)
        return ids

    @staticmethod
    def _partner_ids(cluster: Cluster, axes: Iterable[int]) -> List[int]:
        ids = [cluster.require_id()]
        for ax in axes:
            mid = cluster.moment_id(ax)
            if mid is not None:
                ids.append(mid)
        return ids

    def reset_connectivities(self) -> None:
        """Rebuild connectivity from the aggregated lists and discard the arena."""
        if self._arena is None:
            raise NetworkStructureError(f"'{self.name}' is already frozen; reset_connectivities() runs once.")
        self.reaction_connectivity.clear()
        self.dissociation_connectivity.clear()

        own = self._own_ids()
        self.reaction_connectivity.update(own)
        self.dissociation_connectivity.update(own)

        axes = self.config.axes
        for pair in self.lists.reacting:
            self.reaction_connectivity.update(self._partner_ids(pair.first, axes))
            self.reaction_connectivity.update(self._partner_ids(pair.second, axes))
        for comb in self.lists.combining:
            self.reaction_connectivity.update(self._partner_ids(comb.other, axes))
        for pair in self.lists.dissociating:
            self.dissociation_connectivity.update(self._partner_ids(pair.first, axes))
        # Emission only couples to this cluster's own unknowns.

        logger.debug(
            "reset_connectivities: %s released %d construction keys; lists=%s",
            self.name,
            self._arena.n_keys(),
            self.lists.sizes(),
        )
        self._arena = None

    def use_zeroth_moment_specializations(self, release_full_lists: bool = False) -> None:
        """Build order-0 shadows and bind the fast flux path."""
        if self.ps_dim != 1:
            raise NetworkStructureError(
                f"Zeroth-order fast path requires ps_dim == 1, network tracks {self.config.axes}"
            )
        if self._zeroth is not None:
            raise NetworkStructureError(f"'{self.name}' already uses the zeroth-order fast path.")
        self._zeroth = ZerothLists.from_lists(self.lists)
        self._flux_impl = flux_mod.compute_total_flux0
        if release_full_lists:
            self.lists.clear()

    # ------------------------------------------------------------------
    # Flux / Jacobian entry points
    # ------------------------------------------------------------------
    @property
    def zeroth_lists(self) -> ZerothLists:
        if self._zeroth is None:
            raise NetworkStructureError(f"'{self.name}' has no zeroth-order lists; call use_zeroth_moment_specializations().")
        return self._zeroth

    def get_total_flux(self, concs: FloatArray, xi: int, out: Optional[ClusterFlux] = None) -> ClusterFlux:
        """Net flux (production - combination + dissociation - emission) at grid point xi."""
        result = out if out is not None else ClusterFlux()
        self._flux_impl(self, concs, xi, result)
        return result

    def compute_partial_derivatives(
        self,
        concs: FloatArray,
        xi: int,
        partials_idx_map: Sequence[Mapping[int, int]],
        partials: FloatArray,
    ) -> None:
        jac_mod.compute_partial_derivatives(self, concs, xi, partials_idx_map, partials)

    def compute_partial_derivatives_direct(self, concs: FloatArray, xi: int, partials: FloatArray) -> None:
        jac_mod.compute_partial_derivatives_direct(self, concs, xi, partials)

    def compute_partial_derivatives0(self, concs: FloatArray, xi: int, partials: FloatArray) -> None:
        jac_mod.compute_partial_derivatives0(self, concs, xi, partials)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------
    def get_prod_vector(self):
        raise UnsupportedOperationError("get_prod_vector is not supported; use output_coefficients_to().")

    def get_comb_vector(self):
        raise UnsupportedOperationError("get_comb_vector is not supported; use output_coefficients_to().")

    def get_disso_vector(self):
        raise UnsupportedOperationError("get_disso_vector is not supported; use output_coefficients_to().")

    def get_emit_vector(self):
        raise UnsupportedOperationError("get_emit_vector is not supported; use output_coefficients_to().")

    def output_coefficients_to(self, stream: TextIO) -> None:
        write_cluster_coefficients(self, stream)
