"""
Reaction fluxes of a super-cluster at one grid point.

Responsibilities
----------------
- Contract the aggregated coefficient tensors with the current zeroth and
  first moments of the operands.
- Accumulate into ClusterFlux: flux is the zeroth-moment rate, moment_flux[axis]
  the first-moment rate along each tracked axis.
- Sign convention: production (+), combination (-), dissociation (+), emission (-),
  applied identically to zeroth and moment components.
- Zeroth fast path over the order-0 shadows (coeff0 only).

Scope / non-responsibilities
----------------------------
- No logging and no mutation of the network; concs is read-only.
- Rate arrays are read from the reaction descriptors at grid point xi and
  divided by the owner's n_tot (fluxes are per-member averages).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from core.types import ClusterFlux, FloatArray

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from network.cluster import Cluster, SuperCluster


def gather_state(cluster: "Cluster", concs: FloatArray, owner: "SuperCluster") -> FloatArray:
    """[concentration, moment along axis_of(1), ...] of an operand."""
    axes = owner.config.axes
    state = np.empty(1 + len(axes), dtype=np.float64)
    state[0] = cluster.get_concentration(concs)
    for i, ax in enumerate(axes, start=1):
        state[i] = cluster.get_moment(concs, ax)
    return state


def _accumulate(cluster: "SuperCluster", out: ClusterFlux, value: float, sums: FloatArray) -> None:
    out.flux += value * sums[0]
    axes = cluster.config.axes
    if axes:
        out.moment_flux[list(axes)] += value * sums[1:]


def compute_production_flux(cluster: "SuperCluster", concs: FloatArray, xi: int, out: ClusterFlux) -> None:
    """A + B -> cluster: sum[k] = sum_ij coefs[j][i][k] * lA[j] * lB[i]."""
    for pair in cluster.lists.reacting:
        l_a = gather_state(pair.first, concs, cluster)
        l_b = gather_state(pair.second, concs, cluster)
        sums = np.einsum("jik,j,i->k", pair.coefs, l_a, l_b)
        value = pair.reaction.k_constant[xi] / cluster.n_tot
        _accumulate(cluster, out, value, sums)


def compute_combination_flux(cluster: "SuperCluster", concs: FloatArray, xi: int, out: ClusterFlux) -> None:
    """cluster + B -> C: sum[k] = sum_ij coefs[i][j][k] * lSelf[i] * lB[j], subtracted."""
    l_self = gather_state(cluster, concs, cluster)
    for comb in cluster.lists.combining:
        l_b = gather_state(comb.other, concs, cluster)
        sums = np.einsum("ijk,i,j->k", comb.coefs, l_self, l_b)
        value = comb.reaction.k_constant[xi] / cluster.n_tot
        _accumulate(cluster, out, -value, sums)


def compute_dissociation_flux(cluster: "SuperCluster", concs: FloatArray, xi: int, out: ClusterFlux) -> None:
    """A -> cluster + C: sum[j] = sum_i coefs[i][j] * lA[i]."""
    for pair in cluster.lists.dissociating:
        l_a = gather_state(pair.first, concs, cluster)
        sums = l_a @ pair.coefs
        value = pair.reaction.k_constant[xi] / cluster.n_tot
        _accumulate(cluster, out, value, sums)


def compute_emission_flux(cluster: "SuperCluster", concs: FloatArray, xi: int, out: ClusterFlux) -> None:
    """cluster -> B + C: sum[j] = sum_i coefs[i][j] * lSelf[i], subtracted."""
    if not cluster.lists.emission:
        return
    l_self = gather_state(cluster, concs, cluster)
    for pair in cluster.lists.emission:
        sums = l_self @ pair.coefs
        value = pair.reaction.k_constant[xi] / cluster.n_tot
        _accumulate(cluster, out, -value, sums)


def compute_total_flux(cluster: "SuperCluster", concs: FloatArray, xi: int, out: ClusterFlux) -> None:
    compute_production_flux(cluster, concs, xi, out)
    compute_combination_flux(cluster, concs, xi, out)
    compute_dissociation_flux(cluster, concs, xi, out)
    compute_emission_flux(cluster, concs, xi, out)


# ----------------------------------------------------------------------------
# Zeroth-order fast path
# ----------------------------------------------------------------------------


def compute_production_flux0(cluster: "SuperCluster", concs: FloatArray, xi: int, out: ClusterFlux) -> None:
    for pair in cluster.zeroth_lists.reacting:
        l_a = pair.first.get_concentration(concs)
        l_b = pair.second.get_concentration(concs)
        value = pair.reaction.k_constant[xi] / cluster.n_tot
        out.flux += value * (pair.coeff0 * l_a * l_b)


def compute_combination_flux0(cluster: "SuperCluster", concs: FloatArray, xi: int, out: ClusterFlux) -> None:
    l_self = cluster.get_concentration(concs)
    for comb in cluster.zeroth_lists.combining:
        l_b = comb.other.get_concentration(concs)
        value = comb.reaction.k_constant[xi] / cluster.n_tot
        out.flux -= value * (comb.coeff0 * l_self * l_b)


def compute_dissociation_flux0(cluster: "SuperCluster", concs: FloatArray, xi: int, out: ClusterFlux) -> None:
    for pair in cluster.zeroth_lists.dissociating:
        l_a = pair.first.get_concentration(concs)
        value = pair.reaction.k_constant[xi] / cluster.n_tot
        out.flux += value * (pair.coeff0 * l_a)


def compute_emission_flux0(cluster: "SuperCluster", concs: FloatArray, xi: int, out: ClusterFlux) -> None:
    l_self = cluster.get_concentration(concs)
    for pair in cluster.zeroth_lists.emission:
        value = pair.reaction.k_constant[xi] / cluster.n_tot
        out.flux -= value * (pair.coeff0 * l_self)


def compute_total_flux0(cluster: "SuperCluster", concs: FloatArray, xi: int, out: ClusterFlux) -> None:
    compute_production_flux0(cluster, concs, xi, out)
    compute_combination_flux0(cluster, concs, xi, out)
    compute_dissociation_flux0(cluster, concs, xi, out)
    compute_emission_flux0(cluster, concs, xi, out)
