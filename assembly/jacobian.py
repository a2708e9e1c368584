"""
Partial derivatives of super-cluster fluxes.

Each routine differentiates the matching flux contraction in assembly/flux.py
with the same tensors and index order. Row i of the partials block is output
component i (0: flux, i >= 1: moment flux along config.axis_of(i)); columns
are resolved per operand and expansion position j:
- j == 0 -> the operand's concentration unknown,
- j >= 1 -> the operand's moment unknown along axis_of(j); single clusters
  have no moment unknowns, so those columns are skipped.

Three storage modes:
- map path: partials[(ps_dim, n_slots)], slot = partials_idx_map[j][global index],
- direct path: partials[(ps_dim, n_unknowns)] indexed by global index,
- zeroth path: partials[(n_unknowns,)] indexed by global index, order-0 lists.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Mapping, Optional, Sequence

import numpy as np

from core.errors import NetworkStructureError
from core.types import FloatArray
from assembly.flux import gather_state

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from network.cluster import Cluster, SuperCluster

SlotFn = Callable[[int, int], int]


def _column(cluster: "Cluster", j: int, owner: "SuperCluster") -> Optional[int]:
    if j == 0:
        return cluster.require_id()
    return cluster.moment_id(owner.config.axis_of(j))


def _scatter(
    partials: FloatArray,
    slot_of: SlotFn,
    cluster: "Cluster",
    owner: "SuperCluster",
    values: FloatArray,
) -> None:
    """partials[:, slot(j)] += values[:, j] for every column j the operand owns."""
    for j in range(owner.ps_dim):
        col = _column(cluster, j, owner)
        if col is None:
            continue
        partials[:, slot_of(j, col)] += values[:, j]


def _production_partials(cluster: "SuperCluster", concs: FloatArray, xi: int, partials: FloatArray, slot_of: SlotFn) -> None:
    # A + B -> cluster
    # F = k/nTot * sum_ij coefs[j][i][k] lA[j] lB[i]
    # dF/dlA[j] = k/nTot * sum_i coefs[j][i][k] lB[i]
    # dF/dlB[j] = k/nTot * sum_i coefs[i][j][k] lA[i]
    for pair in cluster.lists.reacting:
        l_a = gather_state(pair.first, concs, cluster)
        l_b = gather_state(pair.second, concs, cluster)
        value = pair.reaction.k_constant[xi] / cluster.n_tot
        d_a = np.einsum("jik,i->kj", pair.coefs, l_b)
        d_b = np.einsum("ijk,i->kj", pair.coefs, l_a)
        _scatter(partials, slot_of, pair.first, cluster, value * d_a)
        _scatter(partials, slot_of, pair.second, cluster, value * d_b)


def _combination_partials(cluster: "SuperCluster", concs: FloatArray, xi: int, partials: FloatArray, slot_of: SlotFn) -> None:
    # cluster + B -> C
    # F = -k/nTot * sum_ij coefs[i][j][k] lSelf[i] lB[j]
    l_self = gather_state(cluster, concs, cluster)
    for comb in cluster.lists.combining:
        l_b = gather_state(comb.other, concs, cluster)
        value = comb.reaction.k_constant[xi] / cluster.n_tot
        d_other = np.einsum("ijk,i->kj", comb.coefs, l_self)
        d_self = np.einsum("jik,i->kj", comb.coefs, l_b)
        _scatter(partials, slot_of, comb.other, cluster, -value * d_other)
        _scatter(partials, slot_of, cluster, cluster, -value * d_self)


def _dissociation_partials(cluster: "SuperCluster", xi: int, partials: FloatArray, slot_of: SlotFn) -> None:
    # A -> cluster + C
    # F = k/nTot * sum_i coefs[i][j] lA[i]  ->  dF_i/dlA[j] = k/nTot * coefs[j][i]
    for pair in cluster.lists.dissociating:
        value = pair.reaction.k_constant[xi] / cluster.n_tot
        _scatter(partials, slot_of, pair.first, cluster, value * pair.coefs.T)


def _emission_partials(cluster: "SuperCluster", xi: int, partials: FloatArray, slot_of: SlotFn) -> None:
    # cluster -> B + C
    # F = -k/nTot * sum_i coefs[i][j] lSelf[i]
    for pair in cluster.lists.emission:
        value = pair.reaction.k_constant[xi] / cluster.n_tot
        _scatter(partials, slot_of, cluster, cluster, -value * pair.coefs.T)


def _assemble(cluster: "SuperCluster", concs: FloatArray, xi: int, partials: FloatArray, slot_of: SlotFn) -> None:
    _production_partials(cluster, concs, xi, partials, slot_of)
    _combination_partials(cluster, concs, xi, partials, slot_of)
    _dissociation_partials(cluster, xi, partials, slot_of)
    _emission_partials(cluster, xi, partials, slot_of)


def _check_rows(cluster: "SuperCluster", partials: FloatArray) -> None:
    if partials.ndim != 2 or partials.shape[0] != cluster.ps_dim:
        raise ValueError(
            f"partials must have shape ({cluster.ps_dim}, n), got {partials.shape}"
        )


def compute_partial_derivatives(
    cluster: "SuperCluster",
    concs: FloatArray,
    xi: int,
    partials_idx_map: Sequence[Mapping[int, int]],
    partials: FloatArray,
) -> None:
    """Accumulate partials into caller slots resolved through partials_idx_map."""
    _check_rows(cluster, partials)
    if len(partials_idx_map) < cluster.ps_dim:
        raise ValueError(
            f"partials_idx_map has {len(partials_idx_map)} maps, need {cluster.ps_dim}"
        )

    def slot_of(j: int, col: int) -> int:
        try:
            return partials_idx_map[j][col]
        except KeyError:
            raise NetworkStructureError(
                f"Column {col} (position {j}) of '{cluster.name}' has no partial slot; "
                "connectivity and slot map disagree."
            ) from None

    _assemble(cluster, concs, xi, partials, slot_of)


def compute_partial_derivatives_direct(
    cluster: "SuperCluster", concs: FloatArray, xi: int, partials: FloatArray
) -> None:
    """Accumulate partials into rows indexed directly by global unknown index."""
    _check_rows(cluster, partials)
    _assemble(cluster, concs, xi, partials, lambda j, col: col)


def compute_partial_derivatives0(
    cluster: "SuperCluster", concs: FloatArray, xi: int, partials: FloatArray
) -> None:
    """Zeroth-order partials of the flux row, indexed by global unknown index."""
    if partials.ndim != 1:
        raise ValueError(f"zeroth-order partials must be 1-D, got shape {partials.shape}")
    lists = cluster.zeroth_lists
    n_tot = cluster.n_tot
    self_id = cluster.require_id()
    l_self = cluster.get_concentration(concs)

    for pair in lists.reacting:
        value = pair.reaction.k_constant[xi] / n_tot
        l_a = pair.first.get_concentration(concs)
        l_b = pair.second.get_concentration(concs)
        partials[pair.first.require_id()] += value * pair.coeff0 * l_b
        partials[pair.second.require_id()] += value * pair.coeff0 * l_a

    for comb in lists.combining:
        value = comb.reaction.k_constant[xi] / n_tot
        l_b = comb.other.get_concentration(concs)
        partials[comb.other.require_id()] -= value * comb.coeff0 * l_self
        partials[self_id] -= value * comb.coeff0 * l_b

    for pair in lists.dissociating:
        value = pair.reaction.k_constant[xi] / n_tot
        partials[pair.first.require_id()] += value * pair.coeff0

    for pair in lists.emission:
        value = pair.reaction.k_constant[xi] / n_tot
        partials[self_id] -= value * pair.coeff0
