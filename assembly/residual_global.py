"""
Whole-network reaction RHS and analytical Jacobian at one grid point (SciPy backend).

Current status:
- Rows owned by super-clusters (concentration row and one row per tracked moment
  axis) receive the super-cluster flux; every other row is zero (single-cluster
  reactions are assembled elsewhere).
- The Jacobian is assembled through the general slot-map path, or through the
  zeroth-order path once the network uses it.
- Defines F(c) = rhs(c) and J = dF/dc as a scipy.sparse CSR matrix.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

import numpy as np
import scipy.sparse as sp

from assembly.jacobian_pattern import JacobianPattern, build_jacobian_pattern
from core.errors import NetworkStructureError
from core.layout import build_partials_idx_map
from core.types import ClusterFlux, FloatArray

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from network.cluster import SuperCluster
    from network.network import ReactionNetwork

logger = logging.getLogger(__name__)


def _check_inputs(network: "ReactionNetwork", concs: np.ndarray, xi: int) -> FloatArray:
    if not network.frozen:
        raise NetworkStructureError("Network evaluation requires reset_connectivities() first.")
    concs = np.asarray(concs, dtype=np.float64)
    N = network.dof
    if concs.shape != (N,):
        raise ValueError(f"Concentration vector shape {concs.shape} != ({N},)")
    if not 0 <= int(xi) < network.n_grid:
        raise IndexError(f"Grid index {xi} out of range [0,{network.n_grid})")
    return concs


def compute_cluster_fluxes(
    network: "ReactionNetwork", concs: np.ndarray, xi: int
) -> List[Tuple["SuperCluster", ClusterFlux]]:
    """Per-super-cluster flux results in network order."""
    concs = _check_inputs(network, concs, xi)
    return [(sc, sc.get_total_flux(concs, int(xi))) for sc in network.super_clusters]


def compute_network_rhs(
    network: "ReactionNetwork",
    concs: np.ndarray,
    xi: int,
    *,
    return_diag: bool = False,
) -> FloatArray | Tuple[FloatArray, Dict[str, Any]]:
    """
    Build the reaction RHS vector for one grid point.

    Parameters
    ----------
    network : ReactionNetwork
        Frozen network (reset_connectivities() already called).
    concs : ndarray
        Global unknown vector aligned with network.layout.
    xi : int
        Grid point index into the reaction rate arrays.
    return_diag : bool
        If True, also return norms of the assembled vector.
    """
    concs = _check_inputs(network, concs, xi)
    rhs = np.zeros(network.dof, dtype=np.float64)
    axes = network.config.axes
    for sc in network.super_clusters:
        res = sc.get_total_flux(concs, int(xi))
        rhs[sc.require_id()] += res.flux
        for axis in axes:
            rhs[sc.moment_id(axis)] += res.moment_flux[axis]

    if not return_diag:
        return rhs
    diag: Dict[str, Any] = {
        "residual_norm_2": float(np.linalg.norm(rhs)),
        "residual_norm_inf": float(np.linalg.norm(rhs, ord=np.inf)) if rhs.size else 0.0,
        "n_rows_active": int(len(network.super_clusters) * network.config.ps_dim),
        "xi": int(xi),
    }
    return rhs, diag


def residual_only(concs: np.ndarray, network: "ReactionNetwork", xi: int) -> FloatArray:
    """Convenience wrapper returning only the RHS vector."""
    return compute_network_rhs(network, concs, xi)  # type: ignore[return-value]


def _row_ids(sc: "SuperCluster") -> List[int]:
    ids = [sc.require_id()]
    for i in range(1, sc.ps_dim):
        ids.append(sc.moment_id(sc.config.axis_of(i)))  # type: ignore[arg-type]
    return ids


def _check_within_pattern(pattern: JacobianPattern, r: np.ndarray, c: np.ndarray) -> None:
    if r.size == 0:
        return
    mask = sp.csr_matrix(
        (np.ones(pattern.indices.size, dtype=np.int8), pattern.indices, pattern.indptr),
        shape=pattern.shape,
    )
    inside = np.asarray(mask[r, c]).ravel() != 0
    if not inside.all():
        k = int(np.flatnonzero(~inside)[0])
        raise NetworkStructureError(
            f"Jacobian entry ({int(r[k])}, {int(c[k])}) lies outside the Jacobian pattern "
            f"({int((~inside).sum())} entries outside)"
        )


def build_network_jacobian(
    network: "ReactionNetwork",
    concs: np.ndarray,
    xi: int,
    *,
    pattern: Optional[JacobianPattern] = None,
) -> sp.csr_matrix:
    """
    Assemble dF/dc at grid point xi.

    Each super-cluster fills a (ps_dim, n_slots) block whose slots are its sorted
    connectivity; the block is scattered into COO triplets and summed into CSR.
    Every assembled (row, col) must lie inside ``pattern``.
    """
    concs = _check_inputs(network, concs, xi)
    N = network.dof
    if pattern is None:
        pattern = build_jacobian_pattern(network)
    if pattern.shape != (N, N):
        raise ValueError(f"pattern shape {pattern.shape} does not match ({N}, {N})")

    rows: List[np.ndarray] = []
    cols: List[np.ndarray] = []
    vals: List[np.ndarray] = []

    for sc in network.super_clusters:
        if sc.uses_zeroth_path:
            partials = np.zeros(N, dtype=np.float64)
            sc.compute_partial_derivatives0(concs, int(xi), partials)
            nz = np.flatnonzero(partials)
            rows.append(np.full(nz.size, sc.require_id(), dtype=np.int64))
            cols.append(nz.astype(np.int64))
            vals.append(partials[nz])
            continue

        columns = sorted(sc.get_connectivity())
        idx_map = build_partials_idx_map(columns, sc.ps_dim)
        partials = np.zeros((sc.ps_dim, len(columns)), dtype=np.float64)
        sc.compute_partial_derivatives(concs, int(xi), idx_map, partials)
        col_arr = np.asarray(columns, dtype=np.int64)
        for k, row in enumerate(_row_ids(sc)):
            rows.append(np.full(col_arr.size, row, dtype=np.int64))
            cols.append(col_arr)
            vals.append(partials[k])

    if rows:
        r = np.concatenate(rows)
        c = np.concatenate(cols)
        v = np.concatenate(vals)
    else:
        r = c = np.zeros(0, dtype=np.int64)
        v = np.zeros(0, dtype=np.float64)

    _check_within_pattern(pattern, r, c)
    J = sp.coo_matrix((v, (r, c)), shape=(N, N)).tocsr()
    J.sum_duplicates()
    logger.debug("build_network_jacobian: xi=%d nnz=%d (pattern nnz=%d)", int(xi), J.nnz, pattern.indices.size)
    return J
