"""
Conservative sparsity pattern for the network Jacobian.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Set, Tuple

import numpy as np

from core.errors import NetworkStructureError

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from network.network import ReactionNetwork


@dataclass(slots=True)
class JacobianPattern:
    """CSR pattern for the network Jacobian dF/dc."""

    indptr: np.ndarray
    indices: np.ndarray
    shape: Tuple[int, int]
    meta: Dict[str, float]

    def row(self, i: int) -> np.ndarray:
        return self.indices[self.indptr[i] : self.indptr[i + 1]]


def super_cluster_rows(network: "ReactionNetwork") -> List[Tuple[int, int]]:
    """(row index, super-cluster position) for every flux row a super-cluster owns."""
    rows: List[Tuple[int, int]] = []
    for pos, sc in enumerate(network.super_clusters):
        rows.append((sc.require_id(), pos))
        for axis in network.config.axes:
            mid = sc.moment_id(axis)
            if mid is None:
                raise NetworkStructureError(f"'{sc.name}' has no moment id for axis {axis}")
            rows.append((mid, pos))
    return rows


def build_jacobian_pattern(network: "ReactionNetwork") -> JacobianPattern:
    """
    Build a conservative CSR sparsity pattern from the connectivity sets.

    Every row carries its diagonal. Rows owned by a super-cluster (its
    concentration and moment rows) additionally carry the union of its
    reaction and dissociation connectivity.
    """
    if not network.frozen:
        raise NetworkStructureError("Jacobian pattern requires reset_connectivities() first.")

    N = network.dof
    row_sets: List[Set[int]] = [set() for _ in range(N)]

    def add_coupling(i: int, j: int) -> None:
        if 0 <= i < N and 0 <= j < N:
            row_sets[i].add(j)

    for i in range(N):
        row_sets[i].add(i)

    supers = network.super_clusters
    for row, pos in super_cluster_rows(network):
        for j in supers[pos].get_connectivity():
            add_coupling(row, j)

    indptr = np.zeros(N + 1, dtype=np.int32)
    indices_list = []
    nnz = 0
    max_row = 0
    for i in range(N):
        cols = sorted(row_sets[i])
        nnz += len(cols)
        if len(cols) > max_row:
            max_row = len(cols)
        indptr[i + 1] = nnz
        indices_list.extend(cols)

    indices = np.asarray(indices_list, dtype=np.int32)
    meta = {
        "nnz_total": float(nnz),
        "nnz_avg": float(nnz) / float(N) if N > 0 else 0.0,
        "nnz_max_row": float(max_row),
    }
    return JacobianPattern(indptr=indptr, indices=indices, shape=(N, N), meta=meta)
