"""
Build a sparse finite-difference Jacobian of the network RHS using a conservative
pattern and column coloring (SciPy CSR).

Used to cross-check the analytical assembler: columns that share no row of the
pattern are perturbed together, so the number of RHS evaluations equals the
number of colors rather than the number of unknowns.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

import numpy as np
import scipy.sparse as sp

from assembly.jacobian_pattern import JacobianPattern, build_jacobian_pattern
from assembly.residual_global import residual_only

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from network.network import ReactionNetwork

logger = logging.getLogger(__name__)


def color_columns(pattern: JacobianPattern) -> Tuple[List[List[int]], Dict[int, List[int]]]:
    """
    Greedy distance-2 coloring of the pattern columns.

    Returns the column groups per color and, per column, the rows it touches.
    """
    N = pattern.shape[1]
    indptr = np.asarray(pattern.indptr, dtype=np.int64)
    indices = np.asarray(pattern.indices, dtype=np.int64)

    col_adj: List[set[int]] = [set() for _ in range(N)]
    col_rows: Dict[int, List[int]] = {j: [] for j in range(N)}
    for i in range(pattern.shape[0]):
        row_cols = indices[indptr[i] : indptr[i + 1]]
        for c in row_cols:
            col_rows[int(c)].append(i)
        for a in range(row_cols.size):
            ca = int(row_cols[a])
            for b in range(a + 1, row_cols.size):
                cb = int(row_cols[b])
                if ca == cb:
                    continue
                col_adj[ca].add(cb)
                col_adj[cb].add(ca)

    order = sorted(range(N), key=lambda j: len(col_adj[j]), reverse=True)
    colors = [-1] * N
    ncolors = 0
    for j in order:
        used = {colors[nbr] for nbr in col_adj[j] if colors[nbr] >= 0}
        c = 0
        while c in used:
            c += 1
        colors[j] = c
        if c + 1 > ncolors:
            ncolors = c + 1

    groups: List[List[int]] = [[] for _ in range(ncolors)]
    for j, c in enumerate(colors):
        groups[c].append(j)
    return groups, col_rows


def build_sparse_fd_jacobian(
    network: "ReactionNetwork",
    x0: np.ndarray,
    xi: int,
    eps: float = 1.0e-7,
    drop_tol: float = 0.0,
    pattern: Optional[JacobianPattern] = None,
    *,
    central: bool = True,
) -> Tuple[sp.csr_matrix, Dict[str, Any]]:
    """
    Finite-difference dF/dc of the network RHS at grid point xi.

    Step per column: eps * (1 + |x0[j]|). Central differences by default;
    forward differences with central=False.
    """
    x0 = np.asarray(x0, dtype=np.float64)
    if x0.ndim != 1:
        raise ValueError("x0 must be a 1D array.")
    N = int(x0.size)

    if pattern is None:
        pattern = build_jacobian_pattern(network)
    if pattern.indptr.size != N + 1:
        raise ValueError(f"pattern indptr size {pattern.indptr.size} does not match N+1 {N+1}")

    groups, col_rows = color_columns(pattern)
    r0 = residual_only(x0, network, xi)

    rows_out: List[int] = []
    cols_out: List[int] = []
    vals_out: List[float] = []
    n_fd_calls = 0
    x_work = x0.copy()

    for cols_in_color in groups:
        if not cols_in_color:
            continue
        dx_by_col: Dict[int, float] = {}
        for j in cols_in_color:
            dx = eps * (1.0 + abs(x0[j]))
            x_work[j] = x0[j] + dx
            dx_by_col[j] = dx
        r_plus = residual_only(x_work, network, xi)
        n_fd_calls += 1

        if central:
            for j in cols_in_color:
                x_work[j] = x0[j] - dx_by_col[j]
            r_minus = residual_only(x_work, network, xi)
            n_fd_calls += 1
        else:
            r_minus = r0

        for j in cols_in_color:
            rows = col_rows[j]
            if not rows:
                continue
            h = 2.0 * dx_by_col[j] if central else dx_by_col[j]
            rows_arr = np.asarray(rows, dtype=np.int64)
            vals = (r_plus[rows_arr] - r_minus[rows_arr]) / h
            if drop_tol > 0.0:
                mask = np.abs(vals) >= drop_tol
                rows_arr = rows_arr[mask]
                vals = vals[mask]
            rows_out.extend(int(r) for r in rows_arr)
            cols_out.extend([int(j)] * int(rows_arr.size))
            vals_out.extend(float(v) for v in vals)

        for j in cols_in_color:
            x_work[j] = x0[j]

    J = sp.csr_matrix(
        (np.asarray(vals_out, dtype=np.float64), (np.asarray(rows_out, dtype=np.int64), np.asarray(cols_out, dtype=np.int64))),
        shape=(N, N),
    )
    stats: Dict[str, Any] = {
        "ncolors": int(len(groups)),
        "n_fd_calls": int(n_fd_calls),
        "nnz_total": int(J.nnz),
        "shape": (N, N),
        "eps": float(eps),
        "drop_tol": float(drop_tol),
        "pattern_nnz": int(pattern.indices.size),
    }
    logger.debug("build_sparse_fd_jacobian: %s", stats)
    return J, stats
