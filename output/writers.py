"""
Output helpers:
- write_cluster_coefficients: diagnostic dump of one super-cluster's aggregated lists.
- write_network_coefficients: same dump for every super-cluster of a network, to a file.
- write_flux_csv: per-grid-point flux table (one row per grid point and super-cluster).
- write_jacobian_npz: sparse Jacobian of one grid point as CSR arrays.

Dump format (stable, insertion order):
    name: <name>
    reacting: <n>
    first: <A>; second: <B>;a[0-4][0-4][0-4]: c000 c001 ...
    combining: <n>
    other: <B>;a[0-4][0-4][0-4]: ...
    dissociating: <n>
    first: <A>; second: <B>; a[0-4][0-4]: ...
    emitting: <n>
    first: <B>; second: <C>; a[0-4][0-4]: ...
"""

from __future__ import annotations

import csv
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Sequence, TextIO

import numpy as np

from core.types import AXIS_NAMES, ClusterFlux, FloatArray

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from network.cluster import SuperCluster
    from network.network import ReactionNetwork
    from scipy.sparse import csr_matrix

logger = logging.getLogger(__name__)

# ============================================================================
# Coefficient dump
# ============================================================================


def _format_values(values: FloatArray) -> str:
    # Row-major flattening; trailing space after every value.
    return "".join(f"{float(v):g} " for v in np.asarray(values).ravel())


def write_cluster_coefficients(cluster: "SuperCluster", stream: TextIO) -> None:
    lists = cluster.lists
    stream.write(f"name: {cluster.name}\n")

    stream.write(f"reacting: {len(lists.reacting)}\n")
    for pair in lists.reacting:
        stream.write(f"first: {pair.first.name}; second: {pair.second.name};")
        stream.write("a[0-4][0-4][0-4]: " + _format_values(pair.coefs))
        stream.write("\n")

    stream.write(f"combining: {len(lists.combining)}\n")
    for comb in lists.combining:
        stream.write(f"other: {comb.other.name};")
        stream.write("a[0-4][0-4][0-4]: " + _format_values(comb.coefs))
        stream.write("\n")

    stream.write(f"dissociating: {len(lists.dissociating)}\n")
    for pair in lists.dissociating:
        stream.write(f"first: {pair.first.name}; second: {pair.second.name}; ")
        stream.write("a[0-4][0-4]: " + _format_values(pair.coefs))
        stream.write("\n")

    stream.write(f"emitting: {len(lists.emission)}\n")
    for pair in lists.emission:
        stream.write(f"first: {pair.first.name}; second: {pair.second.name}; ")
        stream.write("a[0-4][0-4]: " + _format_values(pair.coefs))
        stream.write("\n")


def write_network_coefficients(network: "ReactionNetwork", path: Path) -> Path:
    """
    Dump the aggregated lists of every super-cluster to path.

    Uses atomic write (temp file + rename) to avoid corruption.
    """
    path = Path(path)
    _ensure_parent(path)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w") as f:
        for cluster in network.super_clusters:
            write_cluster_coefficients(cluster, f)
    os.replace(tmp_path, path)
    logger.info("Wrote coefficient dump: %s (%d super-clusters)", path, len(network.super_clusters))
    return path


# ============================================================================
# Flux table
# ============================================================================


def _ensure_parent(path: Path) -> None:
    """Ensure parent directory exists."""
    path.parent.mkdir(parents=True, exist_ok=True)


def flux_csv_header(axes: Sequence[int]) -> list[str]:
    return ["xi", "cluster", "flux"] + [f"moment_flux_{AXIS_NAMES[ax]}" for ax in axes]


def write_flux_csv(
    path: Path,
    rows: Iterable[tuple[int, str, ClusterFlux]],
    axes: Sequence[int],
) -> Path:
    """
    Write (xi, cluster name, ClusterFlux) rows to CSV.

    Only the tracked moment axes get a column.
    """
    path = Path(path)
    _ensure_parent(path)
    n_rows = 0
    with path.open("w", newline="") as fh:
        writer = csv.writer(fh)
        writer.writerow(flux_csv_header(axes))
        for xi, name, flux in rows:
            writer.writerow(
                [int(xi), name, repr(float(flux.flux))]
                + [repr(float(flux.moment_flux[ax])) for ax in axes]
            )
            n_rows += 1
    logger.info("Wrote flux table: %s (%d rows)", path, n_rows)
    return path


# ============================================================================
# Jacobian snapshot
# ============================================================================


def write_jacobian_npz(path: Path, jac: "csr_matrix", xi: int) -> Path:
    path = Path(path)
    _ensure_parent(path)
    np.savez(
        path,
        indptr=jac.indptr,
        indices=jac.indices,
        data=jac.data,
        shape=np.asarray(jac.shape, dtype=np.int64),
        xi=np.int64(xi),
    )
    logger.debug("Wrote Jacobian snapshot: %s (nnz=%d)", path, jac.nnz)
    return path
