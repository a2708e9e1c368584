"""
Unknown layout of the reaction network and partial-derivative slot maps.

Principles:
- Block order: (1) "conc" - one concentration per cluster in network order,
  (2) "moment" - one first moment per super-cluster and tracked axis, super-clusters
  in network order, axes in MomentConfig.axes order.
- Unknown indices must come from UnknownLayout helpers (no hand-rolled math).
- Layout is frozen once built; clusters receive their ids from it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import logging

from .types import AXIS_NAMES, MomentConfig

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class VarEntry:
    """Single unknown entry metadata."""

    i: int
    kind: str  # "conc" | "moment"
    cluster: str
    axis: Optional[int]
    name: str


@dataclass(slots=True)
class UnknownLayout:
    """Layout of the global unknown vector."""

    size: int
    entries: List[VarEntry]
    config: MomentConfig
    blocks: Dict[str, slice] = field(init=False)
    _conc_index: Dict[str, int] = field(init=False)
    _moment_index: Dict[Tuple[str, int], int] = field(init=False)

    def __post_init__(self) -> None:
        self.blocks = self._build_block_slices_from_entries()
        self._conc_index = {}
        self._moment_index = {}
        for entry in self.entries:
            if entry.kind == "conc":
                self._conc_index[entry.cluster] = entry.i
            else:
                self._moment_index[(entry.cluster, int(entry.axis))] = entry.i

    def _build_block_slices_from_entries(self) -> Dict[str, slice]:
        """
        Build contiguous slices for each VarEntry.kind.
        Requires: for each kind, indices are a single contiguous span.
        """
        kind_to_indices: Dict[str, List[int]] = {}
        for entry in self.entries:
            kind_to_indices.setdefault(str(entry.kind), []).append(int(entry.i))

        out: Dict[str, slice] = {}
        for k, idxs in kind_to_indices.items():
            idxs_sorted = sorted(idxs)
            i_min, i_max = idxs_sorted[0], idxs_sorted[-1]
            count = len(idxs_sorted)
            if i_max - i_min + 1 != count:
                missing = sorted(set(range(i_min, i_max + 1)) - set(idxs_sorted))
                raise RuntimeError(
                    f"Layout block '{k}' is not contiguous: "
                    f"min={i_min}, max={i_max}, count={count}, missing={missing[:10]}"
                )
            out[k] = slice(i_min, i_max + 1)
        return out

    def block_slice(self, name: str) -> slice:
        if name not in self.blocks:
            raise KeyError(f"Unknown block '{name}'. Available: {list(self.blocks)}")
        return self.blocks[name]

    def iter_blocks(self) -> Iterator[Tuple[str, slice]]:
        """Iterate blocks in layout order (by slice.start)."""
        items = sorted(self.blocks.items(), key=lambda kv: int(kv[1].start))
        for name, sl in items:
            yield name, sl

    def idx_conc(self, cluster_name: str) -> int:
        try:
            return self._conc_index[cluster_name]
        except KeyError:
            raise KeyError(f"No concentration unknown for cluster '{cluster_name}'") from None

    def idx_moment(self, cluster_name: str, axis: int) -> int:
        try:
            return self._moment_index[(cluster_name, int(axis))]
        except KeyError:
            raise KeyError(
                f"No moment unknown for cluster '{cluster_name}' along axis {axis}"
            ) from None


def build_layout(
    cluster_names: Sequence[str],
    grouped_names: Iterable[str],
    config: MomentConfig,
) -> UnknownLayout:
    """
    Build the unknown layout for a network.

    Parameters
    ----------
    cluster_names : sequence of str
        All clusters (single and grouped) in network order.
    grouped_names : iterable of str
        Names of super-clusters; each receives one moment unknown per tracked axis.
    config : MomentConfig
    """
    grouped = set(grouped_names)
    unknown = grouped - set(cluster_names)
    if unknown:
        raise ValueError(f"Grouped clusters not present in cluster list: {sorted(unknown)}")

    entries: List[VarEntry] = []
    for name in cluster_names:
        entries.append(VarEntry(i=len(entries), kind="conc", cluster=name, axis=None, name=name))
    for name in cluster_names:
        if name not in grouped:
            continue
        for axis in config.axes:
            entries.append(
                VarEntry(
                    i=len(entries),
                    kind="moment",
                    cluster=name,
                    axis=int(axis),
                    name=f"{name}:m{AXIS_NAMES[axis]}",
                )
            )

    layout = UnknownLayout(size=len(entries), entries=entries, config=config)
    logger.debug(
        "build_layout: %d unknowns (%d concentrations, %d moments)",
        layout.size,
        len(cluster_names),
        layout.size - len(cluster_names),
    )
    return layout


def build_partials_idx_map(columns: Iterable[int], ps_dim: int) -> List[Dict[int, int]]:
    """
    Map global column indices of one row block to local partial slots.

    Slots follow ascending global index. The same map serves every expansion
    position; one reference per position is returned so callers may index it
    by position like the assembler does.
    """
    cols = sorted(set(int(c) for c in columns))
    idx_map = {g: s for s, g in enumerate(cols)}
    return [idx_map for _ in range(ps_dim)]
