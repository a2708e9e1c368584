"""
Coefficient synthesis for aggregated reaction entries.

Each aggregated entry carries a tensor approximating, for the whole range of
compositions folded into a super-cluster, the effect of the elementary
reactions between individual members. Index 0 of every tensor axis is the
zeroth moment; index i >= 1 is the first moment along config.axis_of(i).

Input modes
-----------
- members: one elementary reaction given by integer member compositions
  (outer product of distance and factor vectors).
- overlap: a whole overlapping hyper-rectangle of compositions at once, using
  closed-form sums over the overlap range of each axis.
- raw: flat coefficients added element-wise in row-major (i, j, k) order.

Conventions
-----------
- distance(n) = 2 (n - mean) / (width - 1) of a grouped cluster (0 for singletons),
- factor(n) = (n - mean) / dispersion of the owner,
- in overlap mode the averages assume the grouped operand is dense
  (mean = midpoint of its bounds), as distance() does for full groups.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple

import numpy as np

from core.errors import NetworkStructureError
from core.series import first_order_sum, second_order_offset_sum, second_order_sum
from core.types import N_AXES, FloatArray
from network.effective_lists import CombiningPartner, DissociationPair, ProductionPair

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from network.cluster import Cluster, SuperCluster


# ============================================================================
# Member (explicit) mode
# ============================================================================


def _unit_vector(ps_dim: int) -> FloatArray:
    v = np.zeros(ps_dim, dtype=np.float64)
    v[0] = 1.0
    return v


def _distances(cluster: "Cluster", comp: Sequence[int], owner: "SuperCluster") -> FloatArray:
    """Distance vector of a (possibly grouped) operand at member composition comp."""
    ps = owner.ps_dim
    d = _unit_vector(ps)
    if cluster.is_grouped:
        for i in range(1, ps):
            ax = owner.config.axis_of(i)
            d[i] = cluster.get_distance(comp[ax], ax)
    return d


def _factors(owner: "SuperCluster", comp: Sequence[int]) -> FloatArray:
    ps = owner.ps_dim
    f = _unit_vector(ps)
    for i in range(1, ps):
        ax = owner.config.axis_of(i)
        f[i] = owner.get_factor(comp[ax], ax)
    return f


def production_from_members(
    owner: "SuperCluster", pair: ProductionPair, a: Sequence[int], b: Sequence[int]
) -> None:
    """
    first + second -> owner for one member pair.

    a: member of the owner that is produced; b: member of the grouped operand.
    """
    first_d = _distances(pair.first, b, owner)
    second_d = _distances(pair.second, b, owner)
    factor = _factors(owner, a)
    pair.coefs += np.multiply.outer(np.multiply.outer(first_d, second_d), factor)


def combination_from_member(owner: "SuperCluster", comb: CombiningPartner, a: Sequence[int]) -> None:
    """owner + other -> product for one member a of the owner."""
    distance = _distances(owner, a, owner)
    factor = _factors(owner, a)
    comb.coefs[:, 0, :] += np.multiply.outer(distance, factor)


def dissociation_from_members(
    owner: "SuperCluster", pair: DissociationPair, a: Sequence[int], b: Sequence[int]
) -> None:
    """
    dissociating -> owner + emitted for one member pair.

    a: member of the dissociating cluster; b: member of the owner it yields.
    """
    distance = _distances(pair.first, a, owner)
    factor = _factors(owner, b)
    pair.coefs += np.multiply.outer(distance, factor)


def emission_from_member(owner: "SuperCluster", pair: DissociationPair, a: Sequence[int]) -> None:
    """owner -> first + second for one member a of the owner."""
    distance = _distances(owner, a, owner)
    factor = _factors(owner, a)
    pair.coefs += np.multiply.outer(distance, factor)


# ============================================================================
# Raw mode
# ============================================================================


def add_raw(tensor: FloatArray, coefs: Sequence[float]) -> None:
    """Add flat coefficients in row-major order."""
    flat = np.asarray(coefs, dtype=np.float64).ravel()
    if flat.size != tensor.size:
        raise ValueError(
            f"Raw coefficient count {flat.size} does not match tensor shape {tensor.shape}"
        )
    tensor += flat.reshape(tensor.shape)


# ============================================================================
# Overlap mode
# ============================================================================


@dataclass(frozen=True, slots=True)
class AxisOverlap:
    """
    Overlap of a target box with a grouped range shifted by a fixed composition.

    lo/hi are inclusive and expressed in target space; the matching range in
    the grouped operand's space is [lo - shift, hi - shift].
    """

    lo: int
    hi: int
    shift: int
    group_lo: int
    group_hi: int

    @property
    def width(self) -> int:
        return self.hi - self.lo + 1

    @property
    def src_lo(self) -> int:
        return self.lo - self.shift

    @property
    def src_hi(self) -> int:
        return self.hi - self.shift

    @property
    def group_mid(self) -> float:
        return (self.group_lo + self.group_hi) / 2.0

    @property
    def group_span(self) -> int:
        """width - 1 of the grouped operand; 0 for a singleton axis."""
        return self.group_hi - self.group_lo


def interstitial_size(*clusters: "Cluster") -> int:
    for c in clusters:
        if c.is_interstitial:
            return int(c.size)
    return 0


def compute_overlap(
    box: "Cluster", group: "Cluster", single: "Cluster", i_size: int
) -> Tuple[List[AxisOverlap], int]:
    """
    Per-axis overlap between box and group + single, and the number of folded reactions.

    The vacancy axis (3) is corrected by the interstitial size: an interstitial
    annihilates one vacancy per interstitial.
    """
    axes: List[AxisOverlap] = []
    n_overlap = 1
    for ax in range(N_AXES):
        b = box.bounds(ax)
        g = group.bounds(ax)
        shift = single.bounds(ax).first
        if ax == 3:
            shift -= i_size
        lo = max(b.first, g.first + shift)
        hi = min(b.last, g.last + shift)
        ov = AxisOverlap(lo=lo, hi=hi, shift=shift, group_lo=g.first, group_hi=g.last)
        if ov.width < 1:
            raise NetworkStructureError(
                f"Non-positive overlap width {ov.width} on axis {ax} between "
                f"'{box.name}' and '{group.name}' shifted by '{single.name}'"
            )
        axes.append(ov)
        n_overlap *= ov.width
    return axes, n_overlap


def _split_operands(first: "Cluster", second: "Cluster") -> Tuple["Cluster", "Cluster"]:
    """Return (grouped, single) operands; the second operand wins if both are grouped."""
    if second.is_grouped:
        return second, first
    if first.is_grouped:
        return first, second
    raise NetworkStructureError(
        f"Overlap derivation needs a grouped operand; got '{first.name}' and '{second.name}'"
    )


def production_from_overlap(
    owner: "SuperCluster", pair: ProductionPair, product: Optional["Cluster"] = None
) -> None:
    """first + second -> owner for every member pair of the overlap at once."""
    cfg = owner.config
    ps = owner.ps_dim
    box = owner if product is None else product
    group, single = _split_operands(pair.first, pair.second)
    i_size = interstitial_size(pair.first, pair.second)
    ovs, n_overlap = compute_overlap(box, group, single, i_size)
    first_on = 1.0 if pair.first.is_grouped else 0.0
    second_on = 1.0 if pair.second.is_grouped else 0.0
    coefs = pair.coefs
    n = float(n_overlap)

    coefs[0, 0, 0] += n
    for i in range(1, ps):
        ax = cfg.axis_of(i)
        ov = ovs[ax]
        disp = owner.dispersion[ax]
        mean = owner.num_atom[ax]
        coefs[0, 0, i] += n / (disp * ov.width) * first_order_sum(ov.lo, ov.hi, mean)

        if ov.group_span != 0:
            a = (2.0 * n / (ov.group_span * ov.width)) * first_order_sum(
                ov.src_lo, ov.src_hi, ov.group_mid
            )
            coefs[0, i, 0] += second_on * a
            coefs[i, 0, 0] += first_on * a

            a = (2.0 * n / (ov.group_span * ov.width * disp)) * second_order_offset_sum(
                ov.lo, ov.hi, mean, ov.group_mid, -ov.shift
            )
            coefs[0, i, i] += second_on * a
            coefs[i, 0, i] += first_on * a

        for j in range(1, ps):
            if i == j or ov.group_span == 0:
                continue
            axj = cfg.axis_of(j)
            ovj = ovs[axj]
            a = (
                2.0
                * n
                / (ov.group_span * ov.width * ovj.width * owner.dispersion[axj])
                * first_order_sum(ov.src_lo, ov.src_hi, ov.group_mid)
                * first_order_sum(ovj.lo, ovj.hi, owner.num_atom[axj])
            )
            coefs[0, i, j] += second_on * a
            coefs[i, 0, j] += first_on * a


def combination_from_overlap(owner: "SuperCluster", comb: CombiningPartner, product: "Cluster") -> None:
    """owner + other -> product for every member of the owner landing in product."""
    cfg = owner.config
    ps = owner.ps_dim
    other = comb.other
    i_size = interstitial_size(other)
    ovs, n_overlap = compute_overlap(product, owner, other, i_size)
    coefs = comb.coefs
    n = float(n_overlap)

    coefs[0, 0, 0] += n
    for i in range(1, ps):
        ax = cfg.axis_of(i)
        ov = ovs[ax]
        disp = owner.dispersion[ax]
        mean = owner.num_atom[ax]
        fos = first_order_sum(ov.src_lo, ov.src_hi, mean)
        coefs[0, 0, i] += n / (disp * ov.width) * fos

        sw = int(owner.section_width[ax])
        if sw == 1:
            continue
        coefs[i, 0, 0] += 2.0 * n / ((sw - 1) * ov.width) * fos
        coefs[i, 0, i] += (
            2.0 * n / ((sw - 1) * ov.width * disp) * second_order_sum(ov.src_lo, ov.src_hi, mean)
        )
        for j in range(1, ps):
            if i == j:
                continue
            axj = cfg.axis_of(j)
            ovj = ovs[axj]
            coefs[i, 0, j] += (
                2.0
                * n
                / ((sw - 1) * ov.width * ovj.width * owner.dispersion[axj])
                * fos
                * first_order_sum(ovj.src_lo, ovj.src_hi, owner.num_atom[axj])
            )


def dissociation_from_overlap(owner: "SuperCluster", pair: DissociationPair, disso: "Cluster") -> None:
    """disso -> owner + emitted for every member of disso yielding a member of the owner."""
    cfg = owner.config
    ps = owner.ps_dim
    emitted = pair.second
    i_size = interstitial_size(emitted)
    ovs, n_overlap = compute_overlap(disso, owner, emitted, i_size)
    coefs = pair.coefs
    n = float(n_overlap)

    coefs[0, 0] += n
    for i in range(1, ps):
        ax = cfg.axis_of(i)
        ov = ovs[ax]
        disp = owner.dispersion[ax]
        mean = owner.num_atom[ax]
        coefs[0, i] += n / (disp * ov.width) * first_order_sum(ov.src_lo, ov.src_hi, mean)

        d = disso.bounds(ax)
        d_span = d.last - d.first
        if d_span == 0:
            continue
        d_mid = (d.first + d.last) / 2.0
        coefs[i, 0] += 2.0 * n / (d_span * ov.width) * first_order_sum(ov.lo, ov.hi, d_mid)
        coefs[i, i] += (
            2.0
            * n
            / (d_span * ov.width * disp)
            * second_order_offset_sum(ov.lo, ov.hi, d_mid, mean, -ov.shift)
        )
        for j in range(1, ps):
            if i == j:
                continue
            axj = cfg.axis_of(j)
            ovj = ovs[axj]
            coefs[i, j] += (
                2.0
                * n
                / (d_span * ov.width * ovj.width * owner.dispersion[axj])
                * first_order_sum(ov.lo, ov.hi, d_mid)
                * first_order_sum(ovj.src_lo, ovj.src_hi, owner.num_atom[axj])
            )


def emission_from_overlap(
    owner: "SuperCluster", pair: DissociationPair, disso: Optional["Cluster"] = None
) -> None:
    """owner -> first + second for every member of the owner inside the overlap."""
    cfg = owner.config
    ps = owner.ps_dim
    box = owner if disso is None else disso
    group, single = _split_operands(pair.first, pair.second)
    i_size = interstitial_size(pair.first, pair.second)
    ovs, n_overlap = compute_overlap(box, group, single, i_size)
    coefs = pair.coefs
    n = float(n_overlap)

    coefs[0, 0] += n
    for i in range(1, ps):
        ax = cfg.axis_of(i)
        ov = ovs[ax]
        disp = owner.dispersion[ax]
        mean = owner.num_atom[ax]
        fos = first_order_sum(ov.lo, ov.hi, mean)
        coefs[0, i] += n / (disp * ov.width) * fos

        sw = int(owner.section_width[ax])
        if sw == 1:
            continue
        coefs[i, 0] += 2.0 * n / ((sw - 1) * ov.width) * fos
        coefs[i, i] += 2.0 * n / ((sw - 1) * ov.width * disp) * second_order_sum(ov.lo, ov.hi, mean)
        for j in range(1, ps):
            if i == j:
                continue
            axj = cfg.axis_of(j)
            ovj = ovs[axj]
            coefs[i, j] += (
                2.0
                * n
                / (ov.width * ovj.width * (sw - 1) * owner.dispersion[axj])
                * fos
                * first_order_sum(ovj.lo, ovj.hi, owner.num_atom[axj])
            )
