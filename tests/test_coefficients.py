"""
Coefficient synthesis: member, overlap and raw modes.

Setup: He1 + S_low (He {2,3,4}) -> S_mid (He {4,5,6}); only He 3 and 4 of
S_low land in S_mid, so the overlap is partial (width 2).

Tests:
1. Overlap coefficients equal the sum over explicit member pairs, all four lists
2. Hand-computed values for the partial overlap
3. Raw mode is row-major; size mismatch raises
4. Non-overlapping boxes raise NetworkStructureError
5. Member batch (pending infos) equals repeated single updates
6. He x V grid: overlap equals members on all four lists with two tracked axes
7. Interstitial absorption: I1 + V {5,6,7} -> V {4,5,6} overlap equals members
"""

from __future__ import annotations

from types import SimpleNamespace

import numpy as np
import pytest

from core.errors import NetworkStructureError
from core.types import MomentConfig
from network.cluster import Cluster
from network.coefficients import compute_overlap, interstitial_size
from network.network import ReactionNetwork
from network.reactions import PendingProductionReactionInfo

from conftest import GRID_LOW_MEMBERS, LOW_MEMBERS, make_grid_network

MID_MEMBERS = [[4, 0, 0, 1], [5, 0, 0, 1], [6, 0, 0, 1]]
FAR_MEMBERS = [[10, 0, 0, 1], [11, 0, 0, 1], [12, 0, 0, 1]]
DISP = 2.0 / 3.0


def _make_pair_network(axes=("He",)):
    network = ReactionNetwork(MomentConfig.from_names(axes), n_grid=1)
    he1 = network.add_cluster(Cluster("He1", {"He": 1}))
    low = network.add_super_cluster(LOW_MEMBERS, name="S_low")
    mid = network.add_super_cluster(MID_MEMBERS, name="S_mid")
    far = network.add_super_cluster(FAR_MEMBERS, name="S_far")
    network.assign_ids()
    prod = network.add_production(he1, low, 1.0)
    disso = network.add_dissociation(mid, he1, low, 1.0)
    return network, SimpleNamespace(he1=he1, low=low, mid=mid, far=far, prod=prod, disso=disso)


# Member pairs of the partial overlap: S_low member n yields S_mid member n + 1.
LANDING = [(n, n + 1) for n in (3, 4)]


def _comp(he: int):
    return (he, 0, 0, 1)


# ============================================================================
# Overlap vs explicit members
# ============================================================================


def test_production_overlap_matches_members():
    _, a = _make_pair_network()
    _, b = _make_pair_network()
    a.mid.result_from_overlap(a.prod)
    for n_low, n_mid in LANDING:
        b.mid.result_from(b.prod, _comp(n_mid), _comp(n_low))

    got = a.mid.lists.reacting[0].coefs
    np.testing.assert_allclose(got, b.mid.lists.reacting[0].coefs, atol=1e-12)
    assert got[0, 0, 0] == pytest.approx(2.0)
    assert got[0, 0, 1] == pytest.approx(-1.0 / DISP)
    assert got[0, 1, 0] == pytest.approx(1.0)
    assert got[0, 1, 1] == pytest.approx(0.0, abs=1e-12)
    # He1 is not grouped: no first-operand moment terms
    np.testing.assert_allclose(got[1], 0.0)


def test_combination_overlap_matches_members():
    _, a = _make_pair_network()
    _, b = _make_pair_network()
    a.low.participate_in_overlap(a.prod, a.mid)
    for n_low, _ in LANDING:
        b.low.participate_in(b.prod, _comp(n_low))

    got = a.low.lists.combining[0].coefs
    np.testing.assert_allclose(got, b.low.lists.combining[0].coefs, atol=1e-12)
    assert got[0, 0, 0] == pytest.approx(2.0)
    assert got[0, 0, 1] == pytest.approx(1.0 / DISP)
    assert got[1, 0, 0] == pytest.approx(1.0)
    assert got[1, 0, 1] == pytest.approx(1.0 / DISP)
    np.testing.assert_allclose(got[:, 1, :], 0.0)


def test_dissociation_overlap_matches_members():
    _, a = _make_pair_network()
    _, b = _make_pair_network()
    a.low.participate_in_dissociation_overlap(a.disso, a.mid)
    for n_low, n_mid in LANDING:
        b.low.participate_in_dissociation(b.disso, _comp(n_mid), _comp(n_low))

    pair = a.low.lists.dissociating[0]
    assert pair.first is a.mid and pair.second is a.he1
    np.testing.assert_allclose(pair.coefs, b.low.lists.dissociating[0].coefs, atol=1e-12)
    np.testing.assert_allclose(pair.coefs, [[2.0, 1.0 / DISP], [-1.0, 0.0]], atol=1e-12)


def test_emission_overlap_matches_members():
    _, a = _make_pair_network()
    _, b = _make_pair_network()
    a.mid.emit_from_overlap(a.disso)
    for _, n_mid in LANDING:
        b.mid.emit_from(b.disso, _comp(n_mid))

    got = a.mid.lists.emission[0].coefs
    np.testing.assert_allclose(got, b.mid.lists.emission[0].coefs, atol=1e-12)
    np.testing.assert_allclose(got, [[2.0, -1.0 / DISP], [-1.0, 1.0 / DISP]], atol=1e-12)


def test_pending_batch_equals_single_updates():
    _, a = _make_pair_network()
    _, b = _make_pair_network()
    infos = [PendingProductionReactionInfo(a=_comp(m), b=_comp(n)) for n, m in LANDING]
    a.mid.result_from_pending(a.prod, infos)
    for n_low, n_mid in LANDING:
        b.mid.result_from(b.prod, _comp(n_mid), _comp(n_low))
    np.testing.assert_allclose(a.mid.lists.reacting[0].coefs, b.mid.lists.reacting[0].coefs)

    a.mid.emit_from_pending(a.disso, infos)
    for _, n_mid in LANDING:
        b.mid.emit_from(b.disso, _comp(n_mid))
    np.testing.assert_allclose(a.mid.lists.emission[0].coefs, b.mid.lists.emission[0].coefs)


def test_zeroth_only_overlap_counts_folded_reactions():
    _, h = _make_pair_network(axes=())
    h.mid.result_from_overlap(h.prod)
    h.low.participate_in_overlap(h.prod, h.mid)
    assert h.mid.lists.reacting[0].coefs.shape == (1, 1, 1)
    assert h.mid.lists.reacting[0].coefs[0, 0, 0] == pytest.approx(2.0)
    assert h.low.lists.combining[0].coefs[0, 0, 0] == pytest.approx(2.0)


# ============================================================================
# Raw mode
# ============================================================================


def test_raw_coefficients_are_row_major():
    _, h = _make_pair_network()
    h.mid.result_from_coefs(h.prod, np.arange(8.0))
    coefs = h.mid.lists.reacting[0].coefs
    assert coefs[0, 0, 1] == 1.0
    assert coefs[0, 1, 0] == 2.0
    assert coefs[1, 0, 0] == 4.0

    h.mid.emit_from_coefs(h.disso, [1.0, 2.0, 3.0, 4.0])
    assert h.mid.lists.emission[0].coefs[1, 0] == 3.0


def test_raw_coefficients_size_mismatch():
    _, h = _make_pair_network()
    with pytest.raises(ValueError, match="does not match tensor shape"):
        h.mid.result_from_coefs(h.prod, np.ones(9))


# ============================================================================
# Overlap contract
# ============================================================================


def test_disjoint_boxes_raise():
    _, h = _make_pair_network()
    with pytest.raises(NetworkStructureError, match="overlap width"):
        h.far.result_from_overlap(h.prod)
    with pytest.raises(NetworkStructureError, match="overlap width"):
        h.low.participate_in_overlap(h.prod, h.far)


def test_compute_overlap_widths():
    _, h = _make_pair_network()
    axes, n_overlap = compute_overlap(h.mid, h.low, h.he1, 0)
    assert n_overlap == 2
    he = axes[0]
    assert (he.lo, he.hi, he.shift) == (4, 5, 1)
    assert (he.src_lo, he.src_hi) == (3, 4)
    assert all(ov.width >= 1 for ov in axes)


def test_interstitial_shifts_vacancy_axis():
    i1 = Cluster("I1", {"I": 1})
    v2 = Cluster("V2", {"V": 2})
    assert interstitial_size(v2, i1) == 1
    assert interstitial_size(v2) == 0


def test_overlap_needs_a_grouped_operand():
    network = ReactionNetwork(MomentConfig(), n_grid=1)
    he1 = network.add_cluster(Cluster("He1", {"He": 1}))
    he2 = network.add_cluster(Cluster("He2", {"He": 2}))
    low = network.add_super_cluster(LOW_MEMBERS, name="S_low")
    network.assign_ids()
    reaction = network.add_production(he1, he2, 1.0)
    with pytest.raises(NetworkStructureError, match="grouped operand"):
        low.result_from_overlap(reaction)


# ============================================================================
# Two tracked axes and interstitial shifts
# ============================================================================


def _assert_lists_match(a, b) -> None:
    assert a.lists.sizes() == b.lists.sizes()
    for kind in ("reacting", "combining", "dissociating", "emission"):
        for ea, eb in zip(a.lists.get(kind), b.lists.get(kind)):
            np.testing.assert_allclose(ea.coefs, eb.coefs, atol=1e-12, err_msg=kind)


def test_two_axis_overlap_matches_members():
    _, a = make_grid_network()
    _, b = make_grid_network(build_coefficients=False)
    for he, _, _, v in GRID_LOW_MEMBERS:
        low_m, high_m = (he, 0, 0, v), (he + 1, 0, 0, v)
        b.high.result_from(b.prod, high_m, low_m)
        b.low.participate_in(b.prod, low_m)
        b.low.participate_in_dissociation(b.disso, high_m, low_m)
        b.high.emit_from(b.disso, high_m)

    _assert_lists_match(a.high, b.high)
    _assert_lists_match(a.low, b.low)
    assert a.high.lists.sizes() == {"reacting": 1, "combining": 0, "dissociating": 0, "emission": 1}
    assert a.low.lists.sizes() == {"reacting": 0, "combining": 1, "dissociating": 1, "emission": 0}

    reacting = a.high.lists.reacting[0].coefs
    assert reacting.shape == (3, 3, 3)
    # all six G_low members land inside G_high
    assert reacting[0, 0, 0] == pytest.approx(6.0)
    assert a.low.lists.dissociating[0].coefs[0, 0] == pytest.approx(6.0)
    # V factor of G_high summed over V {1,2}: (1 - 2) + (2 - 2)
    disp_v = a.high.dispersion[3]
    assert reacting[0, 0, 2] == pytest.approx(3.0 * -1.0 / disp_v)


def _make_interstitial_network():
    network = ReactionNetwork(MomentConfig.from_names(("V",)), n_grid=1)
    i1 = network.add_cluster(Cluster("I1", {"I": 1}))
    v_big = network.add_super_cluster([[0, 0, 0, v] for v in (5, 6, 7)], name="V_big")
    v_small = network.add_super_cluster([[0, 0, 0, v] for v in (4, 5, 6)], name="V_small")
    network.assign_ids()
    prod = network.add_production(i1, v_big, 1.0)
    disso = network.add_dissociation(v_small, i1, v_big, 1.0)
    return network, SimpleNamespace(i1=i1, big=v_big, small=v_small, prod=prod, disso=disso)


def test_interstitial_overlap_matches_members():
    _, a = _make_interstitial_network()
    a.small.result_from_overlap(a.prod)
    a.big.participate_in_overlap(a.prod, a.small)
    a.big.participate_in_dissociation_overlap(a.disso, a.small)
    a.small.emit_from_overlap(a.disso)

    _, b = _make_interstitial_network()
    # each interstitial fills one vacancy: V_big member v yields V_small member v - 1
    for v in (5, 6, 7):
        big_m, small_m = (0, 0, 0, v), (0, 0, 0, v - 1)
        b.small.result_from(b.prod, small_m, big_m)
        b.big.participate_in(b.prod, big_m)
        b.big.participate_in_dissociation(b.disso, small_m, big_m)
        b.small.emit_from(b.disso, small_m)

    _assert_lists_match(a.small, b.small)
    _assert_lists_match(a.big, b.big)
    assert a.small.lists.sizes() == {"reacting": 1, "combining": 0, "dissociating": 0, "emission": 1}
    assert a.big.lists.sizes() == {"reacting": 0, "combining": 1, "dissociating": 1, "emission": 0}
    assert a.small.lists.reacting[0].coefs[0, 0, 0] == pytest.approx(3.0)

    axes, n_overlap = compute_overlap(a.small, a.big, a.i1, interstitial_size(a.i1))
    v = axes[3]
    assert n_overlap == 3
    assert (v.lo, v.hi, v.shift) == (4, 6, -1)
    assert (v.src_lo, v.src_hi) == (5, 7)
