"""
Cluster and super-cluster geometry.

Tests:
1. Dispersion of He {2,3,4} is 2/3; singleton axes keep dispersion 1
2. Dense-group flag for widths {2,3,1,1}
3. Distance / factor primitives (zero on singleton axes and single clusters)
4. Reaction radius averaged over members
5. Member reconstruction and total concentrations from moments
6. Constructor contract errors
"""

from __future__ import annotations

import math

import numpy as np
import pytest

from core.constants import TUNGSTEN_LATTICE_CONSTANT
from core.errors import NetworkStructureError
from core.types import MomentConfig
from network.cluster import Cluster, SuperCluster

from conftest import LOW_MEMBERS, chain_state, make_chain_network


def _make_low(config=None) -> SuperCluster:
    sc = SuperCluster(
        num=[3.0, 0.0, 0.0, 1.0],
        n_tot=3,
        width=[3, 1, 1, 1],
        lower=[2, 0, 0, 1],
        upper=[4, 0, 0, 1],
        config=config or MomentConfig.from_names(["He"]),
    )
    sc.set_hev_vector(LOW_MEMBERS)
    return sc


# ============================================================================
# Dispersion / dense flag
# ============================================================================


def test_dispersion_of_three_member_group():
    sc = _make_low()
    # 2 * ((4 + 9 + 16) - 3*3*3) / (3 * 2)
    assert sc.dispersion[0] == pytest.approx(2.0 / 3.0, abs=1e-9)
    np.testing.assert_allclose(sc.dispersion[1:], [1.0, 1.0, 1.0])


def test_dense_group_flag():
    cfg = MomentConfig.from_names(["He"])
    kwargs = dict(num=[1.5, 2.0, 0.0, 1.0], width=[2, 3, 1, 1], lower=[1, 1, 0, 1], upper=[2, 3, 0, 1], config=cfg)
    assert SuperCluster(n_tot=6, **kwargs).full is True
    assert SuperCluster(n_tot=5, **kwargs).full is False


def test_default_name_and_composition():
    sc = _make_low()
    assert sc.name == "He_3D_0T_0V_1"
    assert sc.size == 4
    assert sc.composition["I"] == 3
    assert sc.migration_energy == math.inf
    assert sc.is_grouped and not sc.is_interstitial
    assert sc.bounds(0).first == 2 and sc.bounds(0).last == 4


# ============================================================================
# Distance / factor
# ============================================================================


def test_distance_and_factor_primitives():
    sc = _make_low()
    assert sc.get_distance(4, 0) == pytest.approx(1.0)
    assert sc.get_distance(2, 0) == pytest.approx(-1.0)
    assert sc.get_distance(1, 3) == 0.0
    assert sc.get_factor(4, 0) == pytest.approx(1.5)
    assert sc.get_factor(1, 3) == pytest.approx(0.0)

    single = Cluster("He2", {"He": 2})
    assert single.get_distance(5, 0) == 0.0
    assert single.get_factor(5, 0) == 0.0
    assert single.moment_id(0) is None
    assert single.bounds(0).first == 2 and len(single.bounds(0)) == 1


def test_interstitial_single_cluster():
    i2 = Cluster("I2", {"I": 2})
    assert i2.is_interstitial
    assert i2.size == 2
    assert not Cluster("V1", {"V": 1}).is_interstitial


def test_reaction_radius_averages_members():
    sc = _make_low()
    a = TUNGSTEN_LATTICE_CONSTANT
    # every member carries a single vacancy
    assert sc.reaction_radius == pytest.approx(math.sqrt(3.0) / 4.0 * a)


# ============================================================================
# Concentrations
# ============================================================================


def test_member_reconstruction_and_totals():
    network, h = make_chain_network()
    network.reset_connectivities()
    concs = chain_state(network)
    low = h.low

    assert low.get_concentration(concs) == pytest.approx(0.5)
    assert low.get_moment(concs, 0) == pytest.approx(0.05)
    assert low.get_moment(concs, 3) == 0.0
    assert low.get_member_concentration(concs, [1.0, 0.0, 0.0, 0.0]) == pytest.approx(0.55)
    assert low.get_total_concentration(concs) == pytest.approx(1.5)
    assert low.get_total_atom_concentration(concs, 0) == pytest.approx(0.45 * 2 + 0.5 * 3 + 0.55 * 4)
    assert low.get_total_vacancy_concentration(concs) == pytest.approx(1.5)
    assert low.get_integrated_v_concentration(concs, 1) == pytest.approx(1.5)
    assert low.get_integrated_v_concentration(concs, 2) == 0.0
    with pytest.raises(ValueError):
        low.get_total_atom_concentration(concs, 3)


# ============================================================================
# Contract errors
# ============================================================================


def test_super_cluster_rejects_inverted_bounds():
    with pytest.raises(NetworkStructureError, match="upper"):
        SuperCluster(
            num=[3.0, 0.0, 0.0, 1.0],
            n_tot=3,
            width=[3, 1, 1, 1],
            lower=[4, 0, 0, 1],
            upper=[2, 0, 0, 1],
            config=MomentConfig(),
        )


def test_set_hev_vector_checks_member_count():
    sc = SuperCluster(
        num=[3.0, 0.0, 0.0, 1.0],
        n_tot=4,
        width=[3, 1, 1, 1],
        lower=[2, 0, 0, 1],
        upper=[4, 0, 0, 1],
        config=MomentConfig(),
    )
    with pytest.raises(NetworkStructureError, match="expects 4 members"):
        sc.set_hev_vector(LOW_MEMBERS)


def test_cluster_without_id_cannot_read_state():
    with pytest.raises(NetworkStructureError, match="no global id"):
        Cluster("He1", {"He": 1}).get_concentration(np.zeros(3))
