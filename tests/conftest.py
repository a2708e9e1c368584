"""
Shared builders for the reaction-network tests.

Chain network (all members carry one vacancy):
- He1                single helium atom
- S_low   He {2,3,4} super-cluster, mean 3, dispersion 2/3
- S_high  He {3,4,5} super-cluster, mean 4, dispersion 2/3
Reactions: He1 + S_low -> S_high (production), S_high -> He1 + S_low (dissociation).

Grid network: the same two reactions between He x V super-clusters G_low and G_high.
"""

from __future__ import annotations

from types import SimpleNamespace

import numpy as np
import pytest

from core.types import MomentConfig
from network.cluster import Cluster
from network.network import ReactionNetwork

LOW_MEMBERS = [[2, 0, 0, 1], [3, 0, 0, 1], [4, 0, 0, 1]]
HIGH_MEMBERS = [[3, 0, 0, 1], [4, 0, 0, 1], [5, 0, 0, 1]]

PROD_RATES = [1.0e-2, 3.0e-2]
DISSO_RATES = [5.0e-3, 7.0e-3]

# He x V grid: He {2,3,4} x V {1,2} + He1 -> He {3,4,5} x V {1,2,3}
GRID_LOW_MEMBERS = [[he, 0, 0, v] for he in (2, 3, 4) for v in (1, 2)]
GRID_HIGH_MEMBERS = [[he, 0, 0, v] for he in (3, 4, 5) for v in (1, 2, 3)]


def make_chain_network(axes=("He",), *, build_coefficients: bool = True, n_grid: int = 2):
    """Return (network, handles) for the He1 / S_low / S_high chain."""
    network = ReactionNetwork(MomentConfig.from_names(axes), n_grid=n_grid)
    he1 = network.add_cluster(Cluster("He1", {"He": 1}))
    low = network.add_super_cluster(LOW_MEMBERS, name="S_low")
    high = network.add_super_cluster(HIGH_MEMBERS, name="S_high")
    network.assign_ids()

    prod = network.add_production(he1, low, PROD_RATES[:n_grid])
    disso = network.add_dissociation(high, he1, low, DISSO_RATES[:n_grid])
    if build_coefficients:
        high.result_from_overlap(prod, high)
        low.participate_in_overlap(prod, high)
        low.participate_in_dissociation_overlap(disso, high)
        high.emit_from_overlap(disso)

    handles = SimpleNamespace(he1=he1, low=low, high=high, prod=prod, disso=disso)
    return network, handles


def make_grid_network(*, build_coefficients: bool = True, n_grid: int = 2):
    """Return (network, handles) for the He x V grid tracking both He and V moments."""
    network = ReactionNetwork(MomentConfig.from_names(("He", "V")), n_grid=n_grid)
    he1 = network.add_cluster(Cluster("He1", {"He": 1}))
    low = network.add_super_cluster(GRID_LOW_MEMBERS, name="G_low")
    high = network.add_super_cluster(GRID_HIGH_MEMBERS, name="G_high")
    network.assign_ids()

    prod = network.add_production(he1, low, PROD_RATES[:n_grid])
    disso = network.add_dissociation(high, he1, low, DISSO_RATES[:n_grid])
    if build_coefficients:
        high.result_from_overlap(prod, high)
        low.participate_in_overlap(prod, high)
        low.participate_in_dissociation_overlap(disso, high)
        high.emit_from_overlap(disso)

    handles = SimpleNamespace(he1=he1, low=low, high=high, prod=prod, disso=disso)
    return network, handles


def chain_state(network: ReactionNetwork) -> np.ndarray:
    values = {"He1": 1.0, "S_low": 0.5, "S_high": 0.2}
    if network.config.axes:
        values.update({"S_low:mHe": 0.05, "S_high:mHe": -0.02})
    return network.state_from_mapping(values)


@pytest.fixture
def chain():
    network, handles = make_chain_network()
    network.reset_connectivities()
    return network, handles
