"""
Analytical partial derivatives of super-cluster fluxes.

Tests:
1. Network Jacobian matches a colored finite-difference Jacobian (both grid points),
   also with He and V moments tracked together
2. Hand-computed entries of the S_high concentration row
3. Map path and direct path agree
4. Zeroth path partials match the general path on a scalar expansion
5. Slot map errors: missing column, wrong block shape
"""

from __future__ import annotations

import numpy as np
import pytest

from assembly.build_sparse_fd_jacobian import build_sparse_fd_jacobian, color_columns
from assembly.jacobian_pattern import build_jacobian_pattern
from assembly.residual_global import build_network_jacobian
from core.errors import NetworkStructureError
from core.layout import build_partials_idx_map

from conftest import chain_state, make_chain_network, make_grid_network


def _random_state(network, seed: int = 3) -> np.ndarray:
    rng = np.random.default_rng(seed)
    concs = rng.uniform(0.1, 2.0, size=network.dof)
    # moments may take either sign
    concs[len(network) :] = rng.uniform(-0.2, 0.2, size=network.dof - len(network))
    return concs


# ============================================================================
# Finite-difference cross-check
# ============================================================================


@pytest.mark.parametrize("xi", [0, 1])
def test_analytic_jacobian_matches_finite_differences(chain, xi):
    network, _ = chain
    concs = _random_state(network)

    J = build_network_jacobian(network, concs, xi).toarray()
    J_fd, stats = build_sparse_fd_jacobian(network, concs, xi)

    np.testing.assert_allclose(J, J_fd.toarray(), rtol=1e-6, atol=1e-9)
    assert stats["n_fd_calls"] == 2 * stats["ncolors"]
    assert stats["shape"] == (network.dof, network.dof)


@pytest.mark.parametrize("xi", [0, 1])
def test_two_axis_jacobian_matches_finite_differences(xi):
    network, h = make_grid_network()
    network.reset_connectivities()
    assert h.high.ps_dim == 3
    concs = _random_state(network, seed=11)

    J = build_network_jacobian(network, concs, xi).toarray()
    J_fd, _ = build_sparse_fd_jacobian(network, concs, xi)
    np.testing.assert_allclose(J, J_fd.toarray(), rtol=1e-6, atol=1e-9)
    # He and V moment rows of G_high couple to the He and V moments of G_low
    for axis in (0, 3):
        assert np.any(J[h.high.moment_id(axis), [h.low.moment_id(0), h.low.moment_id(3)]] != 0.0)


def test_forward_differences_are_close(chain):
    network, _ = chain
    concs = chain_state(network)
    J = build_network_jacobian(network, concs, 0).toarray()
    J_fd, stats = build_sparse_fd_jacobian(network, concs, 0, eps=1e-6, central=False)
    np.testing.assert_allclose(J, J_fd.toarray(), rtol=1e-4, atol=1e-8)
    assert stats["n_fd_calls"] == stats["ncolors"]


def test_coloring_separates_shared_rows(chain):
    network, _ = chain
    pattern = build_jacobian_pattern(network)
    groups, col_rows = color_columns(pattern)
    assert sorted(j for g in groups for j in g) == list(range(network.dof))
    for group in groups:
        touched = [r for j in group for r in col_rows[j]]
        assert len(touched) == len(set(touched))


# ============================================================================
# Hand values
# ============================================================================


def test_high_concentration_row(chain):
    network, h = chain
    concs = chain_state(network)
    J = build_network_jacobian(network, concs, 0).toarray()

    row = J[h.high.id]
    # production: k/3 * 3 * [S_low], k/3 * 3 * [He1]; emission: -kd/3 * 3
    assert row[h.he1.id] == pytest.approx(0.005)
    assert row[h.low.id] == pytest.approx(0.01)
    assert row[h.high.id] == pytest.approx(-0.005)
    assert row[h.low.moment_id(0)] == pytest.approx(0.0, abs=1e-15)
    np.testing.assert_allclose(J[h.he1.id], 0.0)


def test_high_moment_row(chain):
    network, h = chain
    concs = chain_state(network)
    J = build_network_jacobian(network, concs, 0).toarray()

    row = J[h.high.moment_id(0)]
    assert row[h.he1.id] == pytest.approx(1e-2 / 3.0 * 3.0 * 0.05)
    assert row[h.low.moment_id(0)] == pytest.approx(0.01)
    assert row[h.high.moment_id(0)] == pytest.approx(-0.005)


# ============================================================================
# Storage modes
# ============================================================================


def test_map_and_direct_paths_agree(chain):
    network, h = chain
    concs = _random_state(network, seed=11)
    for sc in network.super_clusters:
        columns = sorted(sc.get_connectivity())
        idx_map = build_partials_idx_map(columns, sc.ps_dim)
        mapped = np.zeros((sc.ps_dim, len(columns)))
        sc.compute_partial_derivatives(concs, 1, idx_map, mapped)

        direct = np.zeros((sc.ps_dim, network.dof))
        sc.compute_partial_derivatives_direct(concs, 1, direct)

        np.testing.assert_allclose(direct[:, columns], mapped)
        outside = np.setdiff1d(np.arange(network.dof), columns)
        np.testing.assert_allclose(direct[:, outside], 0.0)


def test_partials_accumulate(chain):
    network, h = chain
    concs = chain_state(network)
    once = np.zeros((h.high.ps_dim, network.dof))
    h.high.compute_partial_derivatives_direct(concs, 0, once)
    twice = once.copy()
    h.high.compute_partial_derivatives_direct(concs, 0, twice)
    np.testing.assert_allclose(twice, 2.0 * once)


@pytest.mark.parametrize("xi", [0, 1])
def test_zeroth_partials_match_general_path(xi):
    network, _ = make_chain_network(axes=())
    network.reset_connectivities()
    concs = _random_state(network, seed=5)
    J_general = build_network_jacobian(network, concs, xi).toarray()

    network_z, h = make_chain_network(axes=())
    network_z.reset_connectivities()
    network_z.use_zeroth_moment_specializations(release_full_lists=True)
    J_fast = build_network_jacobian(network_z, concs, xi).toarray()
    np.testing.assert_allclose(J_fast, J_general, rtol=1e-12, atol=1e-15)

    partials = np.zeros(network_z.dof)
    h.low.compute_partial_derivatives0(concs, xi, partials)
    np.testing.assert_allclose(partials, J_general[h.low.id])


# ============================================================================
# Errors
# ============================================================================


def test_missing_slot_raises(chain):
    network, h = chain
    concs = chain_state(network)
    columns = sorted(h.high.get_connectivity())
    columns.remove(h.low.id)
    idx_map = build_partials_idx_map(columns, h.high.ps_dim)
    partials = np.zeros((h.high.ps_dim, len(columns)))
    with pytest.raises(NetworkStructureError, match="has no partial slot"):
        h.high.compute_partial_derivatives(concs, 0, idx_map, partials)


def test_partials_shape_is_checked(chain):
    network, h = chain
    concs = chain_state(network)
    with pytest.raises(ValueError, match="partials must have shape"):
        h.high.compute_partial_derivatives_direct(concs, 0, np.zeros(network.dof))
    with pytest.raises(ValueError, match="partials_idx_map has"):
        h.high.compute_partial_derivatives(concs, 0, [], np.zeros((2, 5)))
