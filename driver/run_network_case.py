"""
Driver to evaluate a super-cluster reaction network described in YAML.

Responsibilities:
- Load CaseConfig from YAML (unknown keys rejected).
- Build the ReactionNetwork: single clusters, super-clusters from member lists,
  reactions with per-grid-point rates and coefficient synthesis per target.
- Run the setup phase (reset_connectivities, optional zeroth-order fast path).
- Evaluate fluxes (and optionally the sparse Jacobian) at every grid point for
  the configured state; write the coefficient dump and a flux CSV.
"""

from __future__ import annotations

import argparse
import logging
import traceback
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import yaml

from assembly.build_sparse_fd_jacobian import build_sparse_fd_jacobian
from assembly.jacobian_pattern import build_jacobian_pattern
from assembly.residual_global import build_network_jacobian, compute_cluster_fluxes
from core.logging_utils import get_log_level_from_env, setup_logging
from core.types import CaseConfig, CaseGrid, CaseMeta, CaseMoments, CaseOutput, ClusterFlux
from network.cluster import COMPOSITION_KEYS, Cluster, SuperCluster
from network.network import ReactionNetwork
from network.reactions import DissociationReaction, PendingProductionReactionInfo, ProductionReaction
from output.writers import write_flux_csv, write_jacobian_npz, write_network_coefficients

logger = logging.getLogger(__name__)

_TOP_LEVEL_KEYS = {"case", "moments", "grid", "output", "network", "state", "extra"}
_NETWORK_KEYS = {"clusters", "super_clusters", "reactions"}
_CLUSTER_KEYS = {"name", *COMPOSITION_KEYS, "diffusion_factor", "migration_energy", "formation_energy", "reaction_radius"}
_SUPER_KEYS = {"name", "members"}
_PRODUCTION_KEYS = {"kind", "first", "second", "rate", "targets"}
_DISSOCIATION_KEYS = {"kind", "dissociating", "first", "second", "rate", "targets"}
_TARGET_KEYS = {"cluster", "role", "mode", "partner", "members", "coefs"}

PRODUCTION_ROLES = ("product", "combining")
DISSOCIATION_ROLES = ("dissociated", "emitting")
COEFFICIENT_MODES = ("members", "overlap", "raw")


# -----------------------------------------------------------------------------
# YAML loader
# -----------------------------------------------------------------------------
def _resolve_path(base: Path, value: str | Path) -> Path:
    """Resolve a possibly relative path against base."""
    path = Path(value)
    return path if path.is_absolute() else (base / path).resolve()


def _read_yaml_text(cfg_file: Path) -> str:
    try:
        return cfg_file.read_text(encoding="utf-8-sig")
    except UnicodeDecodeError:
        return cfg_file.read_text()


def _reject_unknown(raw: Mapping[str, Any], allowed: set, where: str) -> None:
    unknown = set(raw.keys()) - set(allowed)
    if unknown:
        raise ValueError(f"Unsupported keys in {where}: {sorted(unknown)}. Allowed: {sorted(allowed)}")


def _load_case_config(cfg_path: str) -> CaseConfig:
    """Load YAML file into CaseConfig with nested dataclasses."""
    cfg_file = Path(cfg_path).expanduser().resolve()
    raw = yaml.safe_load(_read_yaml_text(cfg_file))
    if not isinstance(raw, dict):
        raise ValueError(f"Case file {cfg_file} must contain a mapping at top level.")
    _reject_unknown(raw, _TOP_LEVEL_KEYS, "case file")
    base = cfg_file.parent

    case_cfg = CaseMeta(**raw["case"])

    mom_raw = raw.get("moments", {}) or {}
    _reject_unknown(mom_raw, {"axes", "zeroth_fast_path", "release_full_lists"}, "moments")
    moments_cfg = CaseMoments(
        axes=list(mom_raw.get("axes", []) or []),
        zeroth_fast_path=bool(mom_raw.get("zeroth_fast_path", False)),
        release_full_lists=bool(mom_raw.get("release_full_lists", False)),
    )

    grid_raw = raw.get("grid", {}) or {}
    _reject_unknown(grid_raw, {"n_points"}, "grid")
    grid_cfg = CaseGrid(n_points=int(grid_raw.get("n_points", 1)))

    out_raw = raw.get("output", {}) or {}
    _reject_unknown(out_raw, {"out_dir", "write_coefficients", "write_flux_csv", "write_jacobian"}, "output")
    output_cfg = CaseOutput(
        out_dir=_resolve_path(base, out_raw.get("out_dir", f"out/{case_cfg.id}")),
        write_coefficients=bool(out_raw.get("write_coefficients", True)),
        write_flux_csv=bool(out_raw.get("write_flux_csv", True)),
        write_jacobian=bool(out_raw.get("write_jacobian", False)),
    )

    net_raw = raw.get("network")
    if not isinstance(net_raw, dict):
        raise ValueError("Case file requires a 'network' mapping.")
    _reject_unknown(net_raw, _NETWORK_KEYS, "network")

    state_raw = raw.get("state", {}) or {}
    if not isinstance(state_raw, dict):
        raise ValueError("'state' must map unknown names to values.")

    return CaseConfig(
        case=case_cfg,
        moments=moments_cfg,
        grid=grid_cfg,
        output=output_cfg,
        network=net_raw,
        state={str(k): float(v) for k, v in state_raw.items()},
        extra=dict(raw.get("extra", {}) or {}),
    )


# -----------------------------------------------------------------------------
# Network builder
# -----------------------------------------------------------------------------
def _build_cluster(entry: Mapping[str, Any]) -> Cluster:
    _reject_unknown(entry, _CLUSTER_KEYS, f"network.clusters[{entry.get('name')!r}]")
    composition = {k: int(entry.get(k, 0)) for k in COMPOSITION_KEYS}
    return Cluster(
        str(entry["name"]),
        composition,
        diffusion_factor=float(entry.get("diffusion_factor", 0.0)),
        migration_energy=float(entry.get("migration_energy", float("inf"))),
        formation_energy=float(entry.get("formation_energy", 0.0)),
        reaction_radius=float(entry.get("reaction_radius", 0.0)),
    )


def _pending_infos(target: Mapping[str, Any]) -> List[PendingProductionReactionInfo]:
    members = target.get("members")
    if not members:
        raise ValueError(f"Coefficient mode 'members' needs a non-empty 'members' list (target {target.get('cluster')!r}).")
    return [PendingProductionReactionInfo(a=m["a"], b=m.get("b", (0, 0, 0, 0))) for m in members]


def _target_super(network: ReactionNetwork, target: Mapping[str, Any]) -> SuperCluster:
    cluster = network.get_by_name(str(target["cluster"]))
    if not cluster.is_grouped:
        raise ValueError(f"Coefficient target '{cluster.name}' is not a super-cluster.")
    return cluster  # type: ignore[return-value]


def _apply_production_target(
    network: ReactionNetwork, reaction: ProductionReaction, target: Mapping[str, Any]
) -> None:
    _reject_unknown(target, _TARGET_KEYS, "production target")
    sc = _target_super(network, target)
    role = str(target.get("role", "product"))
    mode = str(target.get("mode", "overlap"))
    if role not in PRODUCTION_ROLES:
        raise ValueError(f"Unknown production role '{role}'. Available: {list(PRODUCTION_ROLES)}")
    if mode not in COEFFICIENT_MODES:
        raise ValueError(f"Unknown coefficient mode '{mode}'. Available: {list(COEFFICIENT_MODES)}")

    if role == "product":
        if mode == "members":
            sc.result_from_pending(reaction, _pending_infos(target))
        elif mode == "overlap":
            partner = target.get("partner")
            sc.result_from_overlap(reaction, network.get_by_name(partner) if partner else sc)
        else:
            sc.result_from_coefs(reaction, target["coefs"])
        return

    if mode == "members":
        for info in _pending_infos(target):
            sc.participate_in(reaction, info.a)
    elif mode == "overlap":
        partner = target.get("partner")
        if not partner:
            raise ValueError(f"Combining target '{sc.name}' in overlap mode needs 'partner' (the product).")
        sc.participate_in_overlap(reaction, network.get_by_name(partner))
    else:
        sc.participate_in_coefs(reaction, target["coefs"])


def _apply_dissociation_target(
    network: ReactionNetwork, reaction: DissociationReaction, target: Mapping[str, Any]
) -> None:
    _reject_unknown(target, _TARGET_KEYS, "dissociation target")
    sc = _target_super(network, target)
    role = str(target.get("role", "dissociated"))
    mode = str(target.get("mode", "overlap"))
    if role not in DISSOCIATION_ROLES:
        raise ValueError(f"Unknown dissociation role '{role}'. Available: {list(DISSOCIATION_ROLES)}")
    if mode not in COEFFICIENT_MODES:
        raise ValueError(f"Unknown coefficient mode '{mode}'. Available: {list(COEFFICIENT_MODES)}")

    if role == "dissociated":
        if mode == "members":
            sc.participate_in_dissociation_pending(reaction, _pending_infos(target))
        elif mode == "overlap":
            partner = target.get("partner")
            disso = network.get_by_name(partner) if partner else reaction.dissociating
            sc.participate_in_dissociation_overlap(reaction, disso)
        else:
            sc.participate_in_dissociation_coefs(reaction, target["coefs"])
        return

    if mode == "members":
        sc.emit_from_pending(reaction, _pending_infos(target))
    elif mode == "overlap":
        partner = target.get("partner")
        sc.emit_from_overlap(reaction, network.get_by_name(partner) if partner else None)
    else:
        sc.emit_from_coefs(reaction, target["coefs"])


def build_network(cfg: CaseConfig) -> ReactionNetwork:
    """Build clusters, reactions and aggregated coefficients; leaves the network unfrozen."""
    net_raw = cfg.network
    network = ReactionNetwork(cfg.moments.to_moment_config(), n_grid=cfg.grid.n_points)

    for entry in net_raw.get("clusters", []) or []:
        network.add_cluster(_build_cluster(entry))
    for entry in net_raw.get("super_clusters", []) or []:
        _reject_unknown(entry, _SUPER_KEYS, f"network.super_clusters[{entry.get('name')!r}]")
        network.add_super_cluster(entry["members"], name=entry.get("name"))
    network.assign_ids()

    for entry in net_raw.get("reactions", []) or []:
        kind = str(entry.get("kind", "production"))
        if kind == "production":
            _reject_unknown(entry, _PRODUCTION_KEYS, "production reaction")
            reaction = network.add_production(
                network.get_by_name(entry["first"]),
                network.get_by_name(entry["second"]),
                entry["rate"],
            )
            for target in entry.get("targets", []) or []:
                _apply_production_target(network, reaction, target)
        elif kind == "dissociation":
            _reject_unknown(entry, _DISSOCIATION_KEYS, "dissociation reaction")
            reaction = network.add_dissociation(
                network.get_by_name(entry["dissociating"]),
                network.get_by_name(entry["first"]),
                network.get_by_name(entry["second"]),
                entry["rate"],
            )
            for target in entry.get("targets", []) or []:
                _apply_dissociation_target(network, reaction, target)
        else:
            raise ValueError(f"Unknown reaction kind '{kind}'. Available: ['production', 'dissociation']")

    logger.info(
        "Built network: %d clusters (%d grouped), %d production, %d dissociation reactions",
        len(network),
        len(network.super_clusters),
        len(network.production_reactions),
        len(network.dissociation_reactions),
    )
    return network


def setup_network(cfg: CaseConfig) -> ReactionNetwork:
    """build_network followed by the setup-phase transitions."""
    network = build_network(cfg)
    network.reset_connectivities()
    if cfg.moments.zeroth_fast_path:
        network.use_zeroth_moment_specializations(release_full_lists=cfg.moments.release_full_lists)
    return network


# -----------------------------------------------------------------------------
# Run
# -----------------------------------------------------------------------------
def evaluate_fluxes(network: ReactionNetwork, concs: np.ndarray) -> List[Tuple[int, str, ClusterFlux]]:
    rows: List[Tuple[int, str, ClusterFlux]] = []
    for xi in range(network.n_grid):
        for sc, res in compute_cluster_fluxes(network, concs, xi):
            rows.append((xi, sc.name, res))
    return rows


def run_case(
    cfg_path: str,
    *,
    check_jacobian: bool = False,
    log_level: int | str = logging.INFO,
    quiet_console: bool = False,
) -> int:
    """Evaluate one network case. Return 0 on success, non-zero on failure."""
    cfg_path = str(cfg_path)
    try:
        level = get_log_level_from_env(default=log_level)
        setup_logging(level=level, quiet_console=quiet_console)

        cfg = _load_case_config(cfg_path)
        network = setup_network(cfg)
        concs = network.state_from_mapping(dict(cfg.state))

        out_dir = cfg.output.out_dir
        out_dir.mkdir(parents=True, exist_ok=True)

        if cfg.output.write_coefficients:
            write_network_coefficients(network, out_dir / "coefficients.txt")

        rows = evaluate_fluxes(network, concs)
        if cfg.output.write_flux_csv:
            write_flux_csv(out_dir / "flux.csv", rows, network.config.axes)

        if cfg.output.write_jacobian or check_jacobian:
            pattern = build_jacobian_pattern(network)
            logger.info(
                "Jacobian pattern: n=%d nnz=%d max_row=%d",
                pattern.shape[0],
                int(pattern.meta["nnz_total"]),
                int(pattern.meta["nnz_max_row"]),
            )
            for xi in range(network.n_grid):
                J = build_network_jacobian(network, concs, xi, pattern=pattern)
                if cfg.output.write_jacobian:
                    write_jacobian_npz(out_dir / f"jacobian_xi{xi:04d}.npz", J, xi)
                if check_jacobian:
                    J_fd, stats = build_sparse_fd_jacobian(network, concs, xi, pattern=pattern)
                    diff = abs(J - J_fd)
                    err = float(diff.max()) if diff.nnz else 0.0
                    scale = max(float(abs(J).max()) if J.nnz else 0.0, 1.0e-300)
                    logger.info(
                        "Jacobian check xi=%d: max|J - J_fd|=%.3e (rel %.3e, %d colors)",
                        xi,
                        err,
                        err / scale,
                        stats["ncolors"],
                    )

        logger.info("Completed case '%s': %d flux rows over %d grid points.", cfg.case.id, len(rows), network.n_grid)
        return 0
    except Exception:
        tb = traceback.format_exc()
        logger.error("Unhandled exception:\n%s", tb)
        return 99


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Evaluate a super-cluster reaction network case.")
    parser.add_argument("case_yaml", help="Path to case YAML file.")
    parser.add_argument(
        "--check_jacobian",
        action="store_true",
        help="Compare the analytical Jacobian with a colored finite-difference Jacobian.",
    )
    parser.add_argument(
        "--log_level",
        default="INFO",
        help="Default log level (overridden by SUPERCLUSTER_LOG_LEVEL).",
    )
    parser.add_argument(
        "--quiet_console",
        action="store_true",
        help="Keep console output at WARNING and above.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    return run_case(
        args.case_yaml,
        check_jacobian=args.check_jacobian,
        log_level=args.log_level,
        quiet_console=args.quiet_console,
    )


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
