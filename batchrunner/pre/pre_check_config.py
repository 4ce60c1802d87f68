# batchrunner/pre/pre_check_config.py

import argparse
import os
from typing import Any, Dict, List

from batchrunner.core.core_errors import BatchRunnerError
from batchrunner.core.core_utils import (
    apply_overrides,
    debug_print_params,
    format_wall_clock,
    load_yaml,
)
from batchrunner.superior.superior_orchestrator import BatchConfig, load_batch_config


def collect_warnings(config: BatchConfig) -> List[str]:
    """Non-fatal remarks: things that only the allocation can settle."""
    warnings: List[str] = []
    workdir = os.path.expandvars(os.path.expanduser(config.workdir))
    if not os.path.isdir(workdir):
        # le noeud de calcul peut monter un autre FS: simple avertissement
        warnings.append(f"workdir introuvable depuis cette machine : {workdir}")
    if not config.request.notify_events:
        warnings.append("aucune notification configurée (notify_events vide)")
    if config.request.wall_clock_limit.total_seconds() < 60:
        warnings.append(
            f"wall_clock très court : {format_wall_clock(config.request.wall_clock_limit)}"
        )
    if config.toolchain.loader == "path" and config.request.export_env.value == "NONE":
        warnings.append(
            "loader 'path' avec export_env=NONE : seul le PATH minimal sera visible"
        )
    return warnings


def validate_launcher(config: BatchConfig) -> None:
    if not config.launcher:
        raise SystemExit("[config] launcher vide")
    if "--" in config.launcher:
        raise SystemExit(
            "[config] launcher ne doit pas contenir '--' (ajouté automatiquement avant --experiment)"
        )


def check_batch(path: str, overrides: List[str]) -> BatchConfig:
    try:
        config = load_batch_config(path, overrides)
    except (BatchRunnerError, FileNotFoundError, ValueError) as e:
        raise SystemExit(f"[config] {path}: {e}")
    validate_launcher(config)
    return config


def resolved_params(path: str, overrides: List[str]) -> Dict[str, Any]:
    raw = load_yaml(path)
    if overrides:
        raw = apply_overrides(raw, overrides)
    raw.setdefault("policy", "continue_on_failure")
    return raw


def main() -> None:
    ap = argparse.ArgumentParser(
        description="Pré-check d'un batch (cohérence config avant soumission)"
    )
    ap.add_argument("--batch-config", required=True, help="Chemin du YAML de batch")
    ap.add_argument(
        "--override",
        action="append",
        default=[],
        help="Override config (clé=valeur, ex: resources.cores=48)",
    )
    ap.add_argument(
        "--verbose", action="store_true", help="Afficher les params résolus"
    )
    args = ap.parse_args()

    config = check_batch(args.batch_config, args.override)
    for warning in collect_warnings(config):
        print(f"[config] WARNING: {warning}")

    if args.verbose:
        debug_print_params(resolved_params(args.batch_config, args.override))

    print(
        f"[OK] Batch '{config.batch_id}' validé "
        f"({len(config.experiments)} expériences, toolchain {config.toolchain.module_spec})."
    )


if __name__ == "__main__":
    main()
