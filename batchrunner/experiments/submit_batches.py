#!/usr/bin/env python
"""
batchrunner/experiments/submit_batches.py

Script minimal pour soumettre plusieurs batchs d'un coup.

Usage typique :
    python -m batchrunner.experiments.submit_batches \
        --configs configs/batches/discovery.yml configs/batches/sol.yml \
        --dry-run

Chaque batch devient un job indépendant; un refus du scheduler pour l'un
n'empêche pas la soumission des suivants (pas de retry).
"""

import argparse
import shlex
from typing import List, Optional, Sequence, Tuple

from batchrunner.core.core_errors import BatchRunnerError, SchedulingFailure
from batchrunner.superior.scheduler import entry_point_for
from batchrunner.superior.superior_orchestrator import make_scheduler, submit_batch


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser()
    p.add_argument(
        "--configs",
        nargs="+",
        required=True,
        help="Liste des YAML de batch à soumettre",
    )
    p.add_argument(
        "--overrides",
        nargs="*",
        default=[],
        help="Liste d'overrides globaux (clé=val) appliqués à tous les batchs.",
    )
    p.add_argument(
        "--scheduler",
        choices=["slurm", "local"],
        default="slurm",
    )
    p.add_argument(
        "--script-dir",
        default=".",
        help="Répertoire des scripts sbatch générés.",
    )
    p.add_argument(
        "--dry-run",
        action="store_true",
        help="Afficher les commandes sans soumettre.",
    )
    return p.parse_args(argv)


def build_commands(configs: List[str], overrides: List[str]) -> List[Tuple[str, str]]:
    """Retourne une liste (config, commande du point d'entrée)."""
    cmds: List[Tuple[str, str]] = []
    for cfg in configs:
        entry = entry_point_for(cfg, overrides=overrides)
        cmds.append((cfg, shlex.join(entry.argv)))
    return cmds


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    cmds = build_commands(args.configs, args.overrides)

    print(f"[submit_batches] {len(cmds)} batchs prévus.")
    if args.dry_run:
        for cfg, cmd in cmds:
            print(f"[submit_batches] {cfg} >>> {cmd}")
        return 0

    scheduler = make_scheduler(args.scheduler, args.script_dir)
    failures = 0
    for cfg, _ in cmds:
        try:
            job_id = submit_batch(cfg, scheduler, args.overrides)
        except SchedulingFailure as exc:
            failures += 1
            print(f"[submit_batches] {cfg} refusé par le scheduler: {exc} {exc.stderr.strip()}")
            continue
        except (BatchRunnerError, FileNotFoundError) as exc:
            failures += 1
            print(f"[submit_batches] {cfg} invalide: {exc}")
            continue
        print(f"[submit_batches] {cfg} -> job {job_id}")
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
