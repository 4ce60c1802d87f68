# batchrunner/core/core_utils.py

import os
import re
from copy import deepcopy
from datetime import timedelta
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table
from rich.panel import Panel

import yaml

console = Console()
RUNNER_VERSION = "1.0.0"

# ---------- Utils de base ----------

def load_yaml(path: str) -> Dict[str, Any]:
    """Charger un YAML en dict, avec un message d'erreur clair."""
    if not os.path.exists(path):
        raise FileNotFoundError(f"YAML introuvable: {path}")
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def parse_override(raw: str) -> (List[str], Any):
    """
    Parse une override "a.b.c=val" -> (["a","b","c"], "val")
    On laisse la responsabilité de caster au code qui applique.
    """
    if "=" not in raw:
        raise ValueError(f"Override invalide (pas de '='): {raw}")
    key, value = raw.split("=", 1)
    path = key.split(".")
    return path, value


def _cast_scalar(value: str) -> Any:
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    try:
        return int(value)
    except (ValueError, TypeError):
        pass
    try:
        return float(value)
    except (ValueError, TypeError):
        return value


def apply_overrides(config: Dict[str, Any], overrides: List[str]) -> Dict[str, Any]:
    """Appliquer une liste de 'key=value' sur un dict (nested).

    Les valeurs entre crochets ("[a,b]") deviennent des listes de chaînes.
    """
    cfg = deepcopy(config)
    for raw in overrides:
        path, value = parse_override(raw)
        if value.startswith("[") and value.endswith("]"):
            items = [v.strip() for v in value[1:-1].split(",")]
            cast_val: Any = [v for v in items if v]
        else:
            cast_val = _cast_scalar(value)

        d: Dict[str, Any] = cfg
        for key in path[:-1]:
            if key not in d or not isinstance(d[key], dict):
                d[key] = {}
            d = d[key]
        d[path[-1]] = cast_val
    return cfg


# ---------- Durées wall-clock (format Slurm) ----------

_WALL_CLOCK_RE = re.compile(
    r"^(?:(?P<days>\d+)-)?(?P<a>\d+)(?::(?P<b>\d+))?(?::(?P<c>\d+))?$"
)


def parse_wall_clock(raw: Any) -> timedelta:
    """Parse a Slurm time limit into a timedelta.

    Accepted forms: ``mm``, ``mm:ss``, ``hh:mm:ss``, ``d-hh``, ``d-hh:mm``
    and ``d-hh:mm:ss``. A bare integer is read as minutes.
    """
    if isinstance(raw, timedelta):
        return raw
    if isinstance(raw, int) and not isinstance(raw, bool):
        return timedelta(minutes=raw)
    text = str(raw).strip()
    match = _WALL_CLOCK_RE.match(text)
    if not match:
        raise ValueError(f"Invalid wall-clock limit: {raw!r}")

    days = match.group("days")
    a, b, c = match.group("a"), match.group("b"), match.group("c")
    if days is not None:
        hours = int(a)
        minutes = int(b) if b is not None else 0
        seconds = int(c) if c is not None else 0
        return timedelta(days=int(days), hours=hours, minutes=minutes, seconds=seconds)
    if c is not None:
        return timedelta(hours=int(a), minutes=int(b), seconds=int(c))
    if b is not None:
        return timedelta(minutes=int(a), seconds=int(b))
    return timedelta(minutes=int(a))


def format_wall_clock(limit: timedelta) -> str:
    """Format a timedelta as ``d-hh:mm:ss``."""
    total = int(limit.total_seconds())
    days, rest = divmod(total, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{days}-{hours:02d}:{minutes:02d}:{seconds:02d}"


# ---------- Logging minimal ----------

def log(script: str, stage: str, msg: str) -> None:
    """Log formaté uniforme."""
    print(f"[{script}:{stage}] {msg}", flush=True)


def debug_print_params(params: Dict[str, Any]) -> None:
    """Affiche les paramètres résolus d'un batch (panneau + tableaux rich)."""
    batch_id = params.get("batch_id", "?")
    desc = params.get("description", "")

    header_text = (
        f"[bold]Batch[/bold]\n"
        f"[bold]batch_id=[/bold]{batch_id}\n"
        f"[bold]version=[/bold]{RUNNER_VERSION}\n"
        f"{desc}"
    )
    console.print()
    console.print(
        Panel.fit(
            header_text,
            title="CONFIG",
            subtitle="params résolus",
            border_style="cyan",
        )
    )

    resources = params.get("resources", {}) or {}
    t1 = Table(title="Ressources", expand=True)
    t1.add_column("Champ", style="bold", no_wrap=True)
    t1.add_column("Valeur")
    for key in (
        "nodes", "cores", "wall_clock", "partition", "qos",
        "notify_events", "notify_recipient", "stdout", "stderr", "export_env",
    ):
        t1.add_row(key, _join_or_str(resources.get(key)))
    console.print()
    console.print(t1)

    environment = params.get("environment", {}) or {}
    toolchain = environment.get("toolchain", {}) or {}
    t2 = Table(title="Environnement", expand=True)
    t2.add_column("Champ", style="bold", no_wrap=True)
    t2.add_column("Valeur")
    t2.add_row("Toolchain", f"{toolchain.get('name', '?')}/{toolchain.get('version', '?')}")
    t2.add_row("Loader", str(toolchain.get("loader", "module")))
    t2.add_row("Workdir", str(environment.get("workdir")))
    t2.add_row("Launcher", _join_or_str(params.get("launcher")))
    t2.add_row("Policy", str(params.get("policy")))
    console.print()
    console.print(t2)

    t3 = Table(title="Expériences", expand=True)
    t3.add_column("#", style="bold", no_wrap=True)
    t3.add_column("Experiment")
    for idx, entry in enumerate(params.get("experiments") or [], start=1):
        if isinstance(entry, dict):
            t3.add_row(str(idx), str(entry.get("name")))
        else:
            t3.add_row(str(idx), str(entry))
    console.print()
    console.print(t3)
    console.print()


def _join_or_str(val: Optional[Any]) -> str:
    if val is None:
        return "-"
    if isinstance(val, str):
        return val
    if isinstance(val, (list, tuple, set, frozenset)):
        return ", ".join(map(str, val)) if val else "-"
    return str(val)
