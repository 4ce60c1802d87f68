# batchrunner/core/core_experiments.py
"""Experiment descriptors and the closed experiment vocabulary."""

from __future__ import annotations

import difflib
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from batchrunner.core.core_errors import (
    ConfigError,
    DuplicateExperimentError,
    UnknownExperimentError,
)

# Names understood by the external search binary (``--experiment <name>``).
DEFAULT_VOCABULARY: Tuple[str, ...] = (
    "measure-initial-population",
    "add-scc-population-from-random-inputs",
    "add-scc-population-from-ski-inputs",
    "add-scc-population-from-skip-inputs",
    "scc-population-from-random-inputs-with-tests",
    "add-population-from-random-inputs-with-tests",
    "add-population-from-random-inputs-with-add-succ-tests",
    "scc-population-from-ski-inputs-with-tests",
    "add-population-from-ski-inputs-with-tests",
    "add-population-from-ski-inputs-with-add-succ-tests",
    "succ-kinetic",
)


@dataclass(frozen=True)
class ExperimentDescriptor:
    name: str
    flags: Tuple[str, ...] = ()
    extra_args: Tuple[str, ...] = ()

    @property
    def selector(self) -> str:
        return ",".join((self.name,) + tuple(self.flags))

    @property
    def argv(self) -> List[str]:
        return ["--experiment", self.selector, *self.extra_args]


class ExperimentRegistry:
    def __init__(self, names: Iterable[str] = DEFAULT_VOCABULARY) -> None:
        self._names = tuple(dict.fromkeys(str(n) for n in names))
        if not self._names:
            raise ConfigError("experiment vocabulary is empty")

    @property
    def names(self) -> Tuple[str, ...]:
        return self._names

    def __contains__(self, name: object) -> bool:
        return name in self._names

    def validate(self, name: str) -> str:
        if name in self._names:
            return name
        close = difflib.get_close_matches(name, self._names, n=3)
        hint = f" (did you mean: {', '.join(close)}?)" if close else ""
        raise UnknownExperimentError(f"Unknown experiment {name!r}{hint}")


def _as_str_tuple(value: Any, what: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"{what} must be a list, got {type(value).__name__}")
    return tuple(str(v) for v in value)


def parse_experiment(raw: Any, registry: Optional[ExperimentRegistry] = None) -> ExperimentDescriptor:
    """Entries are either a bare name or ``{name, flags, args}``."""
    if isinstance(raw, str):
        name, flags, extra = raw, (), ()
    elif isinstance(raw, dict):
        name = raw.get("name")
        if not name:
            raise ConfigError(f"experiment entry without a name: {raw!r}")
        flags = _as_str_tuple(raw.get("flags"), "flags")
        extra = _as_str_tuple(raw.get("args"), "args")
    else:
        raise ConfigError(f"Invalid experiment entry: {raw!r}")

    name = str(name).strip()
    # "name," as written in legacy job scripts
    name = name.rstrip(",")
    if registry is not None:
        registry.validate(name)
    return ExperimentDescriptor(name=name, flags=flags, extra_args=extra)


def parse_experiments(
    raw_list: Sequence[Any], registry: Optional[ExperimentRegistry] = None
) -> List[ExperimentDescriptor]:
    descriptors: List[ExperimentDescriptor] = []
    seen = set()
    for raw in raw_list or []:
        descriptor = parse_experiment(raw, registry)
        if descriptor.name in seen:
            raise DuplicateExperimentError(
                f"Experiment {descriptor.name!r} listed twice in the same batch"
            )
        seen.add(descriptor.name)
        descriptors.append(descriptor)
    return descriptors
