# batchrunner/core/core_environment.py
"""Deterministic execution context of a job.

The preparer runs once per job, before any experiment: it resolves the
pinned toolchain, checks the working directory and returns a
``WorkspaceHandle`` that is passed explicitly to every invocation.
Everything an experiment writes under ``workdir`` stays visible to the
following experiments of the batch; nothing is cleaned between them or
between two submissions of the same batch.
"""

from __future__ import annotations

import os
import re
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Dict, List, Mapping, Optional

from batchrunner.core.core_errors import ConfigError, EnvironmentFailure
from batchrunner.core.core_request import ExportEnv
from batchrunner.core.core_utils import log

# Kept when the submitting environment is purged (--export=NONE).
MINIMAL_ENV_KEYS = ("PATH", "HOME", "USER", "LOGNAME", "SHELL", "LANG", "TMPDIR")
LOADERS = ("module", "path")


@dataclass(frozen=True)
class ToolchainPin:
    name: str
    version: str
    loader: str = "module"
    probe: tuple = ()

    @property
    def module_spec(self) -> str:
        return f"{self.name}/{self.version}"

    @property
    def probe_argv(self) -> List[str]:
        return list(self.probe) if self.probe else [self.name, "--version"]


@dataclass(frozen=True)
class WorkspaceHandle:
    workdir: Path
    env: Mapping[str, str]
    toolchain: ToolchainPin
    stdout: Optional[IO[Any]] = None
    stderr: Optional[IO[Any]] = None

    def write_marker(self, line: str) -> None:
        """Write a line to the shared stdout, before the next child writes."""
        stream = self.stdout if self.stdout is not None else sys.stdout
        stream.write(line + "\n")
        stream.flush()


def load_toolchain_pin(raw: Dict[str, Any]) -> ToolchainPin:
    raw = raw or {}
    name = raw.get("name")
    version = raw.get("version")
    if not name or not version:
        raise ConfigError("environment.toolchain needs both 'name' and 'version'")
    loader = str(raw.get("loader", "module"))
    if loader not in LOADERS:
        raise ConfigError(f"Unknown toolchain loader {loader!r} (expected one of {LOADERS})")
    probe = raw.get("probe") or ()
    if isinstance(probe, str):
        probe = probe.split()
    return ToolchainPin(name=str(name), version=str(version), loader=loader, probe=tuple(probe))


def base_environment(export_env: ExportEnv, source: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    source = os.environ if source is None else source
    if export_env == ExportEnv.INHERIT:
        return dict(source)
    env = {k: source[k] for k in MINIMAL_ENV_KEYS if k in source}
    env.update({k: v for k, v in source.items() if k.startswith("SLURM_")})
    return env


def version_matches(version: str, output: str) -> bool:
    """True if ``output`` reports ``version`` as a whole version token.

    Extra trailing components are accepted (``3.11`` matches ``3.11.7``)
    but a pin is never matched inside a longer number (``3.1`` does not
    match ``3.11.7``, ``1.82.0`` does not match ``1.82.0-nightly``).
    """
    pattern = r"(?<![\w.])" + re.escape(version) + r"(?:\.\d+)*(?![\w+-]|\.\d)"
    return re.search(pattern, output) is not None


def _parse_env0(payload: bytes) -> Dict[str, str]:
    env: Dict[str, str] = {}
    for entry in payload.split(b"\0"):
        if not entry or b"=" not in entry:
            continue
        key, value = entry.split(b"=", 1)
        env[key.decode("utf-8", "replace")] = value.decode("utf-8", "replace")
    return env


class EnvironmentPreparer:
    def __init__(
        self,
        pin: ToolchainPin,
        workdir: str,
        export_env: ExportEnv = ExportEnv.NONE,
        extra_env: Optional[Dict[str, str]] = None,
        probe_timeout: float = 300.0,
    ) -> None:
        self.pin = pin
        self.workdir = workdir
        self.export_env = export_env
        self.extra_env = dict(extra_env or {})
        self.probe_timeout = probe_timeout
        self._handle: Optional[WorkspaceHandle] = None

    def prepare(self, stdout: Optional[IO[Any]] = None, stderr: Optional[IO[Any]] = None) -> WorkspaceHandle:
        if self._handle is not None:
            return self._handle

        workdir = self._resolve_workdir()
        env = base_environment(self.export_env)
        if self.pin.loader == "module":
            env = self._load_module(env, workdir)
        self._verify_pin(env, workdir)
        env.update({k: str(v) for k, v in self.extra_env.items()})

        log("environment", "ready", f"toolchain={self.pin.module_spec} workdir={workdir}")
        self._handle = WorkspaceHandle(
            workdir=workdir, env=env, toolchain=self.pin, stdout=stdout, stderr=stderr
        )
        return self._handle

    def _resolve_workdir(self) -> Path:
        workdir = Path(os.path.expandvars(os.path.expanduser(str(self.workdir))))
        if not workdir.is_dir():
            raise EnvironmentFailure(f"working directory does not exist: {workdir}")
        return workdir.resolve()

    def _load_module(self, env: Dict[str, str], workdir: Path) -> Dict[str, str]:
        script = f"module load {self.pin.module_spec} >&2 && env -0"
        try:
            proc = subprocess.run(
                ["bash", "-lc", script],
                cwd=workdir,
                env=env,
                capture_output=True,
                timeout=self.probe_timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise EnvironmentFailure(f"cannot run module loader: {exc}") from exc
        if proc.returncode != 0:
            detail = proc.stderr.decode("utf-8", "replace").strip()
            raise EnvironmentFailure(
                f"module load {self.pin.module_spec} failed (rc={proc.returncode}): {detail}"
            )
        return _parse_env0(proc.stdout)

    def _verify_pin(self, env: Dict[str, str], workdir: Path) -> None:
        argv = self.pin.probe_argv
        try:
            proc = subprocess.run(
                argv,
                cwd=workdir,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.probe_timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise EnvironmentFailure(f"toolchain probe {argv} failed: {exc}") from exc
        output = (proc.stdout or "") + (proc.stderr or "")
        if proc.returncode != 0:
            raise EnvironmentFailure(
                f"toolchain probe {argv} exited with {proc.returncode}: {output.strip()}"
            )
        if not version_matches(self.pin.version, output):
            raise EnvironmentFailure(
                f"toolchain version mismatch: expected {self.pin.version}, probe said {output.strip()!r}"
            )
