"""Scheduler capability: ``submit(request, entry_point) -> job id``.

``SlurmScheduler`` hands the job to ``sbatch``; ``LocalScheduler`` runs
it right away on the current machine with the same output routing and
wall-clock enforcement, which is what the tests and workstation runs use.
"""
from __future__ import annotations

import os
import shlex
import subprocess
import sys
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from batchrunner.core.core_errors import SchedulingFailure
from batchrunner.core.core_request import NotifyEvent, ResourceRequest, render_directives
from batchrunner.core.core_utils import log
from batchrunner.superior.output_router import (
    BatchOutcome,
    MailNotifier,
    Notifier,
    OutputRouter,
    outcome_from_exit_code,
)

JobIdentifier = str


@dataclass(frozen=True)
class EntryPoint:
    argv: Sequence[str]
    workdir: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)


def render_job_script(request: ResourceRequest, entry_point: EntryPoint) -> str:
    lines = ["#!/bin/bash", ""]
    lines.extend(render_directives(request.validate()))
    lines.append("")
    for key, value in entry_point.env.items():
        lines.append(f"export {key}={shlex.quote(str(value))}")
    if entry_point.workdir:
        lines.append(f"cd {shlex.quote(str(entry_point.workdir))} || exit 1")
    lines.append("exec " + " ".join(shlex.quote(str(a)) for a in entry_point.argv))
    return "\n".join(lines) + "\n"


class Scheduler:
    def submit(self, request: ResourceRequest, entry_point: EntryPoint) -> JobIdentifier:
        raise NotImplementedError


class SlurmScheduler(Scheduler):
    def __init__(self, sbatch: str = "sbatch", script_dir: str = ".") -> None:
        self.sbatch = sbatch
        self.script_dir = Path(script_dir)

    def write_script(self, request: ResourceRequest, entry_point: EntryPoint) -> Path:
        self.script_dir.mkdir(parents=True, exist_ok=True)
        name = request.job_name or "batch"
        path = self.script_dir / f"{name}.sbatch"
        path.write_text(render_job_script(request, entry_point), encoding="utf-8")
        return path

    def submit(self, request: ResourceRequest, entry_point: EntryPoint) -> JobIdentifier:
        script = self.write_script(request, entry_point)
        cmd = [self.sbatch, "--parsable", str(script)]
        log("scheduler", "submit", " ".join(cmd))
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as exc:
            raise SchedulingFailure(f"cannot run {self.sbatch}: {exc}") from exc
        if proc.returncode != 0:
            raise SchedulingFailure(
                f"{self.sbatch} rejected the job (rc={proc.returncode})", stderr=proc.stderr
            )
        return parse_sbatch_output(proc.stdout)


def parse_sbatch_output(stdout: str) -> JobIdentifier:
    """``sbatch --parsable`` prints ``<id>`` or ``<id>;<cluster>``."""
    for line in reversed(stdout.strip().splitlines()):
        token = line.strip().split(";", 1)[0]
        if token:
            return token
    raise SchedulingFailure(f"no job id in sbatch output: {stdout!r}")


class LocalScheduler(Scheduler):
    """Run the entry point immediately, blocking until it exits."""

    def __init__(self, notifier: Optional[Notifier] = None, base_dir: Optional[str] = None) -> None:
        self.notifier = notifier or MailNotifier()
        self.base_dir = Path(base_dir) if base_dir else None
        self.returncodes: Dict[JobIdentifier, int] = {}

    def new_job_id(self) -> JobIdentifier:
        return f"local-{uuid.uuid4().hex[:12]}"

    def submit(self, request: ResourceRequest, entry_point: EntryPoint) -> JobIdentifier:
        request.validate()
        job_id = self.new_job_id()
        router = OutputRouter(request, job_id, self.notifier)
        env = dict(os.environ)
        env.update(entry_point.env)
        env["SLURM_JOB_ID"] = job_id
        env["BATCHRUNNER_LOCAL_JOB"] = "1"
        # Le timeout fait office de limite wall-clock du scheduler
        timeout = request.wall_clock_limit.total_seconds()

        router.notify(NotifyEvent.BEGIN, f"job {job_id} started")
        with router.open(self.base_dir) as (out, err):
            try:
                proc = subprocess.Popen(
                    list(entry_point.argv),
                    cwd=entry_point.workdir or None,
                    env=env,
                    stdout=out,
                    stderr=err,
                )
            except OSError as exc:
                err.write(f"[scheduler] job {job_id} could not start: {exc}\n")
                self.returncodes[job_id] = 127
                router.notify(NotifyEvent.FAIL, f"job {job_id} could not start: {exc}")
                return job_id
            try:
                rc = proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                proc.terminate()
                try:
                    proc.wait(timeout=10)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait()
                rc = -1
                err.write(f"[scheduler] job {job_id} exceeded its wall-clock limit\n")
        self.returncodes[job_id] = rc
        outcome = outcome_from_exit_code(rc)
        if rc == -1:
            summary = BatchOutcome.TIMED_OUT.describe()
        elif outcome is not None:
            summary = outcome.describe()
        else:
            summary = f"exited with rc={rc}"
        if rc == 0:
            router.notify(NotifyEvent.END, f"job {job_id} {summary}")
        else:
            router.notify(NotifyEvent.FAIL, f"job {job_id} {summary}")
        return job_id


def entry_point_for(batch_config_path: str, overrides: Sequence[str] = (), workdir: Optional[str] = None) -> EntryPoint:
    """The command the allocation runs: the orchestrator's ``run`` step."""
    argv: List[str] = [
        sys.executable,
        "-m",
        "batchrunner.superior.superior_orchestrator",
        "run",
        "--batch-config",
        str(Path(batch_config_path).resolve()),
    ]
    for item in overrides:
        argv.extend(["--override", item])
    return EntryPoint(argv=argv, workdir=workdir)
