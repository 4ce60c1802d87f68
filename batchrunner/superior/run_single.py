"""Execute a single experiment against the external binary.

The command line is the configured launcher, ``--``, then the
descriptor's argv (``--experiment <name>[,<flag>...]``). The call blocks
until the child exits; the exit code is the only status it reports.
"""
from __future__ import annotations

import argparse
import shlex
import subprocess
import sys
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from batchrunner.core.core_environment import WorkspaceHandle
from batchrunner.core.core_errors import InvocationTimeout, JobCancelled
from batchrunner.core.core_experiments import ExperimentDescriptor

DEFAULT_LAUNCHER = ["cargo", "run", "--release"]
TERMINATE_GRACE_S = 10.0


@dataclass
class InvocationRecord:
    run_index: int
    experiment: str
    status: str = "not_started"  # success | failed | timeout | cancelled | not_started
    return_code: Optional[int] = None
    command: str = ""
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def duration_s(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def finish(self, status: str, return_code: Optional[int]) -> None:
        self.status = status
        self.return_code = return_code
        self.finished_at = time.time()

    def to_row(self) -> Dict[str, Any]:
        duration = self.duration_s
        return {
            "run_index": self.run_index,
            "experiment": self.experiment,
            "status": self.status,
            "return_code": "" if self.return_code is None else self.return_code,
            "started_at": self.started_at or "",
            "finished_at": self.finished_at or "",
            "duration_s": "" if duration is None else f"{duration:.3f}",
            "command": self.command,
        }


def build_command(launcher: Sequence[str], descriptor: ExperimentDescriptor) -> List[str]:
    return [*launcher, "--", *descriptor.argv]


def _terminate(proc: subprocess.Popen, grace_s: float) -> None:
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=grace_s)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def invoke(
    descriptor: ExperimentDescriptor,
    handle: WorkspaceHandle,
    launcher: Sequence[str] = DEFAULT_LAUNCHER,
    run_index: int = 1,
    timeout: Optional[float] = None,
    grace_s: float = TERMINATE_GRACE_S,
) -> InvocationRecord:
    """Run one experiment and wait for it.

    A nonzero exit is recorded as ``failed`` and returned. Running out of
    ``timeout`` kills the child and raises ``InvocationTimeout``; a
    ``JobCancelled`` raised by the signal handler, at any point once the
    child is being started, kills the child and propagates. Both carry the
    partial record.
    """
    cmd = build_command(launcher, descriptor)
    record = InvocationRecord(
        run_index=run_index,
        experiment=descriptor.name,
        status="running",
        command=shlex.join(cmd),
        started_at=time.time(),
    )
    proc: Optional[subprocess.Popen] = None
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=handle.workdir,
            env=dict(handle.env),
            stdout=handle.stdout,
            stderr=handle.stderr,
        )
        rc = proc.wait(timeout=timeout)
    except OSError as exc:
        if proc is not None:
            raise
        handle.write_marker(f"[run_single] cannot start {cmd[0]}: {exc}")
        record.finish("failed", 127)
        return record
    except subprocess.TimeoutExpired:
        _terminate(proc, grace_s)
        record.finish("timeout", proc.returncode)
        raise InvocationTimeout(
            f"experiment {descriptor.name} exceeded the remaining wall-clock budget", record
        ) from None
    except JobCancelled as exc:
        # the signal may land before the child exists
        if proc is not None:
            _terminate(proc, grace_s)
        record.finish("cancelled", None if proc is None else proc.returncode)
        exc.record = record
        raise

    record.finish("success" if rc == 0 else "failed", rc)
    return record


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a single experiment of a batch")
    parser.add_argument("--batch-config", required=True, help="Path to batch YAML config")
    parser.add_argument("--experiment", required=True, help="Experiment name from the batch")
    parser.add_argument(
        "--override",
        action="append",
        default=[],
        help="Repeatable override key.path=value applied to the batch config",
    )
    parser.add_argument("--timeout", type=float, default=None, help="Seconds before the run is killed")
    return parser


def run_single(args: argparse.Namespace) -> int:
    # Import tardif: l'orchestrateur importe ce module
    from batchrunner.core.core_environment import EnvironmentPreparer
    from batchrunner.core.core_errors import BatchRunnerError
    from batchrunner.superior.superior_orchestrator import load_batch_config

    try:
        config = load_batch_config(args.batch_config, args.override)
    except BatchRunnerError as exc:
        raise SystemExit(f"[config] {exc}")
    matches = [d for d in config.experiments if d.name == args.experiment]
    if not matches:
        raise SystemExit(
            f"[config] experiment {args.experiment!r} not in batch {config.batch_id} "
            f"(available: {', '.join(d.name for d in config.experiments)})"
        )

    preparer = EnvironmentPreparer(
        config.toolchain, config.workdir, config.request.export_env, config.extra_env
    )
    try:
        handle = preparer.prepare()
    except BatchRunnerError as exc:
        print(f"[run_single] environment failure: {exc}", file=sys.stderr)
        return 2

    try:
        record = invoke(matches[0], handle, config.launcher, timeout=args.timeout)
    except InvocationTimeout as exc:
        print(f"[run_single] {exc}", file=sys.stderr)
        return 124
    print(f"[run_single] {record.experiment} status={record.status} rc={record.return_code}")
    return record.return_code or 0


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    exit_code = run_single(args)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
