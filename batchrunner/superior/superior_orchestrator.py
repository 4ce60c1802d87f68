from __future__ import annotations

import argparse
import contextlib
import csv
import os
import shlex
import signal
import sys
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from rich.table import Table

from batchrunner.core.core_environment import (
    EnvironmentPreparer,
    ToolchainPin,
    WorkspaceHandle,
    load_toolchain_pin,
)
from batchrunner.core.core_errors import (
    BatchRunnerError,
    ConfigError,
    EnvironmentFailure,
    InvocationTimeout,
    JobCancelled,
    SchedulingFailure,
)
from batchrunner.core.core_experiments import (
    ExperimentDescriptor,
    ExperimentRegistry,
    parse_experiments,
)
from batchrunner.core.core_request import (
    JOB_ID_PLACEHOLDER,
    NotifyEvent,
    ResourceRequest,
    build_resource_request,
    expand_template,
    render_directives,
)
from batchrunner.core.core_utils import apply_overrides, console, load_yaml, log
from batchrunner.superior.output_router import BatchOutcome, LogNotifier, Notifier, OutputRouter
from batchrunner.superior.run_single import (
    DEFAULT_LAUNCHER,
    InvocationRecord,
    build_command,
    invoke,
)
from batchrunner.superior.scheduler import (
    LocalScheduler,
    Scheduler,
    SlurmScheduler,
    entry_point_for,
    render_job_script,
)


class ContinuationPolicy(str, Enum):
    STOP_ON_FAILURE = "stop_on_failure"
    CONTINUE_ON_FAILURE = "continue_on_failure"


DEFAULT_POLICY = ContinuationPolicy.CONTINUE_ON_FAILURE


@dataclass
class BatchConfig:
    batch_id: str
    description: str
    request: ResourceRequest
    toolchain: ToolchainPin
    workdir: str
    extra_env: Dict[str, str]
    launcher: List[str]
    policy: ContinuationPolicy
    registry: ExperimentRegistry
    experiments: List[ExperimentDescriptor]
    records_template: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchResult:
    job_id: str
    outcome: BatchOutcome
    records: List[InvocationRecord]
    error: str = ""

    @property
    def failed_count(self) -> int:
        return len([r for r in self.records if r.status == "failed"])

    @property
    def started_count(self) -> int:
        return len([r for r in self.records if r.status != "not_started"])


# Loading / parsing batch configuration

def _parse_policy(raw: Any) -> ContinuationPolicy:
    if raw is None:
        return DEFAULT_POLICY
    try:
        return ContinuationPolicy(str(raw).strip().lower())
    except ValueError:
        allowed = ", ".join(p.value for p in ContinuationPolicy)
        raise ConfigError(f"Unknown policy {raw!r} (expected one of: {allowed})") from None


def _parse_launcher(raw: Any) -> List[str]:
    if not raw:
        return list(DEFAULT_LAUNCHER)
    if isinstance(raw, str):
        return shlex.split(raw)
    return [str(part) for part in raw]


def load_batch_config(path: str, overrides: Sequence[str] = ()) -> BatchConfig:
    """Load a batch configuration YAML into typed structures."""
    raw = load_yaml(path)
    if overrides:
        raw = apply_overrides(raw, list(overrides))

    batch_id = raw.get("batch_id") or Path(path).stem
    resources_cfg = dict(raw.get("resources") or {})
    resources_cfg.setdefault("job_name", batch_id)
    env_cfg = raw.get("environment") or {}

    request = build_resource_request(resources_cfg)
    toolchain = load_toolchain_pin(env_cfg.get("toolchain") or {})
    workdir = env_cfg.get("workdir")
    if not workdir:
        raise ConfigError("environment.workdir is required")

    vocabulary = raw.get("vocabulary")
    registry = ExperimentRegistry(vocabulary) if vocabulary else ExperimentRegistry()
    experiments = parse_experiments(raw.get("experiments") or [], registry)
    if not experiments:
        raise ConfigError(f"batch {batch_id} declares no experiments")

    records_template = raw.get("records")
    if records_template and str(records_template).count(JOB_ID_PLACEHOLDER) != 1:
        raise ConfigError(
            f"records template {records_template!r} must contain {JOB_ID_PLACEHOLDER!r} exactly once"
        )

    return BatchConfig(
        batch_id=str(batch_id),
        description=raw.get("description", ""),
        request=request,
        toolchain=toolchain,
        workdir=str(workdir),
        extra_env={str(k): str(v) for k, v in (env_cfg.get("env") or {}).items()},
        launcher=_parse_launcher(raw.get("launcher")),
        policy=_parse_policy(raw.get("policy")),
        registry=registry,
        experiments=experiments,
        records_template=str(records_template) if records_template else None,
        raw=raw,
    )


def select_experiments(
    experiments: Sequence[ExperimentDescriptor],
    from_experiment: Optional[str] = None,
    max_runs: Optional[int] = None,
) -> List[ExperimentDescriptor]:
    """Manual truncation of a batch by the operator (no automatic resume)."""
    selected = list(experiments)
    if from_experiment:
        names = [d.name for d in selected]
        if from_experiment not in names:
            raise ConfigError(f"--from-experiment {from_experiment!r} is not part of the batch")
        selected = selected[names.index(from_experiment):]
    if max_runs is not None:
        selected = selected[: int(max_runs)]
    return selected


# Records persistence (TSV helpers)

RUN_COLUMNS = [
    "job_id",
    "batch_id",
    "run_index",
    "experiment",
    "status",
    "return_code",
    "started_at",
    "finished_at",
    "duration_s",
    "command",
]


def _write_tsv(rows: List[Dict[str, Any]], path: Path, columns: List[str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=columns, delimiter="\t")
        writer.writeheader()
        for row in rows:
            writer.writerow({col: row.get(col, "") for col in columns})


def write_records_tsv(result: BatchResult, batch_id: str, path: Path) -> None:
    rows = []
    for record in result.records:
        row = record.to_row()
        row.update({"job_id": result.job_id, "batch_id": batch_id})
        rows.append(row)
    _write_tsv(rows, path, RUN_COLUMNS)


def read_records_tsv(path: Path) -> List[Dict[str, str]]:
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8") as f:
        return list(csv.DictReader(f, delimiter="\t"))


# Sequencing


@contextlib.contextmanager
def cancellation_signals() -> Iterator[None]:
    """Turn SIGTERM/SIGINT into ``JobCancelled`` for the duration of a batch.

    Slurm sends SIGTERM on ``scancel`` and when the time limit is reached.
    Handlers can only be installed from the main thread.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum, frame):
        raise JobCancelled(signum)

    previous = {}
    for sig in (signal.SIGTERM, signal.SIGINT):
        previous[sig] = signal.signal(sig, _handler)
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def run_batch(
    config: BatchConfig,
    handle: WorkspaceHandle,
    deadline: Optional[float] = None,
    experiments: Optional[Sequence[ExperimentDescriptor]] = None,
) -> Tuple[BatchOutcome, List[InvocationRecord]]:
    """Run the experiments one after the other, in declaration order.

    Returns ``(outcome, records)``. Invocation ``k+1`` never starts before
    invocation ``k`` has exited. A failed invocation stops the batch only
    under ``STOP_ON_FAILURE``; running out of wall-clock or a cancellation
    signal always stops it. Records of experiments that never started keep
    the ``not_started`` status.
    """
    selected = list(config.experiments if experiments is None else experiments)
    total = len(selected)
    records = [InvocationRecord(run_index=i, experiment=d.name) for i, d in enumerate(selected, start=1)]
    outcome: Optional[BatchOutcome] = None

    try:
        for idx, descriptor in enumerate(selected):
            timeout = None
            if deadline is not None:
                timeout = deadline - time.time()
                if timeout <= 0:
                    handle.write_marker(
                        f"[batch] wall-clock budget exhausted before experiment {descriptor.name}"
                    )
                    outcome = BatchOutcome.TIMED_OUT
                    break

            handle.write_marker(f"[batch] >>> experiment {descriptor.name} ({idx + 1}/{total})")
            handle.write_marker(
                "[batch] command: " + shlex.join(build_command(config.launcher, descriptor))
            )
            try:
                record = invoke(
                    descriptor, handle, config.launcher, run_index=idx + 1, timeout=timeout
                )
            except InvocationTimeout as exc:
                records[idx] = exc.record
                handle.write_marker(f"[batch] <<< experiment {descriptor.name} status=timeout")
                outcome = BatchOutcome.TIMED_OUT
                break

            records[idx] = record
            handle.write_marker(
                f"[batch] <<< experiment {descriptor.name} status={record.status} "
                f"rc={record.return_code} duration={record.duration_s:.1f}s"
            )
            if record.status != "success" and config.policy == ContinuationPolicy.STOP_ON_FAILURE:
                outcome = BatchOutcome.ABORTED
                break
    except JobCancelled as exc:
        if exc.record is not None:
            records[exc.record.run_index - 1] = exc.record
        handle.write_marker(f"[batch] cancelled by signal {exc.signum}")
        outcome = BatchOutcome.CANCELLED

    if outcome is None:
        failed = len([r for r in records if r.status == "failed"])
        outcome = BatchOutcome.COMPLETED_WITH_ERRORS if failed else BatchOutcome.COMPLETED
    return outcome, records


def _job_start_time() -> float:
    raw = os.environ.get("SLURM_JOB_START_TIME")
    if raw:
        try:
            return float(raw)
        except ValueError:
            pass
    return time.time()


def execute_job(
    config: BatchConfig,
    job_id: str,
    notifier: Optional[Notifier] = None,
    preparer: Optional[EnvironmentPreparer] = None,
    stdout=None,
    stderr=None,
    from_experiment: Optional[str] = None,
    max_runs: Optional[int] = None,
    records_dir: Optional[Path] = None,
) -> BatchResult:
    """Entry point of the allocation: prepare once, then sequence the batch."""
    selected = select_experiments(config.experiments, from_experiment, max_runs)
    router = OutputRouter(config.request, job_id, notifier or LogNotifier())
    router.notify(
        NotifyEvent.BEGIN, f"batch {config.batch_id} started ({len(selected)} experiments)"
    )
    log("superior", "start", f"batch={config.batch_id} job={job_id} policy={config.policy.value}")

    preparer = preparer or EnvironmentPreparer(
        config.toolchain, config.workdir, config.request.export_env, config.extra_env
    )
    try:
        handle = preparer.prepare(stdout=stdout, stderr=stderr)
    except EnvironmentFailure as exc:
        log("superior", "environment", f"FAILED: {exc}")
        result = BatchResult(
            job_id=job_id,
            outcome=BatchOutcome.ENVIRONMENT_FAILED,
            records=[InvocationRecord(run_index=i, experiment=d.name) for i, d in enumerate(selected, start=1)],
            error=str(exc),
        )
    else:
        deadline = _job_start_time() + config.request.wall_clock_limit.total_seconds()
        with cancellation_signals():
            outcome, records = run_batch(config, handle, deadline=deadline, experiments=selected)
        result = BatchResult(job_id=job_id, outcome=outcome, records=records)

    message = f"batch {config.batch_id} {result.outcome.describe(result.failed_count)}"
    if result.error:
        message += f": {result.error}"
    router.notify(result.outcome.event, message)

    if config.records_template:
        records_path = Path(expand_template(config.records_template, job_id))
        if records_dir is not None:
            records_path = Path(records_dir) / records_path
        write_records_tsv(result, config.batch_id, records_path)
        log("superior", "records", str(records_path))

    print_summary(config, result)
    return result


def print_summary(config: BatchConfig, result: BatchResult) -> None:
    table = Table(title=f"Batch {config.batch_id} / job {result.job_id}", expand=True)
    table.add_column("#", style="bold", no_wrap=True)
    table.add_column("Experiment")
    table.add_column("Status")
    table.add_column("RC")
    table.add_column("Duration (s)")
    for record in result.records:
        row = record.to_row()
        table.add_row(
            str(record.run_index),
            record.experiment,
            record.status,
            str(row["return_code"]),
            str(row["duration_s"]),
        )
    console.print()
    console.print(table)
    console.print(f"[bold]outcome:[/bold] {result.outcome.describe(result.failed_count)}")


# Planning / submission


def plan_batch(
    config: BatchConfig,
    config_path: str,
    script_out: Optional[str] = None,
    overrides: Sequence[str] = (),
) -> Path:
    """Dry-run: show directives and commands, write the job script."""
    print(f"[DRY-RUN] Batch {config.batch_id}: {len(config.experiments)} experiments")
    for line in render_directives(config.request):
        print(line)
    for idx, descriptor in enumerate(config.experiments, start=1):
        print(f"- ({idx}) {shlex.join(build_command(config.launcher, descriptor))}")

    entry_point = entry_point_for(config_path, overrides=overrides)
    script_path = Path(script_out) if script_out else Path(config_path).with_suffix(".sbatch")
    script_path.parent.mkdir(parents=True, exist_ok=True)
    script_path.write_text(render_job_script(config.request, entry_point), encoding="utf-8")
    print(f"[DRY-RUN] Job script written to {script_path}")
    return script_path


def submit_batch(
    config_path: str, scheduler: Scheduler, overrides: Sequence[str] = ()
) -> str:
    config = load_batch_config(config_path, overrides)
    entry_point = entry_point_for(config_path, overrides=overrides)
    job_id = scheduler.submit(config.request, entry_point)
    print(f"[superior] Submitted batch {config.batch_id} as job {job_id}")
    return job_id


def make_scheduler(kind: str, script_dir: str = ".") -> Scheduler:
    if kind == "slurm":
        return SlurmScheduler(script_dir=script_dir)
    if kind == "local":
        return LocalScheduler()
    raise ValueError(f"Unknown scheduler: {kind}")


# CLI


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Experiment batch runner")
    sub = parser.add_subparsers(dest="command", required=True)

    def _common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--batch-config", required=True, help="Path to batch YAML config")
        p.add_argument(
            "--override",
            action="append",
            default=[],
            help="Repeatable override key.path=value (ex: resources.cores=48)",
        )

    p_plan = sub.add_parser("plan", help="Print directives and commands, write the job script")
    _common(p_plan)
    p_plan.add_argument("--script-out", default=None, help="Where to write the job script")

    p_submit = sub.add_parser("submit", help="Submit the batch to a scheduler")
    _common(p_submit)
    p_submit.add_argument("--scheduler", choices=["slurm", "local"], default="slurm")
    p_submit.add_argument("--script-dir", default=".", help="Directory for generated job scripts")

    p_run = sub.add_parser("run", help="Execute the batch inside the allocation")
    _common(p_run)
    p_run.add_argument("--job-id", default=None, help="Defaults to $SLURM_JOB_ID")
    p_run.add_argument(
        "--from-experiment",
        default=None,
        help="Start at this experiment (manual truncation after a killed job)",
    )
    p_run.add_argument("--max-runs", type=int, default=None, help="Limit number of experiments (debug)")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    try:
        config = load_batch_config(args.batch_config, args.override)
    except (BatchRunnerError, FileNotFoundError) as exc:
        raise SystemExit(f"[config] {exc}")
    if args.command == "plan":
        plan_batch(config, args.batch_config, args.script_out, args.override)
        return

    if args.command == "submit":
        scheduler = make_scheduler(args.scheduler, args.script_dir)
        try:
            submit_batch(args.batch_config, scheduler, args.override)
        except SchedulingFailure as exc:
            if exc.stderr:
                print(exc.stderr, file=sys.stderr)
            raise SystemExit(f"[scheduler] {exc}")
        return

    job_id = args.job_id or os.environ.get("SLURM_JOB_ID")
    if not job_id:
        raise SystemExit("[superior] no job id: pass --job-id or run inside a Slurm allocation")
    try:
        result = execute_job(
            config,
            job_id,
            from_experiment=args.from_experiment,
            max_runs=args.max_runs,
        )
    except ConfigError as exc:
        raise SystemExit(f"[config] {exc}")
    sys.exit(result.outcome.exit_code)


if __name__ == "__main__":
    main()
