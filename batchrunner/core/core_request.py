# batchrunner/core/core_request.py
"""Resource request declared to the scheduler.

A request is built once from the ``resources`` section of a batch config
and never mutated. Validation is local: positive counts, a positive
wall-clock limit, and output templates carrying the job-id placeholder
exactly once so that concurrent jobs never write to the same files.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from batchrunner.core.core_errors import RequestValidationError
from batchrunner.core.core_utils import format_wall_clock, parse_wall_clock

JOB_ID_PLACEHOLDER = "%j"


class NotifyEvent(str, Enum):
    BEGIN = "BEGIN"
    END = "END"
    FAIL = "FAIL"
    ALL = "ALL"


class ExportEnv(str, Enum):
    NONE = "NONE"
    INHERIT = "INHERIT"


@dataclass(frozen=True)
class ResourceRequest:
    node_count: int
    core_count: int
    wall_clock_limit: timedelta
    partition: str
    qos: str
    notify_events: FrozenSet[NotifyEvent] = field(default_factory=frozenset)
    notify_recipient: str = ""
    stdout_template: str = "slurm.%j.out"
    stderr_template: str = "slurm.%j.err"
    export_env: ExportEnv = ExportEnv.NONE
    job_name: Optional[str] = None

    def validate(self) -> "ResourceRequest":
        for label, value in (("node_count", self.node_count), ("core_count", self.core_count)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise RequestValidationError(f"{label} must be a positive integer, got {value!r}")
        if self.wall_clock_limit <= timedelta(0):
            raise RequestValidationError(
                f"wall_clock_limit must be positive, got {self.wall_clock_limit}"
            )
        for label, template in (("stdout", self.stdout_template), ("stderr", self.stderr_template)):
            count = template.count(JOB_ID_PLACEHOLDER)
            if count != 1:
                raise RequestValidationError(
                    f"{label} template {template!r} must contain {JOB_ID_PLACEHOLDER!r} "
                    f"exactly once (found {count})"
                )
        if self.notify_events and not self.notify_recipient:
            raise RequestValidationError("notify_events set but notify_recipient is empty")
        return self

    def notifies(self, event: NotifyEvent) -> bool:
        if NotifyEvent.ALL in self.notify_events:
            return True
        return event in self.notify_events

    def output_paths(self, job_id: str) -> Tuple[Path, Path]:
        """Stdout/stderr paths of one job; both carry the same identifier."""
        return (
            Path(expand_template(self.stdout_template, job_id)),
            Path(expand_template(self.stderr_template, job_id)),
        )


def expand_template(template: str, job_id: str) -> str:
    if not job_id:
        raise ValueError("job_id must be a non-empty string")
    return template.replace(JOB_ID_PLACEHOLDER, str(job_id))


def _parse_notify_events(raw: Any) -> FrozenSet[NotifyEvent]:
    if raw is None or raw == "":
        return frozenset()
    if isinstance(raw, str):
        items: Iterable[str] = [part for part in raw.split(",") if part.strip()]
    else:
        items = raw
    events = set()
    for item in items:
        name = str(item).strip().upper()
        if name == "NONE":
            continue
        try:
            events.add(NotifyEvent(name))
        except ValueError:
            raise RequestValidationError(f"Unknown notify event: {item!r}") from None
    return frozenset(events)


def _parse_export_env(raw: Any) -> ExportEnv:
    name = str(raw or "NONE").strip().upper()
    # Slurm spelling
    if name == "ALL":
        name = "INHERIT"
    try:
        return ExportEnv(name)
    except ValueError:
        raise RequestValidationError(f"Unknown export_env policy: {raw!r}") from None


def build_resource_request(raw: Dict[str, Any]) -> ResourceRequest:
    """Build and validate a ResourceRequest from a ``resources`` mapping."""
    raw = raw or {}
    try:
        wall_clock = parse_wall_clock(raw.get("wall_clock", "0-01:00:00"))
    except ValueError as exc:
        raise RequestValidationError(str(exc)) from None

    request = ResourceRequest(
        node_count=raw.get("nodes", 1),
        core_count=raw.get("cores", 1),
        wall_clock_limit=wall_clock,
        partition=str(raw.get("partition", "general")),
        qos=str(raw.get("qos", "public")),
        notify_events=_parse_notify_events(raw.get("notify_events")),
        notify_recipient=str(raw.get("notify_recipient") or ""),
        stdout_template=str(raw.get("stdout", "slurm.%j.out")),
        stderr_template=str(raw.get("stderr", "slurm.%j.err")),
        export_env=_parse_export_env(raw.get("export_env")),
        job_name=raw.get("job_name"),
    )
    return request.validate()


def render_directives(request: ResourceRequest) -> List[str]:
    """Render the ``#SBATCH`` directive block of a request."""
    lines = []
    if request.job_name:
        lines.append(f"#SBATCH -J {request.job_name}")
    lines.extend(
        [
            f"#SBATCH -N {request.node_count}",
            f"#SBATCH -c {request.core_count}",
            f"#SBATCH -t {format_wall_clock(request.wall_clock_limit)}",
            f"#SBATCH -p {request.partition}",
            f"#SBATCH -q {request.qos}",
            f"#SBATCH -o {request.stdout_template}",
            f"#SBATCH -e {request.stderr_template}",
        ]
    )
    if request.notify_events:
        if NotifyEvent.ALL in request.notify_events:
            mail_type = "ALL"
        else:
            order = [NotifyEvent.BEGIN, NotifyEvent.END, NotifyEvent.FAIL]
            mail_type = ",".join(e.value for e in order if e in request.notify_events)
        lines.append(f"#SBATCH --mail-type={mail_type}")
        lines.append(f'#SBATCH --mail-user="{request.notify_recipient}"')
    export = "NONE" if request.export_env == ExportEnv.NONE else "ALL"
    lines.append(f"#SBATCH --export={export}")
    return lines
