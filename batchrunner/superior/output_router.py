"""Bind a job's output streams to job-id templated files and relay
lifecycle notifications.

All experiments of a batch share the same pair of files, in execution
order; the ``[batch] >>>``/``<<<`` markers written by the sequencer are
the only record of which experiment produced which lines.
"""
from __future__ import annotations

import contextlib
import getpass
import subprocess
from enum import Enum
from pathlib import Path
from typing import IO, Any, Iterator, List, Optional, Sequence, Tuple

from batchrunner.core.core_request import NotifyEvent, ResourceRequest
from batchrunner.core.core_utils import log


class BatchOutcome(Enum):
    """Job-level outcome; the value is the job's exit code."""

    COMPLETED = 0
    ABORTED = 1
    ENVIRONMENT_FAILED = 2
    COMPLETED_WITH_ERRORS = 3
    TIMED_OUT = 124
    CANCELLED = 143

    @property
    def exit_code(self) -> int:
        return self.value

    @property
    def event(self) -> NotifyEvent:
        return NotifyEvent.END if self is BatchOutcome.COMPLETED else NotifyEvent.FAIL

    def describe(self, failed: int = 0) -> str:
        if self is BatchOutcome.COMPLETED_WITH_ERRORS:
            if failed:
                return f"completed with errors ({failed} failed)"
            return "completed with errors"
        return {
            BatchOutcome.COMPLETED: "completed",
            BatchOutcome.ABORTED: "aborted",
            BatchOutcome.ENVIRONMENT_FAILED: "environment failure",
            BatchOutcome.TIMED_OUT: "timed out",
            BatchOutcome.CANCELLED: "cancelled",
        }[self]


def outcome_from_exit_code(rc: int) -> Optional[BatchOutcome]:
    try:
        return BatchOutcome(rc)
    except ValueError:
        return None


class Notifier:
    """Delivery channel for job lifecycle events."""

    def notify(self, event: NotifyEvent, job_id: str, recipient: str, message: str) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Writes the notification to the job log.

    On Slurm the mail itself is sent by the scheduler from the
    ``--mail-type``/``--mail-user`` directives; this line adds the batch
    outcome to the shared output.
    """

    def notify(self, event: NotifyEvent, job_id: str, recipient: str, message: str) -> None:
        log("notify", event.value, f"job={job_id} to={recipient or '-'} {message}")


class MailNotifier(Notifier):
    """Pipe the message into a mail command, e.g. ``mail -s <subject> <to>``."""

    def __init__(self, command: Sequence[str] = ("mail",)) -> None:
        self.command = list(command)

    def build_command(self, subject: str, recipient: str) -> List[str]:
        return self.command + ["-s", subject, recipient]

    @staticmethod
    def resolve_recipient(recipient: str) -> str:
        """Expand ``%u`` to the current user name (``%u@asu.edu``)."""
        if "%u" in recipient:
            recipient = recipient.replace("%u", getpass.getuser())
        return recipient

    def notify(self, event: NotifyEvent, job_id: str, recipient: str, message: str) -> None:
        if not recipient:
            return
        recipient = self.resolve_recipient(recipient)
        subject = f"[batchrunner] job {job_id} {event.value}"
        try:
            proc = subprocess.run(
                self.build_command(subject, recipient),
                input=message,
                text=True,
                capture_output=True,
            )
        except OSError as exc:
            log("notify", event.value, f"mail command unavailable: {exc}")
            return
        if proc.returncode != 0:
            log("notify", event.value, f"mail command failed rc={proc.returncode}: {proc.stderr.strip()}")


class OutputRouter:
    def __init__(self, request: ResourceRequest, job_id: str, notifier: Optional[Notifier] = None) -> None:
        self.request = request
        self.job_id = str(job_id)
        self.notifier = notifier or LogNotifier()

    def paths(self) -> Tuple[Path, Path]:
        return self.request.output_paths(self.job_id)

    @contextlib.contextmanager
    def open(self, base_dir: Optional[Path] = None) -> Iterator[Tuple[IO[Any], IO[Any]]]:
        """Open both output files in append mode.

        Relative templates resolve against ``base_dir``. When stdout and
        stderr resolve to the same file a single stream serves both.
        """
        stdout_path, stderr_path = self.paths()
        if base_dir is not None:
            stdout_path = Path(base_dir) / stdout_path
            stderr_path = Path(base_dir) / stderr_path
        stdout_path.parent.mkdir(parents=True, exist_ok=True)
        stderr_path.parent.mkdir(parents=True, exist_ok=True)

        with contextlib.ExitStack() as stack:
            out = stack.enter_context(stdout_path.open("a", encoding="utf-8"))
            if stderr_path.resolve() == stdout_path.resolve():
                err = out
            else:
                err = stack.enter_context(stderr_path.open("a", encoding="utf-8"))
            yield out, err

    def notify(self, event: NotifyEvent, message: str) -> bool:
        """Relay ``message`` if the request subscribes to ``event``."""
        if not self.request.notifies(event):
            return False
        self.notifier.notify(event, self.job_id, self.request.notify_recipient, message)
        return True
