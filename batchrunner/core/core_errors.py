# batchrunner/core/core_errors.py
"""Failure taxonomy of the batch runner.

Invocation failures (an experiment exiting nonzero) are not exceptions:
they are recorded on the run record and sequencing goes on according to
the continuation policy.
"""

from __future__ import annotations

from typing import Optional


class BatchRunnerError(Exception):
    """Base class for every error raised by batchrunner."""


class ConfigError(BatchRunnerError):
    pass


class UnknownExperimentError(ConfigError):
    pass


class DuplicateExperimentError(ConfigError):
    pass


class SchedulingFailure(BatchRunnerError):
    """The resource request was rejected or could not be submitted."""

    def __init__(self, message: str, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


class RequestValidationError(SchedulingFailure):
    pass


class EnvironmentFailure(BatchRunnerError):
    """Toolchain or working directory could not be established."""


class InvocationTimeout(BatchRunnerError):
    """The wall-clock budget ran out while an experiment was running."""

    def __init__(self, message: str, record: Optional[object] = None) -> None:
        super().__init__(message)
        self.record = record


class JobCancelled(BatchRunnerError):
    """Raised from the signal handler when the scheduler terminates the job."""

    def __init__(self, signum: int) -> None:
        super().__init__(f"job cancelled by signal {signum}")
        self.signum = signum
        self.record: Optional[object] = None
