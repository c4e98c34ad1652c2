# errors.py
from __future__ import annotations

from typing import Sequence


class RelayError(Exception):
    """Base class for every error raised by relayci."""


class ConfigError(RelayError):
    """
    The pipeline definition cannot be scheduled.

    Raised for malformed documents, duplicate or unknown job names,
    self-dependencies and cycles. Always fatal, always raised before any
    job is dispatched.
    """


class CycleError(ConfigError):
    def __init__(self, members: Sequence[str]):
        self.members = list(members)
        path = " -> ".join(self.members + self.members[:1])
        super().__init__(f"Dependency cycle detected: {path}")


class InvalidTransition(RelayError):
    def __init__(self, job: str, current: str, target: str):
        self.job = job
        self.current = current
        self.target = target
        super().__init__(f"[{job}] invalid state transition {current} -> {target}")


class StepFailure(RelayError):
    """A step exited non-zero. Contained to its JobRun."""

    def __init__(self, job: str, step: str, index: int, exit_code: int | None):
        self.job = job
        self.step = step
        self.index = index
        self.exit_code = exit_code
        super().__init__(f"[{job}] step #{index} '{step}' failed (exit={exit_code})")


class StepTimeout(StepFailure):
    def __init__(self, job: str, step: str, index: int, timeout: float):
        super().__init__(job, step, index, None)
        self.timeout = timeout
        self.args = (f"[{job}] step #{index} '{step}' exceeded the job timeout of {timeout:g}s",)


class Cancelled(StepFailure):
    def __init__(self, job: str, step: str, index: int):
        super().__init__(job, step, index, None)
        self.args = (f"[{job}] cancelled during step #{index} '{step}'",)


class CacheMiss(RelayError):
    """No blob for the requested key or any of its fallbacks. Never fatal."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"cache miss: {key}")


class ReportParseError(RelayError):
    """A structured report could not be parsed. Reported as a warning only."""

    def __init__(self, job: str, path: str, reason: str):
        self.job = job
        self.path = path
        self.reason = reason
        super().__init__(f"[{job}] could not parse report {path}: {reason}")
