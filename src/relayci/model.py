# model.py
from __future__ import annotations

import copy
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import InvalidTransition


STEP_RUN = "run"
STEP_CHECKOUT = "checkout"
STEP_PERSIST = "persist"
STEP_ATTACH = "attach"


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str = ""
    cwd: str | None = None
    kind: str = STEP_RUN
    # kind-specific parameters, e.g. {"root": ".", "paths": [...]} for persist
    data: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class CacheDirective:
    """
    Restore/save instructions for one cache.

    `keys[0]` is the exact key template, later entries are fallback prefixes.
    `save_key` defaults to the exact key. A directive without paths is
    restore-only; `restore=False` makes it save-only.
    """
    keys: Tuple[str, ...]
    paths: Tuple[str, ...] = ()
    save_key: str | None = None
    name: str | None = None
    restore: bool = True

    @property
    def key(self) -> str:
        return self.save_key or self.keys[0]

    @property
    def saves(self) -> bool:
        return bool(self.paths)


@dataclass(frozen=True)
class JobSpec:
    """
    A CI job: steps + dependencies + metadata for caching and reporting.

    Immutable once loaded; `needs` lists the jobs that must succeed first.
    """
    name: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    # informational resource profile (image, resource_class, ...)
    environment: Mapping[str, Any] = field(default_factory=dict)
    caches: Tuple[CacheDirective, ...] = ()
    reports: Tuple[str, ...] = ()
    timeout: float | None = None
    save_cache_on_success_only: bool = False


@dataclass(frozen=True)
class Workflow:
    name: str
    jobs: Tuple[JobSpec, ...]

    def job(self, name: str) -> JobSpec:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    @property
    def names(self) -> List[str]:
        return [j.name for j in self.jobs]


class JobState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED)


class Reason(str, Enum):
    NONE = ""
    STEP_FAILURE = "StepFailure"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"
    DEPENDENCY_FAILED = "DependencyFailed"
    FAIL_FAST = "FailFast"
    ERROR = "Error"


_TRANSITIONS = {
    JobState.PENDING: {JobState.READY, JobState.SKIPPED},
    JobState.READY: {JobState.RUNNING, JobState.SKIPPED},
    JobState.RUNNING: {JobState.SUCCEEDED, JobState.FAILED},
}


@dataclass
class StepResult:
    name: str
    index: int
    exit_code: int | None
    output: str = ""
    truncated: bool = False
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "index": self.index,
            "exit_code": self.exit_code,
            "output": self.output,
            "truncated": self.truncated,
            "duration": round(self.duration, 3),
        }


@dataclass
class JobRun:
    """Runtime record of one JobSpec within one WorkflowRun."""
    name: str
    state: JobState = JobState.PENDING
    reason: Reason = Reason.NONE
    detail: str = ""
    started_at: datetime | None = None
    finished_at: datetime | None = None
    steps: List[StepResult] = field(default_factory=list)
    failed_step: int | None = None
    exit_code: int | None = None
    warnings: List[str] = field(default_factory=list)
    cache_hits: Dict[str, str] = field(default_factory=dict)
    # raw report bytes keyed by declared report path
    artifacts: Dict[str, bytes] = field(default_factory=dict)

    def transition(self, target: JobState, reason: Reason = Reason.NONE, detail: str = "") -> None:
        if target not in _TRANSITIONS.get(self.state, ()):
            raise InvalidTransition(self.name, self.state.value, target.value)
        self.state = target
        if reason is not Reason.NONE:
            self.reason = reason
        if detail:
            self.detail = detail
        if target is JobState.RUNNING:
            self.started_at = now_utc()
        elif target.terminal:
            self.finished_at = now_utc()

    @property
    def output(self) -> str:
        return "".join(s.output for s in self.steps)

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "reason": self.reason.value,
            "detail": self.detail,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "steps": [s.to_dict() for s in self.steps],
            "failed_step": self.failed_step,
            "exit_code": self.exit_code,
            "warnings": list(self.warnings),
            "cache_hits": dict(self.cache_hits),
            "artifacts": sorted(self.artifacts),
        }


@dataclass
class WorkflowRunSnapshot:
    """Point-in-time copy of a WorkflowRun. Safe to read from any thread."""
    id: str
    workflow: str
    order: List[str]
    jobs: Dict[str, JobRun]
    created_at: datetime
    finished_at: datetime | None
    cancelled: bool

    @property
    def done(self) -> bool:
        return all(r.state.terminal for r in self.jobs.values())

    @property
    def status(self) -> str:
        if not self.done:
            return "running"
        if self.cancelled:
            return "cancelled"
        if all(r.state is JobState.SUCCEEDED for r in self.jobs.values()):
            return "succeeded"
        return "failed"

    def __getitem__(self, name: str) -> JobRun:
        return self.jobs[name]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow": self.workflow,
            "status": self.status,
            "order": list(self.order),
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "cancelled": self.cancelled,
            "jobs": {name: run.to_dict() for name, run in self.jobs.items()},
        }


@dataclass
class WorkflowRun:
    """
    One invocation of a Workflow. Owned by the Scheduler: JobRuns are only
    mutated while holding `lock`.
    """
    workflow: Workflow
    order: List[str]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    runs: Dict[str, JobRun] = field(default_factory=dict)
    created_at: datetime = field(default_factory=now_utc)
    finished_at: datetime | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    lock: threading.RLock = field(default_factory=threading.RLock)

    def __post_init__(self) -> None:
        if not self.runs:
            self.runs = {j.name: JobRun(name=j.name) for j in self.workflow.jobs}

    @property
    def done(self) -> bool:
        return all(r.state.terminal for r in self.runs.values())

    def snapshot(self) -> WorkflowRunSnapshot:
        with self.lock:
            return WorkflowRunSnapshot(
                id=self.id,
                workflow=self.workflow.name,
                order=list(self.order),
                jobs={name: copy.deepcopy(run) for name, run in self.runs.items()},
                created_at=self.created_at,
                finished_at=self.finished_at,
                cancelled=self.cancel_event.is_set(),
            )
