# scheduler.py
from __future__ import annotations

import copy
import logging
import shutil
import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait as wait_futures
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Union

from . import dag
from .cache import CacheStore, backend_from_settings
from .executor import ExecutionContext, JobExecutor, JobOutcome
from .model import (
    JobRun,
    JobState,
    Reason,
    StepResult,
    Workflow,
    WorkflowRun,
    WorkflowRunSnapshot,
    now_utc,
)
from .settings import Settings

logger = logging.getLogger(__name__)

# how often a driver with ready jobs rechecks for a free worker slot
SLOT_POLL = 0.1


@dataclass(frozen=True)
class WorkflowRunHandle:
    id: str
    workflow: str


@dataclass
class JobEvent:
    """
    A JobRun reached a terminal state.

    `job` is a copy; listeners attach warnings through `warn()` since the
    scheduler is the only writer of JobRuns.
    """
    run_id: str
    workflow: Workflow
    job: JobRun
    _warn: Callable[[str], None] = field(repr=False, default=lambda msg: None)

    def warn(self, message: str) -> None:
        self._warn(message)


JobListener = Callable[[JobEvent], None]
RunListener = Callable[[WorkflowRunSnapshot], None]
EvictionListener = Callable[[str], None]
HandleLike = Union[WorkflowRunHandle, str]


@dataclass
class _RunState:
    run: WorkflowRun
    ctx: ExecutionContext
    adj: Dict[str, List[str]]
    ready: Deque[str] = field(default_factory=deque)
    in_flight: Dict[Future, str] = field(default_factory=dict)
    done: threading.Event = field(default_factory=threading.Event)
    stop_dispatch: bool = False


class Scheduler:
    """
    Walks a workflow's DAG and dispatches ready jobs to a bounded worker pool.

    Per JobRun:  Pending -> Ready -> Running -> Succeeded | Failed
                 Pending | Ready -> Skipped

    A failed job skips every not-yet-started transitive dependent; running
    independent branches are left alone unless `fail_fast` is set, in which
    case nothing new is dispatched after the first failure.

    All runs share `max_workers` slots. Only the newest `keep_runs` finished
    runs stay queryable; older ones are dropped from memory.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        cache: Optional[CacheStore] = None,
        executor: Optional[JobExecutor] = None,
        max_workers: Optional[int] = None,
        fail_fast: Optional[bool] = None,
        keep_runs: Optional[int] = None,
    ):
        self.settings = settings or Settings()
        if executor is None:
            cache = cache or CacheStore(backend_from_settings(self.settings.cache_dir, self.settings.cache_url))
            executor = JobExecutor(self.settings, cache)
        self.executor = executor
        self.max_workers = max(1, max_workers or self.settings.workers)
        self.fail_fast = self.settings.fail_fast if fail_fast is None else fail_fast
        self.keep_runs = max(1, keep_runs or self.settings.keep_runs)

        self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="relayci-job")
        self._runs: Dict[str, _RunState] = {}
        self._runs_lock = threading.Lock()
        self._finished: Deque[str] = deque()
        self._slots = threading.BoundedSemaphore(self.max_workers)
        self._slot_freed = threading.Condition()
        self._job_listeners: List[JobListener] = []
        self._run_listeners: List[RunListener] = []
        self._evict_listeners: List[EvictionListener] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def subscribe(self, listener: JobListener) -> None:
        """Call `listener` for every JobRun that reaches a terminal state."""
        self._job_listeners.append(listener)

    def subscribe_runs(self, listener: RunListener) -> None:
        """Call `listener` with the final snapshot of every finished run."""
        self._run_listeners.append(listener)

    def subscribe_evictions(self, listener: EvictionListener) -> None:
        """Call `listener` with the id of every finished run dropped from memory."""
        self._evict_listeners.append(listener)

    def submit(self, workflow: Workflow) -> WorkflowRunHandle:
        """
        Validate the DAG and start the run in the background.
        ConfigError propagates from here, before any job is dispatched.
        """
        run = self._start(workflow).run
        return WorkflowRunHandle(id=run.id, workflow=workflow.name)

    def status(self, handle: HandleLike) -> WorkflowRunSnapshot:
        """Point-in-time copy; never blocks on running jobs."""
        return self._state(handle).run.snapshot()

    def wait(self, handle: HandleLike, timeout: Optional[float] = None) -> WorkflowRunSnapshot:
        state = self._state(handle)
        state.done.wait(timeout)
        return state.run.snapshot()

    def run(self, workflow: Workflow, timeout: Optional[float] = None) -> WorkflowRunSnapshot:
        # holds the state directly, the run may be evicted before it is awaited
        state = self._start(workflow)
        state.done.wait(timeout)
        return state.run.snapshot()

    def cancel(self, handle: HandleLike) -> None:
        """
        Best effort: queued jobs become Skipped(Cancelled) immediately,
        running jobs get a termination signal and end Failed(Cancelled).
        """
        state = self._state(handle)
        run = state.run
        with run.lock:
            if run.cancel_event.is_set() or run.done:
                return
            run.cancel_event.set()
            state.stop_dispatch = True
            skipped = self._skip_where(
                state,
                lambda r: r.state in (JobState.PENDING, JobState.READY),
                Reason.CANCELLED,
                "run cancelled before the job started",
            )
        logger.info("run %s: cancel requested, %d job(s) skipped", run.id, len(skipped))
        self._emit(state, skipped)

    def runs(self) -> List[WorkflowRunHandle]:
        with self._runs_lock:
            return [WorkflowRunHandle(id=s.run.id, workflow=s.run.workflow.name) for s in self._runs.values()]

    def shutdown(self, wait: bool = True) -> None:
        if wait:
            with self._runs_lock:
                states = list(self._runs.values())
            for s in states:
                s.done.wait()
        self._pool.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def _start(self, workflow: Workflow) -> _RunState:
        order = dag.resolve(workflow.jobs)
        run = WorkflowRun(workflow=workflow, order=order)
        work_root = (self.settings.work_dir / run.id).resolve()
        ctx = ExecutionContext(
            run_id=run.id,
            work_root=work_root,
            workspace=work_root / ".workspace",
            cancel_event=run.cancel_event,
        )
        ctx.workspace.mkdir(parents=True, exist_ok=True)
        state = _RunState(run=run, ctx=ctx, adj=dag.dependents(workflow.jobs))

        with self._runs_lock:
            self._runs[run.id] = state

        logger.info("run %s: workflow %s, order %s", run.id, workflow.name, order)
        driver = threading.Thread(target=self._drive, args=(state,), name=f"relayci-run-{run.id[:8]}", daemon=True)
        driver.start()
        return state

    def _state(self, handle: HandleLike) -> _RunState:
        run_id = handle.id if isinstance(handle, WorkflowRunHandle) else handle
        with self._runs_lock:
            try:
                return self._runs[run_id]
            except KeyError:
                raise KeyError(f"Unknown run: {run_id}") from None

    def _drive(self, state: _RunState) -> None:
        run = state.run
        try:
            with run.lock:
                for job in run.workflow.jobs:
                    # cancel() may already have skipped it
                    if not job.needs and run.runs[job.name].state is JobState.PENDING:
                        self._make_ready(state, job.name)

            while True:
                with run.lock:
                    self._dispatch(state)
                    pending = list(state.in_flight)
                    starved = self._starved(state)
                if not pending and not starved:
                    break

                if not pending:
                    with self._slot_freed:
                        self._slot_freed.wait(SLOT_POLL)
                    continue
                done, _ = wait_futures(pending, timeout=SLOT_POLL if starved else None, return_when=FIRST_COMPLETED)
                for fut in done:
                    self._complete(state, fut)
        except Exception:
            logger.exception("run %s: scheduler failure", run.id)
            for fut in list(state.in_flight):
                fut.add_done_callback(lambda f: self._release_slot())
            with run.lock:
                skipped = self._skip_where(
                    state, lambda r: not r.state.terminal and r.state is not JobState.RUNNING,
                    Reason.ERROR, "scheduler failure",
                )
            self._emit(state, skipped)
        finally:
            self._finish(state)

    def _dispatch(self, state: _RunState) -> None:
        run = state.run
        # a job is Running only once it holds one of the scheduler-wide slots
        while state.ready and not state.stop_dispatch:
            name = state.ready[0]
            job_run = run.runs[name]
            if job_run.state is not JobState.READY:
                state.ready.popleft()
                continue
            if not self._slots.acquire(blocking=False):
                return
            state.ready.popleft()
            job_run.transition(JobState.RUNNING)
            logger.info("run %s: dispatch %s", run.id, name)
            spec = run.workflow.job(name)
            try:
                fut = self._pool.submit(self._execute, state, spec)
            except RuntimeError:
                self._release_slot()
                raise
            state.in_flight[fut] = name

    def _starved(self, state: _RunState) -> bool:
        """Ready jobs are waiting on a slot held by this or another run."""
        if state.stop_dispatch:
            return False
        return any(state.run.runs[n].state is JobState.READY for n in state.ready)

    def _release_slot(self) -> None:
        self._slots.release()
        with self._slot_freed:
            self._slot_freed.notify_all()

    def _execute(self, state: _RunState, spec) -> JobOutcome:
        run = state.run

        def on_step(result: StepResult) -> None:
            with run.lock:
                run.runs[spec.name].steps.append(result)

        return self.executor.execute(spec, state.ctx, on_step=on_step)

    def _complete(self, state: _RunState, fut: Future) -> None:
        run = state.run
        name = state.in_flight.pop(fut)
        # released by the driver so its own next dispatch sees this result first
        self._release_slot()
        try:
            outcome = fut.result()
        except Exception as e:
            logger.exception("run %s: executor crashed on %s", run.id, name)
            outcome = JobOutcome()
            outcome.fail(Reason.ERROR, f"[{name}] executor error: {e}", None)

        with run.lock:
            job_run = run.runs[name]
            job_run.failed_step = outcome.failed_step
            job_run.exit_code = outcome.exit_code
            job_run.warnings.extend(outcome.warnings)
            job_run.cache_hits.update(outcome.cache_hits)
            job_run.artifacts.update(outcome.artifacts)
            job_run.transition(outcome.state, outcome.reason, outcome.detail)
            finished = [job_run]

            if outcome.state is JobState.SUCCEEDED:
                for child in state.adj[name]:
                    child_run = run.runs[child]
                    needs = run.workflow.job(child).needs
                    if child_run.state is JobState.PENDING and all(
                        run.runs[n].state is JobState.SUCCEEDED for n in needs
                    ):
                        self._make_ready(state, child)
            else:
                downstream = set(dag.transitive_dependents(state.adj, name))
                finished += self._skip_where(
                    state,
                    lambda r: r.name in downstream and r.state in (JobState.PENDING, JobState.READY),
                    Reason.DEPENDENCY_FAILED,
                    f"upstream job '{name}' {outcome.state.value}",
                )
                if self.fail_fast and not state.stop_dispatch:
                    state.stop_dispatch = True
                    finished += self._skip_where(
                        state,
                        lambda r: r.state in (JobState.PENDING, JobState.READY),
                        Reason.FAIL_FAST,
                        f"fail-fast after '{name}' failed",
                    )

        logger.info("run %s: %s %s %s", run.id, name, outcome.state.value, outcome.reason.value)
        self._emit(state, finished)

    def _make_ready(self, state: _RunState, name: str) -> None:
        state.run.runs[name].transition(JobState.READY)
        state.ready.append(name)

    def _skip_where(self, state: _RunState, predicate, reason: Reason, detail: str) -> List[JobRun]:
        """Skip matching JobRuns in declaration order. Caller holds the run lock."""
        skipped = []
        for job in state.run.workflow.jobs:
            job_run = state.run.runs[job.name]
            if predicate(job_run):
                job_run.transition(JobState.SKIPPED, reason, detail)
                skipped.append(job_run)
        return skipped

    def _emit(self, state: _RunState, job_runs: List[JobRun]) -> None:
        if not self._job_listeners:
            return
        run = state.run
        for job_run in job_runs:
            with run.lock:
                job_copy = copy.deepcopy(run.runs[job_run.name])

            def warn(message: str, _name: str = job_run.name) -> None:
                with run.lock:
                    run.runs[_name].warnings.append(message)

            event = JobEvent(run_id=run.id, workflow=run.workflow, job=job_copy, _warn=warn)
            for listener in self._job_listeners:
                try:
                    listener(event)
                except Exception:
                    logger.exception("job listener failed for %s/%s", run.id, job_run.name)

    def _finish(self, state: _RunState) -> None:
        run = state.run
        with run.lock:
            run.finished_at = now_utc()
        snapshot = run.snapshot()
        logger.info("run %s finished: %s", run.id, snapshot.status)

        for listener in self._run_listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("run listener failed for %s", run.id)

        if not self.settings.keep_workdirs:
            shutil.rmtree(state.ctx.work_root, ignore_errors=True)
        self._evict(run.id)
        state.done.set()

    def _evict(self, run_id: str) -> None:
        evicted = []
        with self._runs_lock:
            self._finished.append(run_id)
            while len(self._finished) > self.keep_runs:
                old = self._finished.popleft()
                self._runs.pop(old, None)
                evicted.append(old)

        for old in evicted:
            logger.debug("run %s: dropped from memory", old)
            for listener in self._evict_listeners:
                try:
                    listener(old)
                except Exception:
                    logger.exception("eviction listener failed for %s", old)
