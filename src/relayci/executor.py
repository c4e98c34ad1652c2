# executor.py
from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from .cache import CacheStore, render_key
from .errors import Cancelled, StepFailure, StepTimeout
from .model import (
    STEP_ATTACH,
    STEP_CHECKOUT,
    STEP_PERSIST,
    JobSpec,
    JobState,
    Reason,
    Step,
    StepResult,
)
from .settings import Settings

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.05
READ_CHUNK = 64 * 1024

# never copied by checkout
CHECKOUT_IGNORE = (".git", ".relayci", "__pycache__")


class OutputBuffer:
    """
    Collects a step's merged stdout/stderr up to `limit` bytes.

    Everything past the limit is counted and dropped; `truncated` tells the
    reader the captured text is incomplete.
    """

    def __init__(self, limit: int):
        self.limit = limit
        self._chunks: List[bytes] = []
        self._size = 0
        self.dropped = 0
        self._lock = threading.Lock()

    @property
    def truncated(self) -> bool:
        return self.dropped > 0

    def write(self, data: bytes) -> None:
        with self._lock:
            room = max(0, self.limit - self._size)
            if len(data) > room:
                self.dropped += len(data) - room
                data = data[:room]
            if data:
                self._chunks.append(data)
                self._size += len(data)

    def getvalue(self) -> str:
        with self._lock:
            text = b"".join(self._chunks).decode("utf-8", errors="replace")
            if self.truncated:
                text += f"\n[output truncated: {self.dropped} byte(s) over the {self.limit} byte limit dropped]\n"
            return text


@dataclass
class ExecutionContext:
    """Per-run resources handed to every job of one WorkflowRun."""
    run_id: str
    work_root: Path
    workspace: Path
    cancel_event: threading.Event = field(default_factory=threading.Event)
    workspace_lock: threading.Lock = field(default_factory=threading.Lock)


@dataclass
class JobOutcome:
    """What the executor reports back; the scheduler applies it to the JobRun."""
    state: JobState = JobState.SUCCEEDED
    reason: Reason = Reason.NONE
    detail: str = ""
    steps: List[StepResult] = field(default_factory=list)
    failed_step: int | None = None
    exit_code: int | None = None
    warnings: List[str] = field(default_factory=list)
    cache_hits: Dict[str, str] = field(default_factory=dict)
    artifacts: Dict[str, bytes] = field(default_factory=dict)

    def fail(self, reason: Reason, detail: str, index: int | None, exit_code: int | None = None) -> None:
        self.state = JobState.FAILED
        self.reason = reason
        self.detail = detail
        self.failed_step = index
        self.exit_code = exit_code


class JobExecutor:
    """
    Runs one JobSpec in an isolated working directory.

    Order of work:
      1. restore caches
      2. steps, strictly in declaration order; the first failure aborts
      3. save caches (unless cancelled, or failed with save-on-success-only)
      4. read declared reports into the outcome
    """

    def __init__(self, settings: Settings, cache: CacheStore, *, home: Optional[Path] = None):
        self.settings = settings
        self.cache = cache
        self.home = home

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def execute(
        self,
        spec: JobSpec,
        ctx: ExecutionContext,
        on_step: Optional[Callable[[StepResult], None]] = None,
    ) -> JobOutcome:
        workdir = (ctx.work_root / spec.name).resolve()
        if workdir.exists():
            shutil.rmtree(workdir)
        workdir.mkdir(parents=True)

        env = self._environment(spec, ctx, workdir)
        outcome = JobOutcome()
        deadline = time.monotonic() + spec.timeout if spec.timeout else None

        current: int | None = None
        try:
            self._restore_caches(spec, env, outcome, workdir)

            for current, step in enumerate(spec.steps):
                if ctx.cancel_event.is_set():
                    raise Cancelled(spec.name, step.name, current)
                logger.info("[%s] step %s", spec.name, step.name)
                try:
                    result = self._run_step(spec, step, current, workdir, env, ctx, deadline)
                except StepFailure as e:
                    # interrupted steps still report the output they produced
                    partial = getattr(e, "result", None)
                    if partial is not None:
                        outcome.steps.append(partial)
                        if on_step is not None:
                            on_step(partial)
                    raise
                outcome.steps.append(result)
                if on_step is not None:
                    on_step(result)
                if result.exit_code != 0:
                    raise StepFailure(spec.name, step.name, current, result.exit_code)

        except StepTimeout as e:
            outcome.fail(Reason.TIMEOUT, str(e), e.index)
        except Cancelled as e:
            outcome.fail(Reason.CANCELLED, str(e), e.index)
        except StepFailure as e:
            outcome.fail(Reason.STEP_FAILURE, str(e), e.index, e.exit_code)
        except (OSError, ValueError) as e:
            outcome.fail(Reason.ERROR, f"[{spec.name}] {e}", current)
            logger.warning("[%s] %s", spec.name, e)

        if outcome.state is JobState.FAILED:
            logger.info("[%s] failed: %s", spec.name, outcome.detail)

        self._save_caches(spec, env, outcome, workdir)
        self._collect_reports(spec, outcome, workdir)

        if not self.settings.keep_workdirs:
            shutil.rmtree(workdir, ignore_errors=True)
        return outcome

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    def _environment(self, spec: JobSpec, ctx: ExecutionContext, workdir: Path) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self.settings.env)
        env.update(spec.env)
        env.update(
            {
                "CI": "true",
                "RELAYCI": "true",
                "RELAYCI_JOB": spec.name,
                "RELAYCI_RUN_ID": ctx.run_id,
                "RELAYCI_WORKDIR": str(workdir),
            }
        )
        return env

    # ------------------------------------------------------------------
    # Caches
    # ------------------------------------------------------------------

    def _restore_caches(self, spec: JobSpec, env: Mapping[str, str], outcome: JobOutcome, workdir: Path) -> None:
        # keys are rendered against the source tree: before step 1 the
        # working directory holds nothing to checksum yet
        source = self.settings.source_dir.resolve()
        for directive in spec.caches:
            if not directive.restore:
                continue
            keys = [render_key(k, source, env, home=self.home) for k in directive.keys]
            hit = self.cache.restore_paths(keys, workdir, home=self.home)
            outcome.cache_hits[keys[0]] = hit.matched if hit.hit else "miss"

    def _save_caches(self, spec: JobSpec, env: Mapping[str, str], outcome: JobOutcome, workdir: Path) -> None:
        if outcome.reason is Reason.CANCELLED:
            return
        if spec.save_cache_on_success_only and outcome.state is not JobState.SUCCEEDED:
            return
        for directive in spec.caches:
            if not directive.saves:
                continue
            try:
                key = render_key(directive.key, workdir, env, home=self.home)
            except ValueError as e:
                outcome.warnings.append(f"cache not saved: {e}")
                continue
            self.cache.save_paths(key, directive.paths, workdir, home=self.home)

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def _collect_reports(self, spec: JobSpec, outcome: JobOutcome, workdir: Path) -> None:
        for declared in spec.reports:
            path = workdir / declared
            if path.is_file():
                outcome.artifacts[declared] = path.read_bytes()
            elif path.is_dir():
                for f in sorted(path.rglob("*.xml")):
                    outcome.artifacts[f.relative_to(workdir).as_posix()] = f.read_bytes()
            else:
                outcome.warnings.append(f"report not found: {declared}")

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _run_step(
        self,
        spec: JobSpec,
        step: Step,
        index: int,
        workdir: Path,
        env: Mapping[str, str],
        ctx: ExecutionContext,
        deadline: float | None,
    ) -> StepResult:
        started = time.monotonic()
        if step.kind == STEP_CHECKOUT:
            output = self._checkout(workdir)
        elif step.kind == STEP_PERSIST:
            output = self._persist(step, workdir, ctx)
        elif step.kind == STEP_ATTACH:
            output = self._attach(step, workdir, ctx)
        else:
            return self._run_command(spec, step, index, workdir, env, ctx, deadline)
        return StepResult(
            name=step.name,
            index=index,
            exit_code=0,
            output=output,
            duration=time.monotonic() - started,
        )

    def _run_command(
        self,
        spec: JobSpec,
        step: Step,
        index: int,
        workdir: Path,
        env: Mapping[str, str],
        ctx: ExecutionContext,
        deadline: float | None,
    ) -> StepResult:
        cwd = (workdir / (step.cwd or ".")).resolve()
        if not cwd.is_dir():
            raise FileNotFoundError(f"step '{step.name}' cwd not found: {cwd}")

        buf = OutputBuffer(self.settings.output_limit)
        started = time.monotonic()
        proc = subprocess.Popen(
            step.run,
            shell=True,
            cwd=str(cwd),
            env=dict(env),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            # own process group so termination reaches the shell's children
            start_new_session=(os.name == "posix"),
        )
        reader = threading.Thread(target=self._pump, args=(proc, buf), daemon=True)
        reader.start()

        interrupted: StepFailure | None = None
        # the shell can exit while a backgrounded child still holds the pipe
        while proc.poll() is None or reader.is_alive():
            if ctx.cancel_event.is_set():
                interrupted = Cancelled(spec.name, step.name, index)
            elif deadline is not None and time.monotonic() >= deadline:
                interrupted = StepTimeout(spec.name, step.name, index, spec.timeout or 0)
            if interrupted is not None:
                self._terminate(proc, reader)
                break
            if proc.returncode is None:
                try:
                    proc.wait(timeout=POLL_INTERVAL)
                except subprocess.TimeoutExpired:
                    pass
            else:
                reader.join(timeout=POLL_INTERVAL)

        if interrupted is None and ctx.cancel_event.is_set():
            interrupted = Cancelled(spec.name, step.name, index)

        reader.join(timeout=self.settings.kill_grace)
        result = StepResult(
            name=step.name,
            index=index,
            exit_code=None if interrupted else proc.returncode,
            output=buf.getvalue(),
            truncated=buf.truncated,
            duration=time.monotonic() - started,
        )
        if interrupted is not None:
            interrupted.result = result
            raise interrupted
        return result

    @staticmethod
    def _pump(proc: subprocess.Popen, buf: OutputBuffer) -> None:
        assert proc.stdout is not None
        with proc.stdout:
            for chunk in iter(lambda: proc.stdout.read(READ_CHUNK), b""):
                buf.write(chunk)

    def _terminate(self, proc: subprocess.Popen, reader: threading.Thread) -> None:
        """
        SIGTERM the step's process group, SIGKILL it after the grace period.
        The group counts as gone once the shell is reaped and the pipe is closed.
        """
        grace = self.settings.kill_grace
        until = time.monotonic() + grace
        self._signal(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=grace)
            reader.join(timeout=max(0.0, until - time.monotonic()))
            if not reader.is_alive():
                return
        except subprocess.TimeoutExpired:
            pass
        logger.warning("pid %s ignored SIGTERM for %.1fs, killing", proc.pid, grace)
        self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
        proc.wait()

    @staticmethod
    def _signal(proc: subprocess.Popen, sig: int) -> None:
        try:
            if os.name == "posix":
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except ProcessLookupError:
            pass

    # ------------------------------------------------------------------
    # Built-in steps
    # ------------------------------------------------------------------

    def _checkout(self, workdir: Path) -> str:
        source = self.settings.source_dir.resolve()
        work_root = self.settings.work_dir.resolve()
        cache_root = self.settings.cache_dir.resolve()

        def ignore(directory: str, names: List[str]) -> List[str]:
            skipped = [n for n in names if n in CHECKOUT_IGNORE]
            for n in names:
                p = (Path(directory) / n).resolve()
                if p in (work_root, cache_root):
                    skipped.append(n)
            return skipped

        shutil.copytree(source, workdir, ignore=ignore, dirs_exist_ok=True, symlinks=True)
        return f"Checked out {source} into {workdir}\n"

    def _persist(self, step: Step, workdir: Path, ctx: ExecutionContext) -> str:
        data = dict(step.data or {})
        root = (workdir / (data.get("root") or ".")).resolve()
        lines: List[str] = []
        with ctx.workspace_lock:
            for pattern in data.get("paths", []):
                matches = sorted(root.glob(pattern)) if any(c in pattern for c in "*?[") else [root / pattern]
                for src in matches:
                    if not src.exists():
                        raise FileNotFoundError(f"cannot persist missing path: {src}")
                    dest = ctx.workspace / src.relative_to(root)
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    if src.is_dir():
                        shutil.copytree(src, dest, dirs_exist_ok=True, symlinks=True)
                    else:
                        shutil.copy2(src, dest)
                    lines.append(f"Persisted {src.relative_to(root).as_posix()}")
        return "\n".join(lines) + ("\n" if lines else "")

    def _attach(self, step: Step, workdir: Path, ctx: ExecutionContext) -> str:
        at = (workdir / (dict(step.data or {}).get("at") or ".")).resolve()
        at.mkdir(parents=True, exist_ok=True)
        with ctx.workspace_lock:
            if ctx.workspace.exists():
                shutil.copytree(ctx.workspace, at, dirs_exist_ok=True, symlinks=True)
        return f"Attached workspace at {at}\n"
