"""Console output formatting utilities for relayci."""

from __future__ import annotations

import sys
from typing import Iterable, List, Optional

from ..model import JobState, WorkflowRunSnapshot


_STATE_LABELS = {
    JobState.SUCCEEDED: "SUCCESS",
    JobState.FAILED: "FAILED",
    JobState.SKIPPED: "SKIPPED",
}


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, stream=None):
        """
        Args:
            debug: If True, show full step output and stack traces
        """
        self.debug = debug
        self.stream = stream or sys.stdout

    def _out(self, text: str = "") -> None:
        print(text, file=self.stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}")
        self._out("-" * len(title))

    def print_run_started(self, run_id: str, workflow: str, job_count: int, workers: int) -> None:
        """Print run start information."""
        self._out("\nRUN STARTED")
        self._out(f"Run: {run_id}")
        self._out(f"Workflow: {workflow}")
        self._out(f"Jobs: {job_count}")
        self._out(f"Workers: {workers}")
        self._out()

    def print_plan(self, levels: List[List[str]]) -> None:
        """Print the execution plan, one line per stage of jobs that may run together."""
        self.print_header("PLAN")
        for idx, level in enumerate(levels, start=1):
            self._out(f"  stage {idx}: {', '.join(level)}")

    def print_job_finished(self, name: str, state: JobState, reason: str, detail: str) -> None:
        """Print a job's terminal state; the detail line only for failures or in debug mode."""
        label = _STATE_LABELS.get(state, state.value.upper())
        line = f"[{name}] {label}"
        if reason:
            line += f" ({reason})"
        self._out(line)
        if detail and (self.debug or state is JobState.FAILED):
            self._out(f"  {detail}")

    def print_results(self, snapshot: WorkflowRunSnapshot) -> None:
        """Print final results summary: every job, its terminal state and reason."""
        self._out("\n" + "=" * 40)
        self._out("RESULTS")
        self._out("=" * 40)
        for name in snapshot.order:
            run = snapshot.jobs[name]
            status = _STATE_LABELS.get(run.state, run.state.value.upper())
            reason = f" ({run.reason.value})" if run.reason.value else ""
            duration = f" {run.duration:.1f}s" if run.duration is not None else ""
            self._out(f"  {name}: {status}{reason}{duration}")
            for w in run.warnings:
                self._out(f"    warning: {w}")
        self._out(f"\nRun {snapshot.id}: {snapshot.status.upper()}")

    def print_failure_output(self, snapshot: WorkflowRunSnapshot, tail: int = 40) -> None:
        """Show the tail of the failing step for every failed job."""
        for name in snapshot.order:
            run = snapshot.jobs[name]
            if run.state is not JobState.FAILED or not run.steps:
                continue
            step = run.steps[-1]
            lines = step.output.splitlines()
            if not self.debug:
                lines = lines[-tail:]
            self.print_header(f"{name} / {step.name} (exit={step.exit_code})")
            for line in lines:
                self._out(f"  {line}")

    def print_lines(self, lines: Iterable[str]) -> None:
        """Print preformatted lines as-is."""
        for line in lines:
            self._out(line)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print a formatted error message to stderr.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for fixing the error
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
