# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .model import (
    STEP_ATTACH,
    STEP_CHECKOUT,
    STEP_PERSIST,
    CacheDirective,
    JobSpec,
    Step,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd)


def checkout() -> Step:
    """Copy the source tree into the job's working directory."""
    return Step(name="Checkout code", kind=STEP_CHECKOUT)


def persist(*paths: str, root: str = ".") -> Step:
    """Share paths with downstream jobs of the same run."""
    return Step(name="Persisting to workspace", kind=STEP_PERSIST, data={"root": root, "paths": list(paths)})


def attach(at: str = ".") -> Step:
    """Copy everything upstream jobs persisted into the working directory."""
    return Step(name="Attaching workspace", kind=STEP_ATTACH, data={"at": at})


def cached(key: str, *paths: str, fallbacks: Sequence[str] = (), save_key: str | None = None) -> CacheDirective:
    """
    cached("cargo-v2-{{ checksum \"Cargo.lock\" }}", "~/.cargo/registry",
          fallbacks=["cargo-v2-"])
    """
    return CacheDirective(keys=(key, *fallbacks), paths=tuple(paths), save_key=save_key)


# ---------------------------------------------------------------------
# Functional job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    environment: Optional[Dict[str, Any]] = None,
    caches: Optional[List[CacheDirective]] = None,
    reports: Optional[List[str]] = None,
    timeout: float | None = None,
    save_cache_on_success_only: bool = False,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> JobSpec:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(steps)

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return JobSpec(
        name=name,
        steps=tuple(steps_final),
        needs=tuple(needs or ()),
        env={k: str(v) for k, v in (env or {}).items()},
        environment=dict(environment or {}),
        caches=tuple(caches or ()),
        reports=tuple(reports or ()),
        timeout=timeout,
        save_cache_on_success_only=save_cache_on_success_only,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._environment: dict[str, Any] = {}
        self._caches: list[CacheDirective] = []
        self._reports: list[str] = []
        self._timeout: float | None = None
        self._save_on_success_only = False

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd))
        return self

    def add_step(self, step: Step):
        self._steps.append(step)
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_environment(self, **profile):
        self._environment.update(profile)
        return self

    def with_cache(self, directive: CacheDirective):
        self._caches.append(directive)
        return self

    def with_report(self, path: str):
        self._reports.append(path)
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def save_cache_on_success_only(self, enabled: bool = True):
        self._save_on_success_only = enabled
        return self

    def build(self) -> JobSpec:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return job(
            self.name,
            steps_list=self._steps,
            needs=self._needs,
            env=self._env,
            environment=self._environment,
            caches=self._caches,
            reports=self._reports,
            timeout=self._timeout,
            save_cache_on_success_only=self._save_on_success_only,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("py", ["3.11", "3.12"]).jobs(
            lambda v: job(f"test-py{v}", sh(...))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], JobSpec]) -> List[JobSpec]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


def wf(*jobs: JobSpec | List[JobSpec]) -> List[JobSpec]:
    """
    Workflow definition helper; flattens matrix output.

        def workflow():
            return wf(job(...), matrix(...).jobs(...))
    """
    out: List[JobSpec] = []
    for j in jobs:
        if isinstance(j, list):
            out.extend(j)
        else:
            out.append(j)
    return out
