# config.py
"""
Pipeline definition loading.

Two front-ends produce the same immutable `Workflow`:

  - a YAML document in the CircleCI 2.1 shape (anchors, `commands`,
    `jobs`, `workflows`), see `load_document`;
  - a Python module defining `workflow()` or `JOBS` with the builder DSL,
    see `load_workflow`.

Everything that looks like indirection in the document (anchors and merge
keys, reusable commands, restore/save cache steps) is resolved here, at
load time. The scheduler only ever sees plain JobSpecs.
"""
from __future__ import annotations

import logging
import re
import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from . import dag
from .errors import ConfigError
from .model import (
    STEP_ATTACH,
    STEP_CHECKOUT,
    STEP_PERSIST,
    CacheDirective,
    JobSpec,
    Step,
    Workflow,
)

logger = logging.getLogger(__name__)

MAX_COMMAND_DEPTH = 16

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600}


# -------------------- Document schema --------------------

class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class RunStepModel(_Strict):
    command: str
    name: Optional[str] = None
    working_directory: Optional[str] = None


class RestoreCacheModel(_Strict):
    name: Optional[str] = None
    key: Optional[str] = None
    keys: List[str] = Field(default_factory=list)

    def all_keys(self) -> List[str]:
        return ([self.key] if self.key else []) + list(self.keys)


class SaveCacheModel(_Strict):
    key: str
    paths: List[str]
    name: Optional[str] = None


class PersistModel(_Strict):
    paths: List[str]
    root: str = "."


class AttachModel(_Strict):
    at: str = "."


class TestResultsModel(_Strict):
    path: str


class CommandModel(_Strict):
    steps: List[Any]
    description: Optional[str] = None


class JobModel(BaseModel):
    # docker / resource_class / machine etc. are kept as informational metadata
    model_config = ConfigDict(extra="allow")

    steps: List[Any]
    docker: List[Dict[str, Any]] = Field(default_factory=list)
    resource_class: Optional[str] = None
    working_directory: Optional[str] = None
    environment: Dict[str, Any] = Field(default_factory=dict)
    requires: List[str] = Field(default_factory=list)
    timeout: Union[float, str, None] = None
    save_cache_on_success_only: bool = False


class DocumentModel(BaseModel):
    # anchor holders (e.g. `default: &default`) live at the top level
    model_config = ConfigDict(extra="allow")

    version: Any = None
    orbs: Dict[str, Any] = Field(default_factory=dict)
    commands: Dict[str, CommandModel] = Field(default_factory=dict)
    jobs: Dict[str, JobModel]
    workflows: Dict[str, Any] = Field(default_factory=dict)


# -------------------- Helpers --------------------

def parse_duration(value: Union[float, int, str, None]) -> Optional[float]:
    """Seconds from 90, "90", "90s", "15m" or "1h"."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    m = _DURATION_RE.match(value)
    if not m:
        raise ConfigError(f"Invalid duration: {value!r}")
    return float(m.group(1)) * _DURATION_UNITS[m.group(2)]


def _rebase(path: Optional[str], job_wd: Optional[str]) -> Optional[str]:
    """
    Make a document path relative to the job's isolated working directory.
    The declared job working_directory (e.g. ~/project) is that directory.
    """
    if path is None:
        return None
    if job_wd:
        wd = job_wd.rstrip("/")
        if path == wd:
            return "."
        if path.startswith(wd + "/"):
            return path[len(wd) + 1:]
    return path


def _step_name(command: str) -> str:
    first = command.strip().splitlines()[0] if command.strip() else command
    return first if len(first) <= 60 else first[:57] + "..."


def _validate(model: type[BaseModel], data: Any, where: str):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"{where}: {e}") from e


class _JobCompiler:
    """Turns one document job into a JobSpec."""

    def __init__(self, name: str, job: JobModel, commands: Dict[str, CommandModel]):
        self.name = name
        self.job = job
        self.commands = commands
        self.steps: List[Step] = []
        self.restores: List[Tuple[Optional[str], List[str]]] = []
        self.saves: List[SaveCacheModel] = []
        self.reports: List[str] = []

    def compile(self, needs: List[str]) -> JobSpec:
        self._expand(self.job.steps, depth=0, trail=())
        wd = self.job.working_directory

        environment: Dict[str, Any] = {}
        if self.job.docker:
            environment["docker"] = [dict(d) for d in self.job.docker]
        if self.job.resource_class:
            environment["resource_class"] = self.job.resource_class
        if wd:
            environment["working_directory"] = wd
        for k, v in (self.job.model_extra or {}).items():
            environment[k] = v

        return JobSpec(
            name=self.name,
            steps=tuple(self.steps),
            needs=tuple(needs),
            env={k: str(v) for k, v in self.job.environment.items()},
            environment=environment,
            caches=self._pair_caches(),
            reports=tuple(_rebase(p, wd) for p in self.reports),
            timeout=parse_duration(self.job.timeout),
            save_cache_on_success_only=self.job.save_cache_on_success_only,
        )

    def _expand(self, steps: List[Any], depth: int, trail: Tuple[str, ...]) -> None:
        if depth > MAX_COMMAND_DEPTH:
            raise ConfigError(f"Job '{self.name}': commands nested too deeply: {' -> '.join(trail)}")
        for raw in steps:
            if isinstance(raw, str):
                kind, params = raw, None
            elif isinstance(raw, dict) and len(raw) == 1:
                kind, params = next(iter(raw.items()))
            else:
                raise ConfigError(f"Job '{self.name}': invalid step {raw!r}")

            if kind in self.commands:
                if kind in trail:
                    raise ConfigError(
                        f"Job '{self.name}': command '{kind}' invokes itself: {' -> '.join(trail + (kind,))}"
                    )
                self._expand(self.commands[kind].steps, depth + 1, trail + (kind,))
                continue

            self._add(kind, params)

    def _add(self, kind: str, params: Any) -> None:
        where = f"Job '{self.name}' step '{kind}'"
        wd = self.job.working_directory

        if kind == "checkout":
            self.steps.append(Step(name="Checkout code", kind=STEP_CHECKOUT))
        elif kind == "run":
            if isinstance(params, str):
                params = {"command": params}
            m = _validate(RunStepModel, params, where)
            self.steps.append(
                Step(
                    name=m.name or _step_name(m.command),
                    run=m.command,
                    cwd=_rebase(m.working_directory, wd),
                )
            )
        elif kind == "restore_cache":
            m = _validate(RestoreCacheModel, params, where)
            keys = m.all_keys()
            if not keys:
                raise ConfigError(f"{where}: at least one key is required")
            self.restores.append((m.name, keys))
        elif kind == "save_cache":
            self.saves.append(_validate(SaveCacheModel, params, where))
        elif kind == "store_test_results":
            self.reports.append(_validate(TestResultsModel, params, where).path)
        elif kind == "persist_to_workspace":
            m = _validate(PersistModel, params, where)
            self.steps.append(
                Step(
                    name="Persisting to workspace",
                    kind=STEP_PERSIST,
                    data={"root": _rebase(m.root, wd), "paths": list(m.paths)},
                )
            )
        elif kind == "attach_workspace":
            m = _validate(AttachModel, params or {}, where)
            self.steps.append(
                Step(name="Attaching workspace", kind=STEP_ATTACH, data={"at": _rebase(m.at, wd)})
            )
        else:
            raise ConfigError(f"Job '{self.name}': unknown step or command '{kind}'")

    def _pair_caches(self) -> Tuple[CacheDirective, ...]:
        """
        Lift restore_cache/save_cache steps into job-level directives.

        A save belongs to the restore whose exact key it repeats, or whose
        key is a prefix of the save key (restore "v1-x-", save "v1-x-{{...}}").
        """
        out: List[CacheDirective] = []
        unpaired = list(self.saves)
        wd = self.job.working_directory

        for name, keys in self.restores:
            save = next((s for s in unpaired if s.key == keys[0]), None)
            if save is None:
                save = next((s for s in unpaired if any(s.key.startswith(k) for k in keys)), None)
            if save is not None:
                unpaired.remove(save)
                out.append(
                    CacheDirective(
                        keys=tuple(keys),
                        paths=tuple(_rebase(p, wd) for p in save.paths),
                        save_key=save.key if save.key != keys[0] else None,
                        name=name or save.name,
                    )
                )
            else:
                out.append(CacheDirective(keys=tuple(keys), name=name))

        for save in unpaired:
            out.append(
                CacheDirective(
                    keys=(save.key,),
                    paths=tuple(_rebase(p, wd) for p in save.paths),
                    name=save.name,
                    restore=False,
                )
            )
        return tuple(out)


def _workflow_edges(doc: DocumentModel, workflow: Optional[str]) -> Tuple[str, List[Tuple[str, List[str]]]]:
    """(workflow name, [(job, requires), ...]) from the workflows section."""
    flows = {k: v for k, v in doc.workflows.items() if k != "version" and isinstance(v, dict)}
    if not flows:
        return "default", [(name, list(job.requires)) for name, job in doc.jobs.items()]

    if workflow is None:
        workflow = next(iter(flows))
    if workflow not in flows:
        raise ConfigError(f"Unknown workflow '{workflow}'. Known workflows: {sorted(flows)}")

    entries = flows[workflow].get("jobs") or []
    edges: List[Tuple[str, List[str]]] = []
    for entry in entries:
        if isinstance(entry, str):
            edges.append((entry, []))
        elif isinstance(entry, dict) and len(entry) == 1:
            name, opts = next(iter(entry.items()))
            requires = (opts or {}).get("requires") or []
            if not isinstance(requires, list):
                raise ConfigError(f"Workflow '{workflow}': requires of '{name}' must be a list")
            edges.append((name, [str(r) for r in requires]))
        else:
            raise ConfigError(f"Workflow '{workflow}': invalid job entry {entry!r}")
    return workflow, edges


# -------------------- Public API --------------------

def parse_document(data: Any, workflow: Optional[str] = None) -> Workflow:
    if not isinstance(data, dict):
        raise ConfigError("Pipeline document must be a mapping")
    doc = _validate(DocumentModel, data, "Pipeline document")

    name, edges = _workflow_edges(doc, workflow)
    jobs: List[JobSpec] = []
    for job_name, requires in edges:
        if job_name not in doc.jobs:
            raise ConfigError(
                f"Workflow '{name}' references unknown job '{job_name}'. Known jobs: {sorted(doc.jobs)}"
            )
        jobs.append(_JobCompiler(job_name, doc.jobs[job_name], doc.commands).compile(requires))

    wf = Workflow(name=name, jobs=tuple(jobs))
    dag.resolve(wf.jobs)
    logger.debug("loaded workflow %s with jobs %s", wf.name, wf.names)
    return wf


def load_document_text(text: str, workflow: Optional[str] = None) -> Workflow:
    try:
        # SafeLoader resolves anchors, aliases and `<<` merge keys
        data = yaml.load(text, Loader=yaml.SafeLoader)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML: {e}") from e
    return parse_document(data, workflow)


def load_document(path: str | Path, workflow: Optional[str] = None) -> Workflow:
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Pipeline file not found: {p}")
    with p.open("r", encoding="utf-8") as f:
        return load_document_text(f.read(), workflow)


def load_python_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> list of JobSpec (or a Workflow)
      - JOBS = [JobSpec, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ConfigError(f"Workflow file not found: {wf_path}")

    globals_dict = runpy.run_path(str(wf_path), run_name=f"relayci_workflow_{wf_path.stem}")

    jobs: Any = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        jobs = globals_dict["workflow"]()
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if isinstance(jobs, Workflow):
        wf = jobs
    elif isinstance(jobs, (list, tuple)) and all(isinstance(j, JobSpec) for j in jobs):
        wf = Workflow(name=wf_path.stem, jobs=tuple(jobs))
    else:
        raise ConfigError(
            "Workflow must return/define a list of jobs. "
            "Define workflow() -> list[JobSpec] or JOBS = [JobSpec, ...]."
        )

    dag.resolve(wf.jobs)
    return wf


def load_workflow(path: str | Path, workflow: Optional[str] = None) -> Workflow:
    """Load a pipeline from a .yml/.yaml document or a .py workflow module."""
    p = Path(path)
    if p.suffix == ".py":
        return load_python_workflow(p)
    if p.suffix in (".yml", ".yaml"):
        return load_document(p, workflow)
    raise ConfigError(f"Unsupported pipeline file type: {p.name} (expected .yml, .yaml or .py)")
