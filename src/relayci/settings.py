# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional


DEFAULT_CACHE_DIR = ".relayci/cache"
DEFAULT_WORK_DIR = ".relayci/work"
DEFAULT_OUTPUT_LIMIT = 1024 * 1024
DEFAULT_KILL_GRACE = 5.0
DEFAULT_KEEP_RUNS = 100


def _default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """
    Runtime configuration passed explicitly to the scheduler and executors.

    Nothing in relayci reads the environment on its own; `from_env()` is the
    single place where RELAYCI_* variables are consulted.
    """
    workers: int = field(default_factory=_default_workers)
    fail_fast: bool = False
    source_dir: Path = Path(".")
    work_dir: Path = Path(DEFAULT_WORK_DIR)
    cache_dir: Path = Path(DEFAULT_CACHE_DIR)
    # redis://host:port/db, takes precedence over cache_dir when set
    cache_url: Optional[str] = None
    archive_url: Optional[str] = None
    output_limit: int = DEFAULT_OUTPUT_LIMIT
    kill_grace: float = DEFAULT_KILL_GRACE
    keep_workdirs: bool = False
    # finished runs a scheduler keeps in memory, oldest dropped first
    keep_runs: int = DEFAULT_KEEP_RUNS
    # extra variables exported to every step
    env: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "Settings":
        environ = os.environ if environ is None else environ
        values: Dict[str, object] = {}

        if "RELAYCI_WORKERS" in environ:
            values["workers"] = int(environ["RELAYCI_WORKERS"])
        if "RELAYCI_FAIL_FAST" in environ:
            values["fail_fast"] = _flag(environ["RELAYCI_FAIL_FAST"])
        if "RELAYCI_SOURCE_DIR" in environ:
            values["source_dir"] = Path(environ["RELAYCI_SOURCE_DIR"])
        if "RELAYCI_WORK_DIR" in environ:
            values["work_dir"] = Path(environ["RELAYCI_WORK_DIR"])
        if "RELAYCI_CACHE_DIR" in environ:
            values["cache_dir"] = Path(environ["RELAYCI_CACHE_DIR"])
        if environ.get("RELAYCI_CACHE_URL"):
            values["cache_url"] = environ["RELAYCI_CACHE_URL"]
        if environ.get("RELAYCI_ARCHIVE_URL"):
            values["archive_url"] = environ["RELAYCI_ARCHIVE_URL"]
        if "RELAYCI_OUTPUT_LIMIT" in environ:
            values["output_limit"] = int(environ["RELAYCI_OUTPUT_LIMIT"])
        if "RELAYCI_KILL_GRACE" in environ:
            values["kill_grace"] = float(environ["RELAYCI_KILL_GRACE"])
        if "RELAYCI_KEEP_WORKDIRS" in environ:
            values["keep_workdirs"] = _flag(environ["RELAYCI_KEEP_WORKDIRS"])
        if "RELAYCI_KEEP_RUNS" in environ:
            values["keep_runs"] = int(environ["RELAYCI_KEEP_RUNS"])

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def with_overrides(self, **overrides) -> "Settings":
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})
