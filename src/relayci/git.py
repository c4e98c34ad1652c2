# git.py
# Thin wrapper around the Git CLI.
# Cache key templates are the only consumers; every helper answers None
# instead of raising when the source tree is not a repository.

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def _git(args: list[str], cwd: Optional[Path] = None) -> str:
    """
    Execute a git command and return its stdout with surrounding whitespace
    removed. Raises CalledProcessError / FileNotFoundError like subprocess.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def _try_git(args: list[str], cwd: Optional[Path]) -> Optional[str]:
    try:
        return _git(args, cwd=cwd) or None
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        logger.debug("git %s failed in %s: %s", " ".join(args), cwd, e)
        return None


def head_sha(cwd: Optional[Path] = None) -> Optional[str]:
    """Full SHA of HEAD, used for `{{ .Revision }}`."""
    return _try_git(["rev-parse", "HEAD"], cwd)


def current_branch(cwd: Optional[Path] = None) -> Optional[str]:
    """
    Current branch name, used for `{{ .Branch }}`.

    Detached HEAD (the usual state of a CI checkout) reports "HEAD";
    that is returned unchanged so keys stay stable.
    """
    return _try_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
