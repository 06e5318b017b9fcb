from __future__ import annotations

import subprocess
from collections.abc import Sequence

from .types import GitMetadata


def _run_checked(cmd: Sequence[str], cwd: str | None) -> str | None:
    try:
        out = subprocess.check_output(cmd, cwd=cwd, stderr=subprocess.DEVNULL, text=True)
    except (subprocess.CalledProcessError, FileNotFoundError, NotADirectoryError):
        return None
    return out.strip()


def is_git_repo(cwd: str) -> bool:
    return _run_checked(["git", "rev-parse", "--is-inside-work-tree"], cwd) == "true"


def detect_remote_url(cwd: str) -> str | None:
    if not is_git_repo(cwd):
        return None
    return _run_checked(["git", "config", "--get", "remote.origin.url"], cwd) or None


def detect_git_metadata(cwd: str) -> GitMetadata | None:
    """Branch, head commit and dirty flag for the repository at ``cwd``."""

    if not is_git_repo(cwd):
        return None
    branch = _run_checked(["git", "rev-parse", "--abbrev-ref", "HEAD"], cwd) or None
    if branch == "HEAD":
        branch = None
    commit = _run_checked(["git", "rev-parse", "HEAD"], cwd) or None
    status = _run_checked(["git", "status", "--porcelain"], cwd)
    dirty = bool(status) if status is not None else None
    if branch is None and commit is None and dirty is None:
        return None
    return GitMetadata(branch=branch, commit=commit, dirty=dirty)
