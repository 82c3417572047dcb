# git.py
# Small, focused wrapper around the Git CLI.
# All git calls made by jobgraph go through _git() in this module.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str] = None) -> Path:
    """Absolute path of the enclosing repository root."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    """Branch name, or None on a detached HEAD."""
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def current_tag(cwd: Optional[str] = None) -> Optional[str]:
    """Tag pointing exactly at HEAD, if any."""
    try:
        return _git(["describe", "--tags", "--exact-match", "HEAD"], cwd=cwd) or None
    except subprocess.CalledProcessError:
        return None


def is_dirty(cwd: Optional[str] = None) -> bool:
    """True if the working tree has staged, unstaged or untracked changes."""
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def remote_url(name: str = "origin", cwd: Optional[str] = None) -> str:
    return _git(["remote", "get-url", name], cwd=cwd)


def user_name(cwd: Optional[str] = None) -> Optional[str]:
    try:
        return _git(["config", "user.name"], cwd=cwd) or None
    except subprocess.CalledProcessError:
        return None
