from __future__ import annotations

import subprocess
from typing import Any, Callable, Dict, Mapping, Optional

from .git_facts import git
from .model import RunContext

DEFAULT_EVENT = "manual"


def _safe(fn: Callable[..., Any], *args: Any) -> Any:
    """Git fact or None when git (or a repo) is not available."""
    try:
        return fn(*args)
    except (subprocess.CalledProcessError, FileNotFoundError, OSError):
        return None


def _repository_name(url: str) -> str:
    # git@host:org/name.git and https://host/org/name.git -> org/name
    tail = url.rstrip("/").replace(":", "/")
    parts = [p for p in tail.split("/") if p]
    name = "/".join(parts[-2:]) if len(parts) >= 2 else parts[-1]
    return name[:-4] if name.endswith(".git") else name


def git_facts(cwd: Optional[str] = None) -> Dict[str, Any]:
    """branch/ref/tag/sha/repository/actor/dirty; unavailable facts are left out."""
    facts: Dict[str, Any] = {}

    sha = _safe(git.head_sha, cwd)
    if sha is None:
        return facts  # not a repo, or no git at all
    facts["sha"] = sha

    branch = _safe(git.current_branch, cwd)
    tag = _safe(git.current_tag, cwd)
    if branch:
        facts["branch"] = branch
        facts["ref"] = f"refs/heads/{branch}"
    if tag:
        facts["tag"] = tag
        if "ref" not in facts:
            facts["ref"] = f"refs/tags/{tag}"

    url = _safe(git.remote_url, "origin", cwd)
    if url:
        facts["repository"] = _repository_name(url)
    actor = _safe(git.user_name, cwd)
    if actor:
        facts["actor"] = actor
    dirty = _safe(git.is_dirty, cwd)
    if dirty is not None:
        facts["dirty"] = dirty
    return facts


def resolve_context(
    event: str = DEFAULT_EVENT,
    inputs: Optional[Mapping[str, Any]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    *,
    defaults: Optional[Mapping[str, Any]] = None,
    cwd: Optional[str] = None,
    use_git: bool = True,
) -> RunContext:
    """
    Build the RunContext for one run.

    Precedence, lowest first: git facts, `event`/`inputs`, explicit
    `overrides`. Manual inputs are merged over the declared `defaults`.
    """
    data: Dict[str, Any] = git_facts(cwd) if use_git else {}
    data["event"] = event

    merged_inputs: Dict[str, Any] = dict(defaults or {})
    merged_inputs.update(inputs or {})
    data["inputs"] = merged_inputs

    for key, value in (overrides or {}).items():
        data[key] = value

    # a branch override without a ref still yields a consistent ref
    if overrides and "branch" in overrides and "ref" not in overrides:
        data["ref"] = f"refs/heads/{overrides['branch']}"
    return RunContext(data)
