# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, List, Set, Tuple

from .errors import ConfigurationError
from .expressions import compile_expression, compile_template
from .matrix import expand, instance_label, validate_matrix
from .model import STEP_KINDS, JobSpec, RunDefinition


def build_dag(jobs: List[JobSpec]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from JobSpecs.

    Requires:
      - job.name: str (unique)
      - job.needs: names of jobs that must finish BEFORE this job
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for need in job.needs:
            if need not in name_set:
                raise ConfigurationError(
                    f"Job '{job.name}' needs missing job '{need}'. "
                    f"Known jobs: {sorted(name_set)}"
                )
            if need == job.name:
                raise ConfigurationError(f"Job '{job.name}' needs itself")
            # Edge need -> job.name (need must finish before job)
            if job.name not in adj[need]:
                adj[need].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def _find_cycle(adj: Dict[str, Set[str]], stuck: List[str]) -> List[str]:
    """One concrete cycle among the stuck nodes, for the error message."""
    stuck_set = set(stuck)
    start = stuck[0]
    path: List[str] = []
    seen: Dict[str, int] = {}
    node = start
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        nxt = sorted(n for n in adj.get(node, set()) if n in stuck_set)
        if not nxt:
            return path
        node = nxt[0]
    return path[seen[node]:] + [node]


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage only depends on earlier stages.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(n for n, d in indeg.items() if d == 0)

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        stuck = [n for n, d in indeg.items() if d > 0]
        cycle = _find_cycle(adj, stuck)
        raise ConfigurationError(
            f"Job graph has a cycle: {' -> '.join(cycle)}. Stuck jobs: {sorted(stuck)}"
        )

    return levels


# ----------------------------------------------------------------------
# Whole-definition validation
# ----------------------------------------------------------------------

def _check_expression(text: Any, where: str) -> None:
    try:
        compile_expression(text)
    except ConfigurationError as e:
        raise ConfigurationError(f"{where}: {e}") from e


def _check_template(text: Any, where: str) -> None:
    if text is None:
        return
    if not isinstance(text, str):
        raise ConfigurationError(f"{where}: expected a string, got {type(text).__name__}")
    try:
        compile_template(text)
    except ConfigurationError as e:
        raise ConfigurationError(f"{where}: {e}") from e


def _validate_job(job: JobSpec) -> None:
    where = f"Job '{job.name}'"
    if not job.name:
        raise ConfigurationError("Job with an empty name")

    if job.workflow is not None and job.steps:
        raise ConfigurationError(f"{where}: a job calling a nested workflow cannot also declare steps")
    if job.workflow is None and not job.steps:
        raise ConfigurationError(f"{where}: must have at least one step or a nested workflow")

    if job.timeout is not None and job.timeout <= 0:
        raise ConfigurationError(f"{where}: timeout must be positive, got {job.timeout}")

    if job.condition is not None:
        _check_expression(job.condition, f"{where} condition")
    for out_name, expr in job.outputs.items():
        _check_expression(expr, f"{where} output '{out_name}'")
    for key, value in job.env.items():
        _check_template(value, f"{where} env '{key}'")
    if job.environment is not None:
        if not job.environment.name:
            raise ConfigurationError(f"{where}: environment needs a name")
        _check_template(job.environment.name, f"{where} environment name")
        _check_template(job.environment.url, f"{where} environment url")

    validate_matrix(job.matrix, job=job.name)

    refs: Set[str] = set()
    for step in job.steps:
        swhere = f"{where} step '{step.name}'"
        if step.kind not in STEP_KINDS:
            raise ConfigurationError(f"{swhere}: unknown kind {step.kind!r}. Known kinds: {list(STEP_KINDS)}")
        if step.retry < 1:
            raise ConfigurationError(f"{swhere}: retry must be >= 1 attempt, got {step.retry}")
        if step.ref in refs:
            raise ConfigurationError(f"{swhere}: duplicate step id '{step.ref}'")
        refs.add(step.ref)
        if step.if_ is not None:
            _check_expression(step.if_, f"{swhere} condition")
        _check_template(step.run, f"{swhere} run")
        for key, value in step.env.items():
            _check_template(value, f"{swhere} env '{key}'")
        if step.kind == "run" and not step.run.strip():
            raise ConfigurationError(f"{swhere}: empty command")
        if step.kind in ("upload-artifact", "download-artifact"):
            if not step.data.get("name"):
                raise ConfigurationError(f"{swhere}: {step.kind} needs data.name")
            for key in ("name", "path"):
                _check_template(step.data.get(key), f"{swhere} data.{key}")
        if step.kind == "upload-artifact" and not step.data.get("path"):
            raise ConfigurationError(f"{swhere}: upload-artifact needs data.path")

    if job.workflow is not None:
        validate_definition(job.workflow)


def validate_definition(definition: RunDefinition) -> List[List[str]]:
    """
    Check everything that can be checked before anything runs.

    Raises ConfigurationError on: duplicate/missing/cyclic needs, malformed
    expressions or templates, bad matrices, non-positive timeouts, bad steps.
    Returns the topological levels of job names.
    """
    if not definition.jobs:
        raise ConfigurationError(f"Run definition '{definition.name}' has no jobs")
    for key, value in definition.env.items():
        _check_template(value, f"Run env '{key}'")

    jobs = list(definition.jobs)
    adj, indeg = build_dag(jobs)
    levels = topo_levels(adj, indeg)
    for job in jobs:
        _validate_job(job)
    return levels


@dataclass(frozen=True)
class PlannedStage:
    index: int
    jobs: List[str]
    instances: List[str]


def plan(definition: RunDefinition) -> List[PlannedStage]:
    """Validated stages with their expanded instance labels (for `jobgraph plan`)."""
    levels = validate_definition(definition)
    out: List[PlannedStage] = []
    for idx, level in enumerate(levels):
        instances: List[str] = []
        for name in level:
            job = definition.job(name)
            instances.extend(instance_label(name, a) for a in expand(job.matrix))
        out.append(PlannedStage(index=idx + 1, jobs=list(level), instances=instances))
    return out
