from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .model import Environment, JobSpec, MatrixSpec, RunDefinition, Step


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: str | None = None,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    if_: str | None = None,
    continue_on_error: bool = False,
    retry: int = 1,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        id=id,
        cwd=cwd,
        env={k: str(v) for k, v in (env or {}).items()},
        if_=if_,
        continue_on_error=continue_on_error,
        retry=retry,
    )


def upload_artifact(
    name: str,
    path: str,
    *,
    retention_days: float | None = None,
    step_name: str | None = None,
    if_: str | None = None,
    continue_on_error: bool = False,
) -> Step:
    """Publish `path` (file or directory, relative to the workspace) as artifact `name`."""
    data: Dict[str, Any] = {"name": name, "path": path}
    if retention_days is not None:
        data["retention_days"] = retention_days
    return Step(
        name=step_name or f"upload {name}",
        kind="upload-artifact",
        data=data,
        if_=if_,
        continue_on_error=continue_on_error,
    )


def download_artifact(
    name: str,
    path: str | None = None,
    *,
    step_name: str | None = None,
    if_: str | None = None,
    continue_on_error: bool = False,
) -> Step:
    data: Dict[str, Any] = {"name": name}
    if path is not None:
        data["path"] = path
    return Step(
        name=step_name or f"download {name}",
        kind="download-artifact",
        data=data,
        if_=if_,
        continue_on_error=continue_on_error,
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Matrix declaration for a job.

    Example:
        matrix(os=["linux", "mac"], node=[18, 20]).exclude(os="mac", node=18)
    """

    def __init__(self, **axes: Iterable[Any]):
        self.axes: Dict[str, tuple] = {k: tuple(v) for k, v in axes.items()}
        self._exclude: List[Dict[str, Any]] = []

    def exclude(self, **partial: Any) -> "Matrix":
        self._exclude.append(dict(partial))
        return self

    def spec(self) -> MatrixSpec:
        return MatrixSpec(axes=self.axes, exclude=tuple(self._exclude))


def matrix(**axes: Iterable[Any]) -> Matrix:
    return Matrix(**axes)


MatrixLike = Union[Matrix, MatrixSpec, Mapping[str, Iterable[Any]], None]


def _matrix_spec(value: MatrixLike) -> Optional[MatrixSpec]:
    if value is None or isinstance(value, MatrixSpec):
        return value
    if isinstance(value, Matrix):
        return value.spec()
    return MatrixSpec(axes={k: tuple(v) for k, v in value.items()})


EnvironmentLike = Union[Environment, str, Mapping[str, Any], None]


def _environment(value: EnvironmentLike) -> Optional[Environment]:
    if value is None or isinstance(value, Environment):
        return value
    if isinstance(value, str):
        return Environment(name=value)
    return Environment(name=value["name"], url=value.get("url"))


def _needs(needs: Union[str, Sequence[str], None]) -> tuple:
    if needs is None:
        return ()
    if isinstance(needs, str):
        return (needs,)
    return tuple(needs)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,
    needs: Union[str, Sequence[str], None] = None,
    if_: str | None = None,
    matrix: MatrixLike = None,
    outputs: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    environment: EnvironmentLike = None,
) -> JobSpec:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return JobSpec(
        name=name,
        steps=tuple(steps_final),
        needs=_needs(needs),
        condition=if_,
        matrix=_matrix_spec(matrix),
        outputs=outputs or {},
        timeout=timeout,
        env={k: str(v) for k, v in (env or {}).items()},
        continue_on_error=continue_on_error,
        environment=_environment(environment),
    )


def call(
    name: str,
    workflow: RunDefinition,
    *,
    needs: Union[str, Sequence[str], None] = None,
    if_: str | None = None,
    outputs: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
    continue_on_error: bool = False,
    environment: EnvironmentLike = None,
) -> JobSpec:
    """A job that runs another run definition and finishes with its status."""
    return JobSpec(
        name=name,
        needs=_needs(needs),
        condition=if_,
        outputs=outputs or {},
        timeout=timeout,
        continue_on_error=continue_on_error,
        workflow=workflow,
        environment=_environment(environment),
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
        self._outputs: dict[str, str] = {}
        self._condition: Optional[str] = None
        self._matrix: Optional[MatrixSpec] = None
        self._timeout: Optional[float] = None
        self._continue_on_error = False
        self._environment: Optional[Environment] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def when(self, condition: str):
        self._condition = condition
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs: Any):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def add_step(self, step: Step):
        self._steps.append(step)
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_matrix(self, m: MatrixLike):
        self._matrix = _matrix_spec(m)
        return self

    def with_outputs(self, **outputs: str):
        self._outputs.update(outputs)
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def allow_failure(self, enabled: bool = True):
        self._continue_on_error = enabled
        return self

    def deploys_to(self, name: str, url: str | None = None):
        self._environment = Environment(name=name, url=url)
        return self

    def build(self) -> JobSpec:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return JobSpec(
            name=self.name,
            steps=tuple(self._steps),
            needs=tuple(self._needs),
            condition=self._condition,
            matrix=self._matrix,
            outputs=self._outputs,
            timeout=self._timeout,
            env=self._env,
            continue_on_error=self._continue_on_error,
            environment=self._environment,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: JobSpec, name: str = "workflow", env: Optional[Dict[str, str]] = None) -> RunDefinition:
    """
    Workflow definition helper.

    Users can write:
        from jobgraph import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
                name="ci",
            )

    Or use JOBS directly:
        JOBS = [job(...), job(...)]
    """
    return RunDefinition(
        name=name,
        jobs=tuple(jobs),
        env={k: str(v) for k, v in (env or {}).items()},
    )
