# model.py
from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .errors import ErrorRecord


def _frozen_mapping(value: Optional[Mapping]) -> Mapping:
    if value is None:
        return MappingProxyType({})
    return MappingProxyType({k: _freeze_value(v) for k, v in dict(value).items()})


def _freeze_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        return _frozen_mapping(value)
    if isinstance(value, (list, tuple)):
        return tuple(_freeze_value(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Turn frozen mappings/tuples back into plain dicts/lists (for JSON)."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


# ----------------------------------------------------------------------
# Run context
# ----------------------------------------------------------------------

class RunContext(Mapping):
    """
    Read-only facts about the trigger: event, ref, branch, tag, sha, actor,
    repository, manual inputs...

    Built once per run; there is no way to change it afterwards.
    """

    __slots__ = ("_data",)

    def __init__(self, data: Optional[Mapping[str, Any]] = None, **kwargs: Any):
        merged = dict(data or {})
        merged.update(kwargs)
        object.__setattr__(self, "_data", _frozen_mapping(merged))

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __setattr__(self, name: str, value: Any) -> None:
        raise TypeError("RunContext is read-only")

    def __repr__(self) -> str:
        return f"RunContext({dict(self._data)!r})"

    @property
    def inputs(self) -> Mapping:
        value = self._data.get("inputs")
        return value if isinstance(value, Mapping) else MappingProxyType({})

    def to_dict(self) -> Dict[str, Any]:
        return thaw(self._data)


# ----------------------------------------------------------------------
# Static definitions
# ----------------------------------------------------------------------

STEP_KINDS = ("run", "upload-artifact", "download-artifact")


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a job."""
    name: str
    run: str = ""
    id: Optional[str] = None
    cwd: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    if_: Optional[str] = None
    continue_on_error: bool = False
    retry: int = 1           # total attempts, not extra ones
    kind: str = "run"
    data: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "env", _frozen_mapping(self.env))
        object.__setattr__(self, "data", _frozen_mapping(self.data))

    @property
    def ref(self) -> str:
        """Name used under `steps.<ref>` in expressions."""
        return self.id or self.name


@dataclass(frozen=True)
class MatrixSpec:
    """
    Axis name -> ordered candidate values, plus exclusion tuples.

    Exclusions are partial assignments: {"os": "b"} drops every combination
    with os == "b", whatever the other axes say.
    """
    axes: Mapping[str, Tuple[Any, ...]] = field(default_factory=dict)
    exclude: Tuple[Mapping[str, Any], ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "axes", _frozen_mapping(self.axes))
        object.__setattr__(self, "exclude", tuple(_frozen_mapping(e) for e in self.exclude))

    @property
    def is_empty(self) -> bool:
        return not self.axes


@dataclass(frozen=True)
class Environment:
    """
    Deployment target a job acts on. name and url are ${{ }} templates,
    rendered per instance; url may read steps.* once the job succeeded.
    """
    name: str
    url: Optional[str] = None


@dataclass(frozen=True)
class JobSpec:
    """
    A job: steps + dependencies + gate condition + matrix + outputs.

    `workflow` embeds a nested RunDefinition; such a job has no steps of its
    own and finishes with the nested run's status.
    """
    name: str
    steps: Tuple[Step, ...] = ()
    needs: Tuple[str, ...] = ()
    condition: Optional[str] = None
    matrix: Optional[MatrixSpec] = None
    outputs: Mapping[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None           # seconds, wall clock from RUNNING
    env: Mapping[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    workflow: Optional["RunDefinition"] = None
    environment: Optional[Environment] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "needs", tuple(self.needs))
        object.__setattr__(self, "outputs", _frozen_mapping(self.outputs))
        object.__setattr__(self, "env", _frozen_mapping(self.env))


@dataclass(frozen=True)
class RunDefinition:
    """Everything a run needs besides the trigger context."""
    name: str
    jobs: Tuple[JobSpec, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "jobs", tuple(self.jobs))
        object.__setattr__(self, "env", _frozen_mapping(self.env))

    def job(self, name: str) -> JobSpec:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


# ----------------------------------------------------------------------
# Runtime state
# ----------------------------------------------------------------------

class JobStatus(str, enum.Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def result(self) -> str:
        """Value of `needs.<job>.result` in expressions."""
        return {
            JobStatus.SUCCEEDED: "success",
            JobStatus.FAILED: "failure",
            JobStatus.SKIPPED: "skipped",
            JobStatus.CANCELLED: "cancelled",
        }.get(self, self.value)


TERMINAL_STATES = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED}
)

# from-state -> allowed to-states
TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.READY, JobStatus.SKIPPED, JobStatus.CANCELLED}),
    JobStatus.READY: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.SUCCEEDED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.SKIPPED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class RunStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


InstanceKey = Tuple[str, Tuple[Tuple[str, Any], ...]]


@dataclass
class StepRecord:
    """What happened to one step of one instance."""
    name: str
    ref: str
    outcome: str = "skipped"         # success | failure | skipped | cancelled
    conclusion: str = "skipped"      # outcome after continue-on-error
    exit_code: Optional[int] = None
    attempts: int = 0
    stdout: str = ""
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[ErrorRecord] = None      # set when a continue-on-error step failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "ref": self.ref,
            "outcome": self.outcome,
            "conclusion": self.conclusion,
            "exit_code": self.exit_code,
            "attempts": self.attempts,
            "outputs": dict(self.outputs),
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class JobInstance:
    """A JobSpec bound to one concrete matrix assignment."""
    spec: JobSpec
    assignment: Dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    outputs: Dict[str, Any] = field(default_factory=dict)
    artifacts: List[Any] = field(default_factory=list)
    steps: List[StepRecord] = field(default_factory=list)
    error: Optional[ErrorRecord] = None
    reason: Optional[str] = None     # why it was skipped / cancelled
    environment: Optional[Dict[str, Any]] = None   # rendered name/url

    @property
    def key(self) -> InstanceKey:
        return (self.spec.name, tuple(self.assignment.items()))

    @property
    def label(self) -> str:
        from .matrix import instance_label

        return instance_label(self.spec.name, self.assignment)

    def transition(self, to: JobStatus) -> None:
        if to not in TRANSITIONS[self.status]:
            raise RuntimeError(
                f"Illegal transition for {self.label}: {self.status.value} -> {to.value}"
            )
        self.status = to

    def snapshot(self) -> "InstanceResult":
        duration = None
        if self.started_at is not None and self.finished_at is not None:
            duration = self.finished_at - self.started_at
        return InstanceResult(
            job=self.spec.name,
            label=self.label,
            matrix=dict(self.assignment),
            status=self.status,
            started_at=self.started_at,
            finished_at=self.finished_at,
            duration=duration,
            outputs=dict(self.outputs) if self.status is JobStatus.SUCCEEDED else {},
            artifacts=[a.name for a in self.artifacts],
            steps=[s.to_dict() for s in self.steps],
            error=self.error,
            reason=self.reason,
            required=not self.spec.continue_on_error,
            environment=dict(self.environment) if self.environment else None,
        )


# ----------------------------------------------------------------------
# Results (read-only snapshots)
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class InstanceResult:
    job: str
    label: str
    matrix: Dict[str, Any]
    status: JobStatus
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    duration: Optional[float] = None
    outputs: Dict[str, Any] = field(default_factory=dict)
    artifacts: List[str] = field(default_factory=list)
    steps: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[ErrorRecord] = None
    reason: Optional[str] = None
    required: bool = True
    environment: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "label": self.label,
            "matrix": dict(self.matrix),
            "status": self.status.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration": self.duration,
            "outputs": dict(self.outputs),
            "artifacts": list(self.artifacts),
            "steps": list(self.steps),
            "error": self.error.to_dict() if self.error else None,
            "reason": self.reason,
            "required": self.required,
            "environment": dict(self.environment) if self.environment else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> InstanceResult:
        err = data.get("error")
        return cls(
            job=data["job"],
            label=data.get("label", data["job"]),
            matrix=dict(data.get("matrix") or {}),
            status=JobStatus(data["status"]),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            duration=data.get("duration"),
            outputs=dict(data.get("outputs") or {}),
            artifacts=list(data.get("artifacts") or []),
            steps=list(data.get("steps") or []),
            error=ErrorRecord(**err) if err else None,
            reason=data.get("reason"),
            required=data.get("required", True),
            environment=dict(data["environment"]) if data.get("environment") else None,
        )


@dataclass(frozen=True)
class RunResult:
    run_id: str
    name: str
    status: RunStatus
    instances: List[InstanceResult]
    started_at: float
    finished_at: float
    errors: List[ErrorRecord] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration(self) -> float:
        return self.finished_at - self.started_at

    def instance(self, label: str) -> InstanceResult:
        for inst in self.instances:
            if inst.label == label:
                return inst
        raise KeyError(label)

    def statuses(self) -> Dict[str, JobStatus]:
        """label -> terminal status."""
        return {i.label: i.status for i in self.instances}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "name": self.name,
            "status": self.status.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration": self.duration,
            "instances": [i.to_dict() for i in self.instances],
            "errors": [e.to_dict() for e in self.errors],
            "context": dict(self.context),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> RunResult:
        return cls(
            run_id=data["run_id"],
            name=data["name"],
            status=RunStatus(data["status"]),
            instances=[InstanceResult.from_dict(i) for i in data.get("instances", [])],
            started_at=data["started_at"],
            finished_at=data["finished_at"],
            errors=[ErrorRecord(**e) for e in data.get("errors", [])],
            context=dict(data.get("context") or {}),
        )
