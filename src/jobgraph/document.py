# document.py
from __future__ import annotations

import json
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError
from .model import Environment, JobSpec, MatrixSpec, RunDefinition, Step, thaw

DOCUMENT_VERSION = 1
FORMATS = ("json", "yaml")


def _stringify_env(value: Any) -> Any:
    if not isinstance(value, dict):
        return value
    out = {}
    for k, v in value.items():
        if isinstance(v, bool):
            v = "true" if v else "false"
        out[str(k)] = v if isinstance(v, str) else str(v)
    return out


# -------------------- Schemas --------------------

class _Doc(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class StepDoc(_Doc):
    name: str
    run: str = ""
    id: Optional[str] = None
    cwd: Optional[str] = None
    env: dict[str, str] = Field(default_factory=dict)
    if_: Optional[str] = Field(default=None, alias="if")
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    retry: int = 1
    kind: str = "run"
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("env", mode="before")
    @classmethod
    def _coerce_env(cls, value: Any) -> Any:
        return _stringify_env(value)

    @classmethod
    def from_step(cls, step: Step) -> StepDoc:
        return cls(
            name=step.name,
            run=step.run,
            id=step.id,
            cwd=step.cwd,
            env=dict(step.env),
            if_=step.if_,
            continue_on_error=step.continue_on_error,
            retry=step.retry,
            kind=step.kind,
            data=thaw(step.data),
        )

    def to_step(self) -> Step:
        return Step(
            name=self.name,
            run=self.run,
            id=self.id,
            cwd=self.cwd,
            env=self.env,
            if_=self.if_,
            continue_on_error=self.continue_on_error,
            retry=self.retry,
            kind=self.kind,
            data=self.data,
        )


class MatrixDoc(_Doc):
    axes: dict[str, list[Any]] = Field(default_factory=dict)
    exclude: list[dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_spec(cls, spec: MatrixSpec) -> MatrixDoc:
        return cls(axes=thaw(spec.axes), exclude=[thaw(e) for e in spec.exclude])

    def to_spec(self) -> MatrixSpec:
        return MatrixSpec(axes={k: tuple(v) for k, v in self.axes.items()}, exclude=tuple(self.exclude))


class EnvironmentDoc(_Doc):
    name: str
    url: Optional[str] = None

    @classmethod
    def from_environment(cls, environment: Environment) -> EnvironmentDoc:
        return cls(name=environment.name, url=environment.url)

    def to_environment(self) -> Environment:
        return Environment(name=self.name, url=self.url)


class JobDoc(_Doc):
    name: str
    steps: list[StepDoc] = Field(default_factory=list)
    needs: list[str] = Field(default_factory=list)
    if_: Optional[str] = Field(default=None, alias="if")
    matrix: Optional[MatrixDoc] = None
    outputs: dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = None
    env: dict[str, str] = Field(default_factory=dict)
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    workflow: Optional[RunDocument] = None
    environment: Optional[EnvironmentDoc] = None

    @field_validator("env", mode="before")
    @classmethod
    def _coerce_env(cls, value: Any) -> Any:
        return _stringify_env(value)

    @field_validator("needs", mode="before")
    @classmethod
    def _single_need(cls, value: Any) -> Any:
        return [value] if isinstance(value, str) else value

    @field_validator("environment", mode="before")
    @classmethod
    def _environment_name(cls, value: Any) -> Any:
        return {"name": value} if isinstance(value, str) else value

    @classmethod
    def from_spec(cls, spec: JobSpec) -> JobDoc:
        return cls(
            name=spec.name,
            steps=[StepDoc.from_step(s) for s in spec.steps],
            needs=list(spec.needs),
            if_=spec.condition,
            matrix=MatrixDoc.from_spec(spec.matrix) if spec.matrix is not None else None,
            outputs=dict(spec.outputs),
            timeout=spec.timeout,
            env=dict(spec.env),
            continue_on_error=spec.continue_on_error,
            workflow=RunDocument.from_definition(spec.workflow) if spec.workflow is not None else None,
            environment=EnvironmentDoc.from_environment(spec.environment) if spec.environment is not None else None,
        )

    def to_spec(self) -> JobSpec:
        return JobSpec(
            name=self.name,
            steps=tuple(s.to_step() for s in self.steps),
            needs=tuple(self.needs),
            condition=self.if_,
            matrix=self.matrix.to_spec() if self.matrix is not None else None,
            outputs=self.outputs,
            timeout=self.timeout,
            env=self.env,
            continue_on_error=self.continue_on_error,
            workflow=self.workflow.to_definition() if self.workflow is not None else None,
            environment=self.environment.to_environment() if self.environment is not None else None,
        )


class RunDocument(_Doc):
    """On-disk form of a RunDefinition."""
    version: int = DOCUMENT_VERSION
    name: str = "workflow"
    env: dict[str, str] = Field(default_factory=dict)
    jobs: list[JobDoc] = Field(default_factory=list)

    @field_validator("env", mode="before")
    @classmethod
    def _coerce_env(cls, value: Any) -> Any:
        return _stringify_env(value)

    @field_validator("version")
    @classmethod
    def _known_version(cls, value: int) -> int:
        if value != DOCUMENT_VERSION:
            raise ValueError(f"unsupported document version {value} (expected {DOCUMENT_VERSION})")
        return value

    @classmethod
    def from_definition(cls, definition: RunDefinition) -> RunDocument:
        return cls(
            name=definition.name,
            env=dict(definition.env),
            jobs=[JobDoc.from_spec(j) for j in definition.jobs],
        )

    def to_definition(self) -> RunDefinition:
        return RunDefinition(
            name=self.name,
            jobs=tuple(j.to_spec() for j in self.jobs),
            env=self.env,
        )


JobDoc.model_rebuild()


# -------------------- Text round-trip --------------------

def dump_definition(definition: RunDefinition, fmt: str = "json") -> str:
    data = RunDocument.from_definition(definition).model_dump(
        mode="json", by_alias=True, exclude_defaults=True
    )
    data = {"version": DOCUMENT_VERSION, **data}
    if fmt == "json":
        return json.dumps(data, indent=2) + "\n"
    if fmt == "yaml":
        return yaml.safe_dump(data, sort_keys=False)
    raise ValueError(f"Unknown document format {fmt!r}. Known formats: {list(FORMATS)}")


def load_document(text: str, fmt: str = "json") -> RunDefinition:
    """Parse a persisted run definition. Malformed input raises ConfigurationError."""
    try:
        if fmt == "json":
            raw = json.loads(text)
        elif fmt == "yaml":
            raw = yaml.safe_load(text)
        else:
            raise ValueError(f"Unknown document format {fmt!r}. Known formats: {list(FORMATS)}")
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not parse {fmt} run definition: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Run definition must be a mapping, got {type(raw).__name__}")

    try:
        return RunDocument.model_validate(raw).to_definition()
    except ValidationError as e:
        raise ConfigurationError(f"Invalid run definition:\n{e}") from e
