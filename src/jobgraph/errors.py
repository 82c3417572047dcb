# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class JobGraphError(Exception):
    """Base exception for jobgraph."""
    pass


class ConfigurationError(JobGraphError):
    """
    The run definition itself is wrong: cyclic needs, malformed expression,
    matrix exclusion naming an undeclared axis, ...

    Always fatal. Raised before any instance starts, never retried.
    """
    pass


@dataclass
class StepExecutionError(JobGraphError):
    """
    Structured step failure with enough context for:
      - clean CLI output
      - the RunResult error list
      - debugging without full tracebacks
    """
    job: str
    step: str
    cmd: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    kind: str = "StepExecutionError"

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"

    @property
    def details(self) -> dict:
        out = {"cmd": self.cmd, "exit_code": self.exit_code}
        if self.stdout:
            out["stdout"] = self.stdout
        if self.stderr:
            out["stderr"] = self.stderr
        return out


class StepTimeout(JobGraphError, TimeoutError):
    """The instance timeout elapsed while a step was running."""

    def __init__(self, job: str, step: str | None, timeout: float | None):
        self.job = job
        self.step = step
        self.timeout = timeout
        where = f" step '{step}'" if step else ""
        super().__init__(f"[{job}]{where} timed out after {timeout}s")


class ArtifactNotFound(JobGraphError, KeyError):
    """No live artifact under this name (or the reference is stale)."""

    def __init__(self, name: str, reason: str = "no live artifact"):
        self.name = name
        self.reason = reason
        super().__init__(name)

    def __str__(self) -> str:
        return f"artifact '{self.name}' not found ({self.reason})"


@dataclass
class ErrorRecord:
    """
    One failure as it appears in a RunResult.

    kind is the error class name (ConfigurationError, StepExecutionError,
    StepTimeout, ArtifactNotFound, ...).
    """
    instance: str
    step: str | None
    kind: str
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.instance}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "instance": self.instance,
            "step": self.step,
            "kind": self.kind,
            "message": self.message,
            "details": dict(self.details),
        }

    @classmethod
    def from_exception(cls, instance: str, step: str | None, exc: BaseException) -> ErrorRecord:
        details = getattr(exc, "details", None)
        return cls(
            instance=instance,
            step=step,
            kind=getattr(exc, "kind", None) or type(exc).__name__,
            message=str(exc),
            details=dict(details) if isinstance(details, dict) else {},
        )
