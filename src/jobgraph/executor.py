# executor.py
from __future__ import annotations

import os
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Protocol

from .errors import StepTimeout
from .model import Step

OUTPUT_ENV_VAR = "JOBGRAPH_OUTPUT"
TAIL_CHARS = 4000


@dataclass(frozen=True)
class StepRequest:
    """Everything an executor needs to run one step of one instance."""
    job: str                   # instance label, e.g. "test (linux, 20)"
    step: Step
    command: str               # `step.run` with ${{ }} already rendered
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: Optional[Path] = None
    timeout: Optional[float] = None   # seconds left on the instance timeout


@dataclass
class StepOutcome:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    outputs: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class StepExecutor(Protocol):
    """
    Runs one step to completion and reports how it went.

    Raise StepTimeout when request.timeout elapses; return a non-zero
    exit_code for an ordinary failure.
    """

    def __call__(self, request: StepRequest) -> StepOutcome: ...


def parse_output_file(text: str) -> Dict[str, str]:
    """
    name=value lines, plus heredoc style multi-line values:

        summary<<EOF
        line one
        line two
        EOF
    """
    outputs: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            name, delim = line.split("<<", 1)
            body = []
            while i < len(lines) and lines[i] != delim:
                body.append(lines[i])
                i += 1
            i += 1  # skip delimiter
            outputs[name.strip()] = "\n".join(body)
            continue
        if "=" in line:
            name, value = line.split("=", 1)
            outputs[name.strip()] = value
    return outputs


class ShellExecutor:
    """
    Default executor: runs `request.command` through the system shell.

    Step outputs are collected from the file named by $JOBGRAPH_OUTPUT.
    """

    def __init__(self, workspace: str | Path = ".", inherit_env: bool = True):
        self.workspace = Path(workspace).resolve()
        self.inherit_env = inherit_env

    def __call__(self, request: StepRequest) -> StepOutcome:
        cwd = (request.cwd or self.workspace / (request.step.cwd or ".")).resolve()
        if not cwd.exists():
            raise FileNotFoundError(f"[{request.job}] step '{request.step.name}' cwd not found: {cwd}")

        env = os.environ.copy() if self.inherit_env else {}
        env.update({k: str(v) for k, v in request.env.items()})

        fd, output_path = tempfile.mkstemp(prefix="jobgraph-output-", suffix=".txt")
        os.close(fd)
        env[OUTPUT_ENV_VAR] = output_path
        try:
            try:
                proc = subprocess.run(
                    request.command,
                    shell=True,
                    cwd=str(cwd),
                    env=env,
                    text=True,
                    capture_output=True,
                    timeout=request.timeout,
                )
            except subprocess.TimeoutExpired as e:
                # subprocess.run kills the child before re-raising
                raise StepTimeout(request.job, request.step.name, request.timeout) from e

            outputs = parse_output_file(Path(output_path).read_text(encoding="utf-8", errors="replace"))
        finally:
            Path(output_path).unlink(missing_ok=True)

        return StepOutcome(
            exit_code=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            outputs=outputs,
        )
