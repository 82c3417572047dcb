from __future__ import annotations

import runpy
from pathlib import Path

from .document import load_document
from .dsl import wf
from .errors import ConfigurationError
from .model import JobSpec, RunDefinition

DOCUMENT_SUFFIXES = {".json": "json", ".yaml": "yaml", ".yml": "yaml"}


def _from_python(wf_path: Path) -> RunDefinition:
    module_name = f"jobgraph_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    value = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            value = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from jobgraph import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        value = globals_dict["WORKFLOW"]
    elif "JOBS" in globals_dict:
        value = globals_dict["JOBS"]

    if isinstance(value, RunDefinition):
        return value
    if isinstance(value, (list, tuple)) and value and all(isinstance(j, JobSpec) for j in value):
        return wf(*value, name=wf_path.stem)
    raise TypeError(
        "Workflow must return/define a RunDefinition or a list of jobs. "
        "Define workflow() -> wf(...), WORKFLOW = wf(...) or JOBS = [job(...), ...]."
    )


def load_workflow(path: str | Path) -> RunDefinition:
    """
    Load a run definition from a file.

    Python files (*.py) must define one of:
      - workflow() -> RunDefinition | List[JobSpec]
      - WORKFLOW = RunDefinition
      - JOBS = [JobSpec, ...]

    *.json / *.yaml / *.yml files hold the persisted document format.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    suffix = wf_path.suffix.lower()
    if suffix == ".py":
        return _from_python(wf_path)
    if suffix in DOCUMENT_SUFFIXES:
        return load_document(wf_path.read_text(encoding="utf-8"), DOCUMENT_SUFFIXES[suffix])
    raise ConfigurationError(
        f"Unsupported workflow file {wf_path.name}: expected .py, .json, .yaml or .yml"
    )
