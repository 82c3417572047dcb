from .dsl import job, sh, matrix, wf, call, upload_artifact, download_artifact, JobBuilder, build
from .scheduler import Scheduler, run
from .model import JobSpec, Step, RunDefinition, RunContext, RunResult, JobStatus, RunStatus
from .expressions import evaluate
from .artifacts import ArtifactStore
from .errors import ConfigurationError, StepExecutionError, StepTimeout, ArtifactNotFound

__all__ = [
    "job", "sh", "matrix", "wf", "call", "upload_artifact", "download_artifact", "JobBuilder", "build",
    "Scheduler", "run",
    "JobSpec", "Step", "RunDefinition", "RunContext", "RunResult", "JobStatus", "RunStatus",
    "evaluate", "ArtifactStore",
    "ConfigurationError", "StepExecutionError", "StepTimeout", "ArtifactNotFound",
]
