from .dsl import (
    build,
    download,
    event_is,
    job,
    JobBuilder,
    matrix,
    matrix_is,
    on,
    on_branch,
    sh,
    tag_push,
    upload,
    wf,
)
from .dag import ConfigurationError
from .model import Credentials, Job, JobState, Run, RunResult, Step, Triggers, Workflow
from .runner import CancelToken, load_workflow, run_pipeline
from .step_workflows.maturin import build_sdist, build_wheels
from .step_workflows.publish import publish_step
from .step_workflows.smoke import install_and_import

__all__ = [
    "build",
    "download",
    "event_is",
    "job",
    "JobBuilder",
    "matrix",
    "matrix_is",
    "on",
    "on_branch",
    "sh",
    "tag_push",
    "upload",
    "wf",
    "build_wheels",
    "build_sdist",
    "install_and_import",
    "publish_step",
    "ConfigurationError",
    "Credentials",
    "Job",
    "JobState",
    "Run",
    "RunResult",
    "Step",
    "Triggers",
    "Workflow",
    "CancelToken",
    "load_workflow",
    "run_pipeline",
]
