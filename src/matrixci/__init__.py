from .dsl import JobBuilder, build, cache_restore, cache_save, checkout, job, matrix, native_deps, only, sh, toolchain, wf
from .errors import ConfigurationError, ProvisionFailure, StepFailure
from .model import Event, Job, MatrixCell, PipelineRun, Step
from .orchestrator import load_workflow, run_pipeline
from .trigger import evaluate, parse_event

__all__ = [
    "job", "sh", "matrix", "wf", "only", "checkout", "toolchain", "native_deps",
    "cache_restore", "cache_save", "JobBuilder", "build",
    "run_pipeline", "load_workflow", "evaluate", "parse_event",
    "Event", "Job", "Step", "MatrixCell", "PipelineRun",
    "ConfigurationError", "ProvisionFailure", "StepFailure",
]
