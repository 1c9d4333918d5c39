from .dsl import sh, patch, stage, pipeline, configure_make_install, StageBuilder, build
from .runner import run_pipeline, plan_pipeline, load_pipeline
from .model import Environment, Patch, Pipeline, PipelineResult, Stage, StageResult, StageStatus, Step
from .errors import (
    BuildError,
    ConfirmationDeclined,
    ExtractError,
    FetchError,
    HPCBuildError,
    PatchError,
    PreconditionError,
)

__all__ = [
    "sh", "patch", "stage", "pipeline", "configure_make_install", "StageBuilder", "build",
    "run_pipeline", "plan_pipeline", "load_pipeline",
    "Environment", "Patch", "Pipeline", "PipelineResult", "Stage", "StageResult", "StageStatus", "Step",
    "BuildError", "ConfirmationDeclined", "ExtractError", "FetchError", "HPCBuildError",
    "PatchError", "PreconditionError",
]
