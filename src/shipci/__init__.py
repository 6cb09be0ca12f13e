from .dsl import job, sh, call, cache, optional, upload_artifact, download_artifacts, asset, release, wf, JobBuilder, build
from .conditions import success, failure, always, ref_matches, ref_is, step_succeeded, resource_available
from .runner import run_workflow, load_workflow
from .model import Job, Step, Target, TriggerContext, Workflow
from .errors import ShipCIError, GraphError, StepFailure, ArtifactError, CorruptionError, JobTimeout

__all__ = [
    "job", "sh", "call", "cache", "optional", "upload_artifact", "download_artifacts",
    "asset", "release", "wf", "JobBuilder", "build",
    "success", "failure", "always", "ref_matches", "ref_is", "step_succeeded", "resource_available",
    "run_workflow", "load_workflow",
    "Job", "Step", "Target", "TriggerContext", "Workflow",
    "ShipCIError", "GraphError", "StepFailure", "ArtifactError", "CorruptionError", "JobTimeout",
]
