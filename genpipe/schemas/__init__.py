# Pydantic schemas package
from genpipe.schemas.job import (
    JobType, JobStatus, SceneStatus, ThreeDMode,
    GenerationOptions, JobProgress, SceneProgress, JobManifest,
    Job, Scene, JobSnapshot
)
from genpipe.schemas.api import (
    SubmitJobRequest, SubmitJobResponse, CancelJobResponse,
    RegenerateSceneRequest, RegenerateSceneResponse, RestitchResponse, QueueStats
)

__all__ = [
    "JobType", "JobStatus", "SceneStatus", "ThreeDMode",
    "GenerationOptions", "JobProgress", "SceneProgress", "JobManifest",
    "Job", "Scene", "JobSnapshot",
    # API
    "SubmitJobRequest", "SubmitJobResponse", "CancelJobResponse",
    "RegenerateSceneRequest", "RegenerateSceneResponse", "RestitchResponse", "QueueStats"
]
