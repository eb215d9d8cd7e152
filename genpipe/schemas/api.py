"""
API Schemas
Request and response bodies for the jobs API.
"""

from typing import Optional, Dict

from pydantic import Field

from genpipe.schemas.job import CamelModel, GenerationOptions, JobStatus


class SubmitJobRequest(GenerationOptions):
    """Generation options plus an optional caller-chosen job id."""
    job_id: Optional[str] = Field(None, description="Optional id; assigned if omitted")

    def to_options(self) -> GenerationOptions:
        return GenerationOptions(**self.model_dump(exclude={"job_id"}))


class SubmitJobResponse(CamelModel):
    job_id: str
    status: JobStatus
    queue_position: Optional[int] = None
    estimated_wait_seconds: Optional[int] = None
    message: str


class CancelJobResponse(CamelModel):
    job_id: str
    cancelled: bool


class RegenerateSceneRequest(CamelModel):
    """Optional replacement prompt; the scene's current prompt is reused when omitted."""
    scene_prompt: Optional[str] = None


class RegenerateSceneResponse(CamelModel):
    job_id: str
    scene_index: int
    accepted: bool
    message: str


class RestitchResponse(CamelModel):
    job_id: str
    accepted: bool
    message: str


class QueueStats(CamelModel):
    queued: int
    active: int
    workers: int
    max_size: int
    by_status: Dict[str, int] = Field(default_factory=dict)
