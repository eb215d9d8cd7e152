"""
Job Schemas
Pydantic models for jobs, their progress and their manifest.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys, accepting either form."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobType(str, Enum):
    """Kind of artifact a job produces; fixes its stage sequence."""
    IMAGE = "image"
    VIDEO = "video"
    THREE_D = "3d"
    CAD = "cad"


class JobStatus(str, Enum):
    """Job status enum."""
    QUEUED = "queued"
    RUNNING = "running"
    UPSCALING = "upscaling"
    ENCODING = "encoding"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class SceneStatus(str, Enum):
    """Per-scene status inside a scene-based video job."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ThreeDMode(str, Enum):
    NONE = "none"
    STEREOSCOPIC = "stereoscopic"
    OBJECT = "object"


class GenerationOptions(CamelModel):
    """Immutable generation parameters for one job."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    prompt: str = Field(..., description="Main generation prompt")
    negative_prompt: Optional[str] = None
    type: JobType = JobType.IMAGE

    # Image/Video options
    width: int = Field(1280, ge=64, le=8192)
    height: int = Field(720, ge=64, le=8192)
    aspect_ratio: Optional[str] = None

    # Video options
    duration: Optional[float] = Field(None, gt=0, description="Clip length in seconds")
    fps: Optional[int] = Field(None, gt=0)
    num_videos: int = Field(1, ge=1, le=8)
    scene_prompts: List[str] = Field(default_factory=list, description="One prompt per scene")

    # 3D options
    three_d_mode: ThreeDMode = ThreeDMode.NONE

    # Advanced
    seed: Optional[int] = Field(None, ge=0)
    steps: Optional[int] = Field(None, ge=1, le=500)
    cfg_scale: Optional[float] = None
    num_images: int = Field(1, ge=1, le=8)
    upscale: bool = False
    upscale_quality: int = 2

    # Inputs and consistency
    image_url: Optional[str] = None
    reference_images: List[str] = Field(default_factory=list)
    group_id: Optional[str] = Field(None, description="Shared id for scenes of one storyboard")

    # Caller-supplied bound on each provider call
    timeout_seconds: Optional[float] = Field(None, gt=0)

    @field_validator("prompt")
    @classmethod
    def prompt_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("prompt must not be empty")
        return v.strip()

    @field_validator("scene_prompts")
    @classmethod
    def scene_prompts_not_blank(cls, v: List[str]) -> List[str]:
        cleaned = []
        for i, p in enumerate(v):
            if not p or not p.strip():
                raise ValueError(f"scene prompt {i} must not be empty")
            cleaned.append(p.strip())
        return cleaned

    @field_validator("upscale_quality")
    @classmethod
    def upscale_quality_supported(cls, v: int) -> int:
        if v not in (2, 4, 8):
            raise ValueError("upscaleQuality must be 2, 4 or 8")
        return v

    @model_validator(mode="after")
    def scenes_only_for_video(self):
        if self.scene_prompts and self.type != JobType.VIDEO:
            raise ValueError("scenePrompts are only supported for video jobs")
        return self

    @property
    def is_scene_based(self) -> bool:
        return self.type == JobType.VIDEO and len(self.scene_prompts) > 0


class JobProgress(CamelModel):
    """Latest progress snapshot for a job."""
    stage: JobStatus = JobStatus.QUEUED
    progress: float = Field(0.0, ge=0, le=100)
    current_step: Optional[int] = None
    total_steps: Optional[int] = None
    eta_seconds: Optional[int] = None
    message: str = ""


class SceneProgress(CamelModel):
    """State of one scene, keyed by its index in the manifest."""
    status: SceneStatus = SceneStatus.PENDING
    progress: float = 0.0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    artifact_url: Optional[str] = None
    prompt: Optional[str] = None  # regeneration override
    error: Optional[str] = None


class JobManifest(CamelModel):
    """Durable summary record; sealed once the job completes."""
    job_id: str
    prompt: str
    negative_prompt: Optional[str] = None
    type: JobType
    settings: GenerationOptions
    provider_fingerprint: Optional[str] = None
    pipeline_version: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    scene_prompts: Optional[List[str]] = None
    scene_progress: Optional[Dict[int, SceneProgress]] = None
    current_scene_index: Optional[int] = None
    regenerating_scene_index: Optional[int] = None


class Job(CamelModel):
    """The unit of orchestration."""
    id: str
    options: GenerationOptions
    status: JobStatus = JobStatus.QUEUED
    progress: JobProgress = Field(default_factory=lambda: JobProgress(message="Waiting in queue..."))
    outputs: List[str] = Field(default_factory=list)
    manifest: Optional[JobManifest] = None
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    purged_at: Optional[datetime] = None  # stored artifacts deleted after expiry

    @property
    def type(self) -> JobType:
        return self.options.type


class Scene(CamelModel):
    """Projected view of one scene of a job."""
    index: int
    prompt: str
    status: SceneStatus
    progress: float = 0.0
    artifact_url: Optional[str] = None


class JobSnapshot(CamelModel):
    """What observers receive on every progress tick and stage transition."""
    job_id: str
    status: JobStatus
    progress: float
    current_step: Optional[int] = None
    total_steps: Optional[int] = None
    eta_seconds: Optional[int] = None
    message: Optional[str] = None
    error: Optional[str] = None
    outputs: List[str] = Field(default_factory=list)

    @classmethod
    def from_job(cls, job: Job) -> "JobSnapshot":
        return cls(
            job_id=job.id,
            status=job.status,
            progress=job.progress.progress,
            current_step=job.progress.current_step,
            total_steps=job.progress.total_steps,
            eta_seconds=job.progress.eta_seconds,
            message=job.progress.message,
            error=job.error,
            outputs=list(job.outputs),
        )
