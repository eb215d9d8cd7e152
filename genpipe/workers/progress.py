"""
Stage Progress Reporter
Turns provider activity into a normalized progress stream.

Providers give no intermediate progress, so while a stage's work is in
flight the reporter emits estimated progress proportional to the elapsed
fraction of the stage's expected duration, held below 100 until the work
returns. Exactly 100 is written once the work finishes, before the caller
moves to the next stage.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Optional, Tuple, TypeVar

from genpipe.core.config import Settings, settings as default_settings
from genpipe.schemas.job import GenerationOptions, Job, JobProgress, JobStatus, JobType
from genpipe.workers.store import JobStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Ceiling for estimated progress while work is still running
ESTIMATE_CEILING = 99.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def estimate_generation_seconds(options: GenerationOptions) -> float:
    """Expected wall time of the running stage for one job (or one scene)."""
    if options.type == JobType.IMAGE:
        return 8.0 + options.num_images * 3.0
    if options.type == JobType.VIDEO:
        duration = options.duration or 5.0
        per_clip = 15.0 + duration * 4.0
        if options.is_scene_based:
            return per_clip
        return per_clip * options.num_videos
    return 25.0


def estimate_stage_seconds(options: GenerationOptions, stage: JobStatus, settings: Settings = default_settings) -> float:
    if stage == JobStatus.RUNNING:
        seconds = estimate_generation_seconds(options)
        if options.is_scene_based:
            seconds *= len(options.scene_prompts)
        return seconds
    if stage == JobStatus.UPSCALING:
        return settings.UPSCALE_STAGE_SECONDS
    if stage == JobStatus.ENCODING:
        return settings.ENCODE_STAGE_SECONDS
    return 0.0


def estimate_total_seconds(options: GenerationOptions, settings: Settings = default_settings) -> float:
    """Expected wall time of a whole job, queued to completed."""
    return sum(estimate_stage_seconds(options, s, settings) for s in stage_sequence(options))


def stage_sequence(options: GenerationOptions) -> Tuple[JobStatus, ...]:
    """Ordered non-terminal stages a job of this type passes through."""
    if options.type == JobType.THREE_D:
        return (JobStatus.RUNNING,)
    if options.type == JobType.VIDEO:
        return (JobStatus.RUNNING, JobStatus.UPSCALING, JobStatus.ENCODING)
    return (JobStatus.RUNNING, JobStatus.UPSCALING)


def remaining_after(options: GenerationOptions, stage: JobStatus, settings: Settings = default_settings) -> float:
    """Expected seconds for the stages that follow `stage`."""
    stages = stage_sequence(options)
    if stage not in stages:
        return 0.0
    later = stages[stages.index(stage) + 1:]
    return sum(estimate_stage_seconds(options, s, settings) for s in later)


class StageProgressReporter:
    """Writes stage transitions and progress ticks to the job store."""

    def __init__(self, store: JobStore, settings: Settings = default_settings):
        self.store = store
        self.settings = settings

    async def enter_stage(
        self,
        job_id: str,
        stage: JobStatus,
        message: str,
        total_steps: Optional[int] = None,
        eta_seconds: Optional[int] = None,
    ) -> Job:
        """Transition the job to `stage` with progress reset to 0."""
        def mutate(job: Job):
            job.status = stage
            job.progress = JobProgress(
                stage=stage,
                progress=0.0,
                current_step=0 if total_steps else None,
                total_steps=total_steps,
                eta_seconds=eta_seconds,
                message=message,
            )
            if job.started_at is None:
                job.started_at = utcnow()

        job = await self.store.update(job_id, mutate)
        logger.info(f"[{job_id}] -> {stage.value}: {message}")
        return job

    async def report(
        self,
        job_id: str,
        stage: JobStatus,
        progress: float,
        message: Optional[str] = None,
        current_step: Optional[int] = None,
        total_steps: Optional[int] = None,
        eta_seconds: Optional[int] = None,
        scene_index: Optional[int] = None,
        scene_progress: Optional[float] = None,
    ) -> Job:
        """
        Record progress within the current stage.

        Values are clamped to [0, 100] and never lower than what the stage
        already reported. Ticks for a stage the job has left are ignored.
        """
        def mutate(job: Job):
            if job.status != stage:
                return False
            value = max(job.progress.progress, min(100.0, max(0.0, progress)))
            job.progress = JobProgress(
                stage=stage,
                progress=value,
                current_step=current_step,
                total_steps=total_steps,
                eta_seconds=eta_seconds,
                message=message or job.progress.message,
            )
            if scene_index is not None and scene_progress is not None and job.manifest and job.manifest.scene_progress:
                entry = job.manifest.scene_progress.get(scene_index)
                if entry is not None:
                    entry.progress = max(entry.progress, min(100.0, scene_progress))

        return await self.store.update(job_id, mutate)

    async def track(
        self,
        job_id: str,
        stage: JobStatus,
        work: Awaitable[T],
        expected_seconds: float,
        label: str,
        total_steps: Optional[int] = None,
        span: Tuple[float, float] = (0.0, 100.0),
        scene_index: Optional[int] = None,
        downstream_seconds: float = 0.0,
    ) -> T:
        """
        Await `work` while emitting estimated progress for it.

        `span` maps the work's own 0..100 onto a slice of the stage's progress,
        so a stage made of several sequential pieces (scenes) still climbs
        monotonically. When the work succeeds the end of the span is written;
        when it fails nothing more is written and the exception propagates.
        """
        start, end = span
        expected = max(expected_seconds, 1e-6)
        started = time.monotonic()

        def fields(fraction: float) -> dict:
            progress = start + (end - start) * fraction
            remaining = expected * (1.0 - fraction) + downstream_seconds
            values = {
                "progress": progress,
                "eta_seconds": int(round(remaining)),
                "total_steps": total_steps,
                "scene_index": scene_index,
                "scene_progress": fraction * 100.0,
            }
            if total_steps:
                step = int(fraction * total_steps)
                values["current_step"] = step
                values["message"] = f"{label}... Step {step}/{total_steps}"
            else:
                values["message"] = f"{label}... {int(progress)}%"
            return values

        async def ticker():
            last = -1.0
            while True:
                await asyncio.sleep(self.settings.PROGRESS_TICK_INTERVAL)
                elapsed = time.monotonic() - started
                fraction = min(elapsed / expected, ESTIMATE_CEILING / 100.0)
                if fraction <= last:
                    continue
                last = fraction
                await self.report(job_id, stage, **fields(fraction))

        tick_task = asyncio.create_task(ticker())
        try:
            result = await work
        finally:
            tick_task.cancel()
            try:
                await tick_task
            except asyncio.CancelledError:
                pass

        await self.report(job_id, stage, **fields(1.0))
        return result


__all__ = [
    "StageProgressReporter",
    "estimate_generation_seconds",
    "estimate_stage_seconds",
    "estimate_total_seconds",
    "stage_sequence",
    "remaining_after",
    "utcnow",
]
