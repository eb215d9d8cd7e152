"""
Job State Machine
Advances one job through its stages:

    queued -> running -> upscaling -> encoding -> completed

3d jobs skip upscaling and encoding, image and cad jobs skip encoding.
Scene-based video jobs generate every scene while running, upscale the
scene artifacts, then stitch them while encoding. Any exception moves the
job to failed from whatever stage it was in.
"""

import asyncio
import logging
from datetime import timedelta
from typing import List, Optional

from genpipe.core.config import Settings, settings as default_settings
from genpipe.schemas.job import GenerationOptions, Job, JobProgress, JobStatus, JobType
from genpipe.services.provider import GenerationProvider
from genpipe.services.stitching import StitchProvider
from genpipe.workers.base import BaseWorker, PipelineError, ProviderError, StitchError, bounded_call
from genpipe.workers.manifest import seal_manifest
from genpipe.workers.progress import (
    StageProgressReporter,
    estimate_generation_seconds,
    estimate_stage_seconds,
    remaining_after,
    utcnow,
)
from genpipe.workers.scenes import SceneOrchestrator, incomplete_scenes
from genpipe.workers.stitcher import Stitcher
from genpipe.workers.store import JobStore

logger = logging.getLogger(__name__)


def output_count(options: GenerationOptions) -> int:
    if options.type == JobType.IMAGE:
        return options.num_images
    if options.type == JobType.VIDEO:
        return options.num_videos
    return 1


def error_message(error: BaseException) -> str:
    if isinstance(error, PipelineError):
        return error.message
    return str(error) or type(error).__name__


class JobStateMachine(BaseWorker):
    """Runs jobs and scene regenerations against the job store."""

    TASK_NAME = "generation"

    def __init__(
        self,
        store: JobStore,
        provider: GenerationProvider,
        stitch_provider: StitchProvider,
        settings: Settings = default_settings,
    ):
        self.store = store
        self.provider = provider
        self.settings = settings
        self.reporter = StageProgressReporter(store, settings)
        self.scenes = SceneOrchestrator(store, provider, self.reporter, settings)
        self.stitcher = Stitcher(store, stitch_provider, self.reporter, provider.fingerprint, settings)

    def _timeout(self, options: GenerationOptions) -> float:
        return options.timeout_seconds or self.settings.PROVIDER_TIMEOUT_SECONDS

    def _steps(self, options: GenerationOptions) -> int:
        return options.steps or self.settings.DEFAULT_STEPS

    def _eta(self, options: GenerationOptions, stage: JobStatus) -> int:
        seconds = estimate_stage_seconds(options, stage, self.settings) + remaining_after(options, stage, self.settings)
        return int(round(seconds))

    # ── Full run ────────────────────────────────────────────────────────────

    async def run(self, job_id: str) -> Job:
        """Run a queued job to a terminal state. Never raises for job-level failures."""
        job = await self.store.require(job_id)
        if job.status != JobStatus.QUEUED:
            logger.warning(f"[{job_id}] Not queued (status: {job.status.value}); skipping")
            return job

        started = self._log_start(
            job_id,
            type=job.options.type.value,
            scenes=len(job.options.scene_prompts),
        )
        try:
            if job.options.is_scene_based:
                job = await self._run_scenes(job)
            else:
                job = await self._run_single(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log_error(job_id, started, e)
            return await self.fail(job_id, e)

        self._log_complete(job_id, started, f"{len(job.outputs)} output(s)")
        return job

    async def _run_single(self, job: Job) -> Job:
        options = job.options

        # Step 1: Generate
        outputs = await self._generate_outputs(job)

        # Step 2: Upscale (3d has no upscaling stage)
        if options.type != JobType.THREE_D:
            outputs = await self._upscale(job.id, options, outputs)

        # Step 3: Encode
        if options.type == JobType.VIDEO:
            outputs = await self._encode(job.id, options, outputs)

        # Step 4: Complete
        return await self.complete(job.id, outputs)

    async def _run_scenes(self, job: Job) -> Job:
        options = job.options
        count = len(options.scene_prompts)

        # Step 1: Generate every scene in order
        await self.reporter.enter_stage(
            job.id,
            JobStatus.RUNNING,
            f"Generating {count} scenes...",
            total_steps=self._steps(options),
            eta_seconds=self._eta(options, JobStatus.RUNNING),
        )
        await self.scenes.init_scenes(job.id)
        await self.scenes.generate_all(job.id, downstream_seconds=remaining_after(options, JobStatus.RUNNING, self.settings))

        # Step 2: Upscale scene artifacts
        await self._upscale_scenes(job.id, options)

        # Step 3: Stitch (completes the job)
        return await self._stitch(job.id, options)

    async def _generate_outputs(self, job: Job) -> List[str]:
        options = job.options
        count = output_count(options)
        total_steps = self._steps(options)
        await self.reporter.enter_stage(
            job.id,
            JobStatus.RUNNING,
            "Starting generation...",
            total_steps=total_steps,
            eta_seconds=self._eta(options, JobStatus.RUNNING),
        )

        per_output = estimate_generation_seconds(options) / count
        downstream = remaining_after(options, JobStatus.RUNNING, self.settings)
        noun = {JobType.IMAGE: "image", JobType.VIDEO: "video"}.get(options.type, "model")

        outputs = []
        for i in range(count):
            seed = options.seed + i if options.seed is not None else None
            label = f"Generating {noun} {i + 1}/{count}" if count > 1 else f"Generating {noun}"
            url = await self.reporter.track(
                job.id,
                JobStatus.RUNNING,
                bounded_call(
                    self.provider.generate(options.prompt, options, seed=seed),
                    timeout=self._timeout(options),
                    what=f"{noun.capitalize()} generation",
                ),
                expected_seconds=per_output,
                label=label,
                total_steps=total_steps,
                span=(100.0 * i / count, 100.0 * (i + 1) / count),
                downstream_seconds=(count - i - 1) * per_output + downstream,
            )
            if not url:
                raise ProviderError(f"{noun.capitalize()} generation returned no artifact")
            outputs.append(url)
        return outputs

    async def _upscale(self, job_id: str, options: GenerationOptions, outputs: List[str]) -> List[str]:
        message = f"Upscaling {options.upscale_quality}x..." if options.upscale else "Finalizing outputs..."
        await self.reporter.enter_stage(
            job_id, JobStatus.UPSCALING, message,
            eta_seconds=self._eta(options, JobStatus.UPSCALING),
        )

        async def upscale_each() -> List[str]:
            results = []
            for url in outputs:
                result = await bounded_call(
                    self.provider.upscale(url, options),
                    timeout=self._timeout(options),
                    what="Upscale",
                )
                results.append(result or url)
            return results

        return await self.reporter.track(
            job_id,
            JobStatus.UPSCALING,
            upscale_each(),
            expected_seconds=self.settings.UPSCALE_STAGE_SECONDS,
            label="Upscaling" if options.upscale else "Finalizing",
            downstream_seconds=remaining_after(options, JobStatus.UPSCALING, self.settings),
        )

    async def _encode(self, job_id: str, options: GenerationOptions, outputs: List[str]) -> List[str]:
        await self.reporter.enter_stage(
            job_id, JobStatus.ENCODING, "Encoding video...",
            eta_seconds=self._eta(options, JobStatus.ENCODING),
        )

        async def encode_each() -> List[str]:
            results = []
            for url in outputs:
                result = await bounded_call(
                    self.provider.encode(url, options),
                    timeout=self._timeout(options),
                    what="Encode",
                )
                results.append(result or url)
            return results

        return await self.reporter.track(
            job_id,
            JobStatus.ENCODING,
            encode_each(),
            expected_seconds=self.settings.ENCODE_STAGE_SECONDS,
            label="Encoding",
        )

    async def _upscale_scenes(self, job_id: str, options: GenerationOptions, indices: Optional[List[int]] = None):
        count = len(indices) if indices is not None else len(options.scene_prompts)
        message = f"Upscaling {count} scene(s) {options.upscale_quality}x..." if options.upscale else "Preparing scenes..."
        await self.reporter.enter_stage(
            job_id, JobStatus.UPSCALING, message,
            eta_seconds=self._eta(options, JobStatus.UPSCALING),
        )
        await self.reporter.track(
            job_id,
            JobStatus.UPSCALING,
            self.scenes.upscale_all(job_id, indices),
            expected_seconds=self.settings.UPSCALE_STAGE_SECONDS,
            label="Upscaling scenes" if options.upscale else "Preparing scenes",
            downstream_seconds=remaining_after(options, JobStatus.UPSCALING, self.settings),
        )

    async def _stitch(self, job_id: str, options: GenerationOptions) -> Job:
        await self.reporter.enter_stage(
            job_id, JobStatus.ENCODING, f"Stitching {len(options.scene_prompts)} scenes...",
            eta_seconds=self._eta(options, JobStatus.ENCODING),
        )
        return await self.stitcher.stitch(job_id)

    # ── Regeneration ────────────────────────────────────────────────────────

    async def regenerate(self, job_id: str, index: int, prompt: Optional[str] = None) -> Job:
        """
        Redo one scene of a finished job, then stitch all scenes again.

        The caller has already validated the request and holds the job's
        regeneration claim. Only sceneProgress[index] is reset.
        """
        job = await self.store.require(job_id)
        options = job.options
        started = self._log_start(job_id, scene_index=index, new_prompt=prompt is not None)

        def reopen(job: Job):
            self.scenes.reset_entry(job, index, prompt)
            job.status = JobStatus.RUNNING
            job.progress = JobProgress(
                stage=JobStatus.RUNNING,
                progress=0.0,
                current_step=0,
                total_steps=self._steps(options),
                eta_seconds=int(round(estimate_generation_seconds(options) + remaining_after(options, JobStatus.RUNNING, self.settings))),
                message=f"Regenerating scene {index + 1}...",
            )
            job.outputs = []
            job.error = None
            job.completed_at = None
            job.expires_at = None
            job.purged_at = None

        try:
            # Step 1: Reset the scene and re-enter running
            await self.store.update(job_id, reopen)

            # Step 2: Generate that scene only
            await self.scenes.generate_scene(
                job_id, index,
                downstream_seconds=remaining_after(options, JobStatus.RUNNING, self.settings),
            )

            # Step 3: Every other scene must still be usable
            job = await self.store.require(job_id)
            missing = incomplete_scenes(job, exclude=index)
            if missing:
                raise StitchError(
                    f"Cannot stitch: scenes {', '.join(str(i) for i in missing)} are not completed",
                    scene_index=missing[0],
                )

            # Step 4: Upscale the new scene
            await self._upscale_scenes(job_id, options, indices=[index])

            # Step 5: Stitch everything again
            job = await self._stitch(job_id, options)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log_error(job_id, started, e)
            return await self.fail(job_id, e)

        self._log_complete(job_id, started, f"scene {index} regenerated")
        return job

    async def restitch(self, job_id: str) -> Job:
        """
        Stitch the existing scene artifacts again without regenerating any.

        Used after a stitch failure; the caller holds the job's claim and has
        checked that every scene is completed.
        """
        job = await self.store.require(job_id)
        options = job.options
        started = self._log_start(job_id, restitch=True)

        def reopen(job: Job):
            job.status = JobStatus.ENCODING
            job.progress = JobProgress(
                stage=JobStatus.ENCODING,
                progress=0.0,
                eta_seconds=self._eta(options, JobStatus.ENCODING),
                message=f"Re-stitching {len(options.scene_prompts)} scenes...",
            )
            job.outputs = []
            job.error = None
            job.completed_at = None
            job.expires_at = None
            job.purged_at = None

        try:
            await self.store.update(job_id, reopen)
            job = await self.stitcher.stitch(job_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log_error(job_id, started, e)
            return await self.fail(job_id, e)

        self._log_complete(job_id, started, "re-stitched")
        return job


    # ── Terminal transitions ────────────────────────────────────────────────

    async def complete(self, job_id: str, outputs: List[str]) -> Job:
        if not outputs:
            raise ProviderError("No artifacts produced")

        def mutate(job: Job):
            now = utcnow()
            job.outputs = list(outputs)
            seal_manifest(job, self.provider.fingerprint, self.settings.PIPELINE_VERSION, now)
            job.status = JobStatus.COMPLETED
            job.error = None
            job.progress = JobProgress(stage=JobStatus.COMPLETED, progress=100.0, eta_seconds=0, message="Completed")
            job.completed_at = now
            job.expires_at = now + timedelta(seconds=self.settings.ARTIFACT_TTL_SECONDS)

        job = await self.store.update(job_id, mutate)
        logger.info(f"[{job_id}] -> completed with {len(outputs)} output(s)")
        return job

    async def fail(self, job_id: str, error: BaseException) -> Job:
        """Move the job to failed from its current stage; outputs are cleared."""
        message = error_message(error)

        def mutate(job: Job):
            job.status = JobStatus.FAILED
            job.error = message
            job.outputs = []
            job.progress = JobProgress(
                stage=JobStatus.FAILED,
                progress=job.progress.progress,
                current_step=job.progress.current_step,
                total_steps=job.progress.total_steps,
                message=f"Error: {message}",
            )
            job.completed_at = utcnow()
            job.expires_at = None
            if job.manifest is not None:
                job.manifest.regenerating_scene_index = None

        job = await self.store.update(job_id, mutate)
        logger.error(f"[{job_id}] -> failed: {message}")
        return job


__all__ = ["JobStateMachine", "output_count", "error_message"]
