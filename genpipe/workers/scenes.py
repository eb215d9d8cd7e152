"""
Scene Orchestrator
Fans a scene-based video job out into ordered per-scene generations and
keeps each scene's state in the job manifest.

Scenes share one seed so the storyboard stays visually consistent, and
each scene is conditioned on the previous scene's artifact when one exists.
"""

import hashlib
import logging
from typing import List, Optional, Tuple

from genpipe.core.config import Settings, settings as default_settings
from genpipe.schemas.job import Job, JobStatus, Scene, SceneProgress, SceneStatus
from genpipe.services.provider import GenerationProvider
from genpipe.workers.base import ProviderError, ValidationError, bounded_call
from genpipe.workers.manifest import build_manifest
from genpipe.workers.progress import StageProgressReporter, estimate_generation_seconds, utcnow
from genpipe.workers.store import JobStore

logger = logging.getLogger(__name__)

SEED_MASK = 0x7FFFFFFF


def derive_seed(key: str) -> int:
    """Map any string to a stable seed in [0, 2**31 - 1]."""
    digest = hashlib.sha256(key.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big") & SEED_MASK


def scene_seed(job: Job) -> int:
    options = job.options
    if options.seed is not None:
        return options.seed
    return derive_seed(options.group_id or job.id)


def scene_prompt(job: Job, index: int) -> str:
    """Prompt for scene `index`: the regeneration override if any, else the original."""
    entry = None
    if job.manifest and job.manifest.scene_progress:
        entry = job.manifest.scene_progress.get(index)
    if entry is not None and entry.prompt:
        return entry.prompt
    return job.options.scene_prompts[index]


def project_scenes(job: Job) -> List[Scene]:
    """Scene views of a job, in index order; empty for non-scene jobs."""
    if not job.options.is_scene_based:
        return []
    entries = (job.manifest.scene_progress if job.manifest else None) or {}
    scenes = []
    for index in range(len(job.options.scene_prompts)):
        entry = entries.get(index) or SceneProgress()
        scenes.append(Scene(
            index=index,
            prompt=scene_prompt(job, index),
            status=entry.status,
            progress=entry.progress,
            artifact_url=entry.artifact_url,
        ))
    return scenes


def incomplete_scenes(job: Job, exclude: Optional[int] = None) -> List[int]:
    """Indices whose entry is not completed with an artifact."""
    entries = (job.manifest.scene_progress if job.manifest else None) or {}
    missing = []
    for index in range(len(job.options.scene_prompts)):
        if index == exclude:
            continue
        entry = entries.get(index)
        if entry is None or entry.status != SceneStatus.COMPLETED or not entry.artifact_url:
            missing.append(index)
    return missing


class SceneOrchestrator:
    """Per-scene generation, upscaling and regeneration bookkeeping."""

    def __init__(
        self,
        store: JobStore,
        provider: GenerationProvider,
        reporter: StageProgressReporter,
        settings: Settings = default_settings,
    ):
        self.store = store
        self.provider = provider
        self.reporter = reporter
        self.settings = settings

    def _timeout(self, job: Job) -> float:
        return job.options.timeout_seconds or self.settings.PROVIDER_TIMEOUT_SECONDS

    async def init_scenes(self, job_id: str) -> Job:
        """Create the manifest with every scene pending; existing manifests are kept."""
        def mutate(job: Job):
            if job.manifest is not None and job.manifest.scene_progress:
                return False
            job.manifest = build_manifest(job)

        job = await self.store.update(job_id, mutate)
        logger.info(f"[{job_id}] Decomposed into {len(job.options.scene_prompts)} scenes")
        return job

    async def generate_all(self, job_id: str, downstream_seconds: float = 0.0) -> Job:
        """Generate every scene in index order; stops at the first failure."""
        job = await self.store.require(job_id)
        count = len(job.options.scene_prompts)
        for index in range(count):
            span = (100.0 * index / count, 100.0 * (index + 1) / count)
            remaining = (count - index - 1) * estimate_generation_seconds(job.options) + downstream_seconds
            await self.generate_scene(job_id, index, span=span, downstream_seconds=remaining)
        return await self.store.require(job_id)

    async def generate_scene(
        self,
        job_id: str,
        index: int,
        span: Tuple[float, float] = (0.0, 100.0),
        downstream_seconds: float = 0.0,
    ) -> str:
        """
        Generate one scene and record its artifact.

        Raises:
            ProviderError: naming the scene index; the scene entry is marked
            failed first, and no other entry is touched.
        """
        def start(job: Job):
            entry = job.manifest.scene_progress[index]
            entry.status = SceneStatus.RUNNING
            entry.progress = 0.0
            entry.started_at = utcnow()
            entry.completed_at = None
            entry.error = None
            job.manifest.current_scene_index = index

        job = await self.store.update(job_id, start)
        count = len(job.options.scene_prompts)
        prompt = scene_prompt(job, index)
        seed = scene_seed(job)
        reference = self._reference_for(job, index)
        logger.info(f"[{job_id}] Scene {index + 1}/{count} | seed={seed} | reference={'yes' if reference else 'no'}")

        call = bounded_call(
            self.provider.generate(prompt, job.options, reference_artifact=reference, seed=seed),
            timeout=self._timeout(job),
            what=f"Scene {index} generation",
            scene_index=index,
        )
        try:
            url = await self.reporter.track(
                job_id,
                JobStatus.RUNNING,
                call,
                expected_seconds=estimate_generation_seconds(job.options),
                label=f"Generating scene {index + 1}/{count}",
                total_steps=job.options.steps or self.settings.DEFAULT_STEPS,
                span=span,
                scene_index=index,
                downstream_seconds=downstream_seconds,
            )
            if not url:
                raise ProviderError(f"Scene {index} generation returned no artifact", scene_index=index)
        except ProviderError as e:
            await self._mark_failed(job_id, index, e.message)
            if e.scene_index == index:
                raise
            raise ProviderError(f"Scene {index} generation failed: {e.message}", scene_index=index) from e

        def finish(job: Job):
            entry = job.manifest.scene_progress[index]
            entry.status = SceneStatus.COMPLETED
            entry.progress = 100.0
            entry.artifact_url = url
            entry.completed_at = utcnow()

        await self.store.update(job_id, finish)
        logger.info(f"[{job_id}] Scene {index + 1}/{count} completed")
        return url

    async def upscale_scene(self, job_id: str, index: int) -> str:
        """Run the provider's upscale on one completed scene and record the new artifact."""
        job = await self.store.require(job_id)
        entry = job.manifest.scene_progress[index]
        try:
            url = await bounded_call(
                self.provider.upscale(entry.artifact_url, job.options),
                timeout=self._timeout(job),
                what=f"Scene {index} upscale",
                scene_index=index,
            )
        except ProviderError as e:
            if e.scene_index == index:
                raise
            raise ProviderError(f"Scene {index} upscale failed: {e.message}", scene_index=index) from e
        if url and url != entry.artifact_url:
            def record(job: Job):
                job.manifest.scene_progress[index].artifact_url = url

            await self.store.update(job_id, record)
        return url or entry.artifact_url

    async def upscale_all(self, job_id: str, indices: Optional[List[int]] = None):
        job = await self.store.require(job_id)
        targets = indices if indices is not None else list(range(len(job.options.scene_prompts)))
        for index in targets:
            await self.upscale_scene(job_id, index)

    def _reference_for(self, job: Job, index: int) -> Optional[str]:
        if index == 0:
            return None
        previous = job.manifest.scene_progress.get(index - 1)
        if previous is not None and previous.status == SceneStatus.COMPLETED and previous.artifact_url:
            return previous.artifact_url
        return None

    async def _mark_failed(self, job_id: str, index: int, error: str):
        def mutate(job: Job):
            entry = job.manifest.scene_progress[index]
            entry.status = SceneStatus.FAILED
            entry.error = error
            entry.completed_at = utcnow()

        await self.store.update(job_id, mutate)
        logger.warning(f"[{job_id}] Scene {index} failed: {error}")

    # ── Regeneration ────────────────────────────────────────────────────────

    @staticmethod
    def validate_regeneration(job: Job, index: int, prompt: Optional[str] = None) -> Optional[str]:
        """
        Check a regeneration request against the job.

        Returns the cleaned prompt override (or None).

        Raises:
            ValidationError: not a scene job, index out of range, or blank prompt
        """
        if not job.options.is_scene_based:
            raise ValidationError(f"Job {job.id} has no scenes", {"job_id": job.id})
        count = len(job.options.scene_prompts)
        if not 0 <= index < count:
            raise ValidationError(
                f"Scene index {index} out of range [0, {count})",
                {"job_id": job.id, "scene_index": index},
            )
        if prompt is not None:
            if not prompt.strip():
                raise ValidationError("Scene prompt must not be empty", {"scene_index": index})
            return prompt.strip()
        return None

    @staticmethod
    def reset_entry(job: Job, index: int, prompt: Optional[str] = None):
        """Put one scene back to pending in place, keeping or replacing its prompt override."""
        if job.manifest is None or not job.manifest.scene_progress:
            job.manifest = build_manifest(job)
        previous = job.manifest.scene_progress.get(index) or SceneProgress()
        job.manifest.scene_progress[index] = SceneProgress(prompt=prompt or previous.prompt)
        job.manifest.regenerating_scene_index = index


__all__ = [
    "SceneOrchestrator",
    "derive_seed",
    "scene_seed",
    "scene_prompt",
    "project_scenes",
    "incomplete_scenes",
]
