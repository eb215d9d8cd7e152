"""
Job Pipeline
Submission surface over the queue, the state machine and the store.

One JobPipeline is built per process (see build_pipeline) and shared by the
HTTP API and the CLI.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set

from genpipe.core.config import Settings, get_settings
from genpipe.schemas.job import GenerationOptions, Job, JobManifest, JobStatus, JobType, Scene
from genpipe.services.provider import GenerationProvider, get_generation_provider
from genpipe.services.stitching import StitchProvider, get_stitch_provider
from genpipe.services.storage import StorageService
from genpipe.workers.base import ValidationError
from genpipe.workers.events import EventChannel, Subscription, build_event_channel
from genpipe.workers.progress import utcnow
from genpipe.workers.queue import CANCELLED_MESSAGE, JobQueue
from genpipe.workers.scenes import SceneOrchestrator, incomplete_scenes, project_scenes
from genpipe.workers.state_machine import JobStateMachine
from genpipe.workers.store import JobStore, build_job_store

logger = logging.getLogger(__name__)


def as_utc(value: datetime) -> datetime:
    """SQLite hands datetimes back naive; they were written in UTC."""
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class RegenerationResult:
    accepted: bool
    reason: str = ""


class JobPipeline:
    """
    Features:
    - submit / cancel / regenerate_scene / restitch
    - job, manifest and scene lookups
    - per-job snapshot subscriptions
    - periodic purge of expired artifacts
    """

    def __init__(
        self,
        store: JobStore,
        provider: GenerationProvider,
        stitch_provider: StitchProvider,
        settings: Optional[Settings] = None,
        storage: Optional[StorageService] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.provider = provider
        self.stitch_provider = stitch_provider
        self.machine = JobStateMachine(store, provider, stitch_provider, self.settings)
        self.queue = JobQueue(
            store,
            self.machine.run,
            workers=self.settings.WORKER_COUNT,
            max_size=self.settings.QUEUE_MAX_SIZE,
            settings=self.settings,
        )
        self._storage = storage
        self._claimed: Set[str] = set()
        self._background: Set[asyncio.Task] = set()
        self._sweeper: Optional[asyncio.Task] = None

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def start(self):
        self.queue.start()
        if self.settings.EXPIRY_SWEEP_SECONDS > 0 and self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep(), name="genpipe-expiry-sweep")

    async def stop(self):
        await self.queue.stop()
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.store.channel.close()
        await self.provider.close()

    async def join(self):
        """Wait until the queue is drained and no regeneration or re-stitch is running."""
        await self.queue.join()
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ── Submission ──────────────────────────────────────────────────────────

    async def submit(self, options: GenerationOptions, job_id: Optional[str] = None) -> Job:
        return await self.queue.submit(options, job_id)

    async def cancel(self, job_id: str) -> bool:
        """Cancel a waiting job. Raises JobNotFoundError for unknown ids."""
        await self.store.require(job_id)
        return await self.queue.cancel(job_id)

    async def regenerate_scene(self, job_id: str, scene_index: int, scene_prompt: Optional[str] = None) -> RegenerationResult:
        """
        Start regenerating one scene in the background.

        Raises:
            JobNotFoundError: unknown job
            ValidationError: not a scene job, never ran, bad index or blank prompt

        Returns:
            RegenerationResult(accepted=False) when the job is still being
            processed or another regeneration of it is in flight.
        """
        job = await self.store.require(job_id)
        prompt = SceneOrchestrator.validate_regeneration(job, scene_index, scene_prompt)

        result = self._claim(job, lambda: self.machine.regenerate(job_id, scene_index, prompt), check=self._require_ran)
        if result.accepted:
            logger.info(f"[{job_id}] Regeneration of scene {scene_index} accepted")
            return RegenerationResult(True, f"Regenerating scene {scene_index}")
        return result

    async def restitch(self, job_id: str) -> RegenerationResult:
        """
        Stitch a finished job's scenes again, reusing their artifacts.

        Raises:
            JobNotFoundError: unknown job
            ValidationError: not a scene job, never ran, or scenes not completed
        """
        job = await self.store.require(job_id)
        if not job.options.is_scene_based:
            raise ValidationError(f"Job {job_id} has no scenes", {"job_id": job_id})

        def check(job: Job):
            self._require_ran(job)
            missing = incomplete_scenes(job)
            if missing:
                raise ValidationError(
                    f"Scenes {', '.join(str(i) for i in missing)} are not completed; regenerate them first",
                    {"job_id": job_id, "scenes": missing},
                )

        result = self._claim(job, lambda: self.machine.restitch(job_id), check=check)
        if result.accepted:
            logger.info(f"[{job_id}] Re-stitch accepted")
            return RegenerationResult(True, "Re-stitching scenes")
        return result

    @staticmethod
    def _require_ran(job: Job):
        if job.manifest is None or job.error == CANCELLED_MESSAGE:
            raise ValidationError(f"Job {job.id} never ran; nothing to redo", {"job_id": job.id})

    def _claim(
        self,
        job: Job,
        work: Callable[[], Awaitable[Job]],
        check: Optional[Callable[[Job], None]] = None,
    ) -> RegenerationResult:
        # No await between the check and the claim: exactly one caller wins.
        if job.id in self._claimed:
            return RegenerationResult(False, "Another regeneration of this job is in progress")
        if not job.status.is_terminal:
            return RegenerationResult(False, f"Job is still {job.status.value}")
        if check is not None:
            check(job)
        self._claimed.add(job.id)

        task = asyncio.create_task(self._rework(job.id, work))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return RegenerationResult(True)

    async def _rework(self, job_id: str, work: Callable[[], Awaitable[Job]]):
        try:
            await work()
        finally:
            self._claimed.discard(job_id)

    # ── Artifact expiry ─────────────────────────────────────────────────────

    @property
    def storage(self) -> StorageService:
        if self._storage is None:
            self._storage = StorageService(self.settings)
        return self._storage

    async def purge_expired(self, now: Optional[datetime] = None) -> List[str]:
        """
        Delete the stored artifacts of completed jobs whose expires_at has passed.

        The job records stay; purged_at marks them so they are not swept again.
        Returns the ids purged on this pass.
        """
        now = now or utcnow()
        purged = []

        def mark(job: Job):
            if job.status != JobStatus.COMPLETED or job.purged_at is not None or job.expires_at is None:
                return False
            job.purged_at = now

        for job in await self.store.list(status=JobStatus.COMPLETED, limit=None, oldest_first=True):
            if job.purged_at is not None or job.expires_at is None or as_utc(job.expires_at) > now:
                continue
            if job.id in self._claimed:
                continue
            try:
                await self.storage.delete_folder(f"jobs/{job.id}/")
                updated = await self.store.update(job.id, mark)
            except Exception as e:
                logger.error(f"[{job.id}] Failed to purge expired artifacts: {e}")
                continue
            if updated.purged_at is not None:
                purged.append(job.id)
                logger.info(f"[{job.id}] Purged artifacts expired at {job.expires_at}")
        return purged

    async def _sweep(self):
        interval = self.settings.EXPIRY_SWEEP_SECONDS
        logger.info(f"Artifact expiry sweep every {interval}s")
        while True:
            await asyncio.sleep(interval)
            try:
                purged = await self.purge_expired()
            except Exception as e:
                logger.exception(f"Artifact expiry sweep failed: {e}")
                continue
            if purged:
                logger.info(f"Expiry sweep purged {len(purged)} job(s)")

    # ── Queries ─────────────────────────────────────────────────────────────

    async def get_job(self, job_id: str) -> Job:
        return await self.store.require(job_id)

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[JobType] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Job]:
        return await self.store.list(status, job_type, limit, offset)

    async def manifest(self, job_id: str) -> Optional[JobManifest]:
        job = await self.store.require(job_id)
        return job.manifest

    async def scenes(self, job_id: str) -> List[Scene]:
        job = await self.store.require(job_id)
        return project_scenes(job)

    def subscribe(self, job_id: str) -> Subscription:
        return self.store.subscribe(job_id)

    async def watch(self, job_id: str) -> Subscription:
        """Subscribe and wait until delivery is live, so a read that follows misses nothing."""
        subscription = self.subscribe(job_id)
        try:
            await subscription.open()
        except Exception:
            await subscription.close()
            raise
        return subscription

    def position(self, job_id: str) -> Optional[int]:
        return self.queue.position(job_id)

    def estimate_wait_seconds(self, job_id: str) -> Optional[float]:
        return self.queue.estimate_wait_seconds(job_id)

    async def stats(self) -> Dict[str, object]:
        stats: Dict[str, object] = dict(self.queue.stats())
        stats["by_status"] = await self.store.count_by_status()
        return stats


def build_pipeline(
    settings: Optional[Settings] = None,
    store: Optional[JobStore] = None,
    channel: Optional[EventChannel] = None,
    provider: Optional[GenerationProvider] = None,
    stitch_provider: Optional[StitchProvider] = None,
) -> JobPipeline:
    """Wire a pipeline from settings; any part can be supplied instead."""
    settings = settings or get_settings()
    if store is None:
        store = build_job_store(settings, channel or build_event_channel(settings))
    return JobPipeline(
        store,
        provider or get_generation_provider(settings),
        stitch_provider or get_stitch_provider(settings),
        settings,
        StorageService(settings),
    )


__all__ = ["JobPipeline", "RegenerationResult", "build_pipeline"]
