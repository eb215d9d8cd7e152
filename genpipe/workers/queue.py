"""
Queue Management
FIFO admission of jobs into the pipeline with a fixed pool of asyncio workers.

Each worker pops the head of the FIFO and runs that job to a terminal state
before popping the next, so no job is ever processed twice concurrently.
"""

import asyncio
import logging
import math
import uuid
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from genpipe.core.config import Settings, settings as default_settings
from genpipe.schemas.job import GenerationOptions, Job, JobProgress, JobStatus
from genpipe.workers.base import QueueFullError
from genpipe.workers.progress import estimate_total_seconds, utcnow
from genpipe.workers.store import JobStore

logger = logging.getLogger(__name__)

Runner = Callable[[str], Awaitable[Any]]

CANCELLED_MESSAGE = "Cancelled by user"
RESTARTED_MESSAGE = "Interrupted by a worker restart"

IN_FLIGHT = (JobStatus.RUNNING, JobStatus.UPSCALING, JobStatus.ENCODING)


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex[:12]}"


class JobQueue:
    """
    Single-flight job queue.

    Features:
    - FIFO ordering across submissions
    - Bounded size (QUEUE_MAX_SIZE, 0 for unbounded)
    - Cancellation of jobs that have not started
    - Position and wait estimates for queued jobs
    - Recovery of persisted jobs when started over a durable store
    """

    def __init__(
        self,
        store: JobStore,
        runner: Runner,
        workers: int = 1,
        max_size: int = 0,
        settings: Settings = default_settings,
    ):
        self.store = store
        self.runner = runner
        self.worker_count = max(1, workers)
        self.max_size = max_size
        self.settings = settings

        self._pending: Deque[str] = deque()
        self._options: Dict[str, GenerationOptions] = {}
        self._active: Set[str] = set()
        self._reserved = 0
        self._cond = asyncio.Condition()
        self._tasks: List[asyncio.Task] = []
        self._restored = asyncio.Event()

    # ── Submission ──────────────────────────────────────────────────────────

    async def submit(self, options: GenerationOptions, job_id: Optional[str] = None) -> Job:
        """
        Create a queued job and append it to the FIFO.

        Raises:
            QueueFullError: the queue is at capacity; nothing was created
            ValidationError: job_id is already taken
        """
        if self.max_size and len(self._pending) + self._reserved >= self.max_size:
            raise QueueFullError(
                f"Queue is full ({self.max_size} jobs waiting)",
                {"max_size": self.max_size},
            )

        job = Job(id=job_id or new_job_id(), options=options, created_at=utcnow())
        self._reserved += 1
        try:
            job = await self.store.create(job)
        finally:
            self._reserved -= 1

        async with self._cond:
            self._pending.append(job.id)
            self._options[job.id] = options
            self._cond.notify_all()

        logger.info(f"Enqueued {options.type.value} job: {job.id} (position: {len(self._pending)})")
        return job

    async def cancel(self, job_id: str) -> bool:
        """
        Cancel a job that is still waiting.

        Returns:
            True if cancelled, False if it already started or is unknown
        """
        def mutate(job: Job):
            job.status = JobStatus.FAILED
            job.error = CANCELLED_MESSAGE
            job.outputs = []
            job.progress = JobProgress(stage=JobStatus.FAILED, progress=job.progress.progress, message=CANCELLED_MESSAGE)
            job.completed_at = utcnow()

        async with self._cond:
            if job_id not in self._pending:
                logger.warning(f"Cannot cancel job {job_id}: not waiting in queue")
                return False
            self._pending.remove(job_id)
            self._options.pop(job_id, None)
            await self.store.update(job_id, mutate)
            self._cond.notify_all()

        logger.info(f"Cancelled job: {job_id}")
        return True

    # ── Introspection ───────────────────────────────────────────────────────

    def position(self, job_id: str) -> Optional[int]:
        """1-based position among waiting jobs, or None if not waiting."""
        try:
            return self._pending.index(job_id) + 1
        except ValueError:
            return None

    def estimate_wait_seconds(self, job_id: str) -> Optional[float]:
        """Rough wait before the job starts: position x the job's own expected duration."""
        position = self.position(job_id)
        options = self._options.get(job_id)
        if position is None or options is None:
            return None
        rounds = math.ceil(position / self.worker_count)
        return rounds * estimate_total_seconds(options, self.settings)

    @property
    def queued(self) -> int:
        return len(self._pending)

    @property
    def active(self) -> int:
        return len(self._active)

    def stats(self) -> Dict[str, int]:
        return {
            "queued": self.queued,
            "active": self.active,
            "workers": self.worker_count,
            "max_size": self.max_size,
        }

    # ── Workers ─────────────────────────────────────────────────────────────

    def start(self):
        """Spawn the worker tasks; idempotent."""
        if self._tasks:
            return
        self._restored.clear()
        self._tasks = [asyncio.create_task(self._restore(), name="genpipe-queue-restore")] + [
            asyncio.create_task(self._work(n), name=f"genpipe-worker-{n}")
            for n in range(self.worker_count)
        ]
        logger.info(f"Started {self.worker_count} queue worker(s)")

    async def stop(self):
        """Cancel the worker tasks. Waiting jobs stay queued."""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Queue workers stopped")

    async def join(self):
        """Wait until nothing is waiting and nothing is running."""
        if self._tasks:
            await self._restored.wait()
        async with self._cond:
            await self._cond.wait_for(lambda: not self._pending and not self._active)

    async def recover(self) -> Dict[str, int]:
        """
        Pick up where a previous process left off.

        Persisted queued jobs go back to the head of the FIFO in creation
        order. Jobs caught mid-stage by the shutdown have no worker left to
        finish them, so they are failed.
        """
        queued = await self.store.list(status=JobStatus.QUEUED, limit=None, oldest_first=True)

        def orphaned(job: Job):
            if job.status not in IN_FLIGHT:
                return False
            job.status = JobStatus.FAILED
            job.error = RESTARTED_MESSAGE
            job.outputs = []
            job.progress = JobProgress(stage=JobStatus.FAILED, progress=job.progress.progress, message=f"Error: {RESTARTED_MESSAGE}")
            job.completed_at = utcnow()
            job.expires_at = None
            if job.manifest is not None:
                job.manifest.regenerating_scene_index = None

        failed = 0
        for status in IN_FLIGHT:
            for job in await self.store.list(status=status, limit=None):
                if job.id in self._active:
                    continue
                await self.store.update(job.id, orphaned)
                logger.warning(f"Failed orphaned {status.value} job: {job.id}")
                failed += 1

        async with self._cond:
            restored = [job for job in queued if job.id not in self._pending]
            self._pending.extendleft(job.id for job in reversed(restored))
            for job in restored:
                self._options[job.id] = job.options
            self._cond.notify_all()

        logger.info(f"Recovered {len(restored)} queued job(s), failed {failed} orphaned job(s)")
        return {"requeued": len(restored), "failed": failed}

    async def _restore(self):
        try:
            if self.store.durable:
                await self.recover()
        except Exception as e:
            logger.exception(f"Queue recovery failed: {e}")
        finally:
            self._restored.set()

    async def _work(self, n: int):
        await self._restored.wait()
        while True:
            async with self._cond:
                await self._cond.wait_for(lambda: bool(self._pending))
                job_id = self._pending.popleft()
                self._options.pop(job_id, None)
                self._active.add(job_id)

            try:
                job = await self.store.get(job_id)
                if job is None or job.status != JobStatus.QUEUED:
                    logger.warning(f"[worker-{n}] Skipping {job_id}: no longer queued")
                else:
                    await self.runner(job_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"[worker-{n}] Runner crashed on {job_id}: {e}")
            finally:
                async with self._cond:
                    self._active.discard(job_id)
                    self._cond.notify_all()


__all__ = [
    "JobQueue",
    "Runner",
    "CANCELLED_MESSAGE",
    "RESTARTED_MESSAGE",
    "new_job_id",
]
