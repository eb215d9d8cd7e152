"""
Stitcher
Joins a job's completed scenes, in index order, into its single output.

The output key is derived from the job id alone, so stitching again after
a regeneration overwrites the previous final artifact.
"""

import logging
from datetime import timedelta

from genpipe.core.config import Settings, settings as default_settings
from genpipe.schemas.job import Job, JobProgress, JobStatus
from genpipe.services.stitching import StitchProvider
from genpipe.workers.base import StitchError, bounded_call
from genpipe.workers.manifest import seal_manifest
from genpipe.workers.progress import StageProgressReporter, utcnow
from genpipe.workers.scenes import incomplete_scenes
from genpipe.workers.store import JobStore

logger = logging.getLogger(__name__)


def output_key(job_id: str) -> str:
    return f"jobs/{job_id}/final.mp4"


class Stitcher:

    def __init__(
        self,
        store: JobStore,
        provider: StitchProvider,
        reporter: StageProgressReporter,
        fingerprint: str = "",
        settings: Settings = default_settings,
    ):
        self.store = store
        self.provider = provider
        self.reporter = reporter
        self.fingerprint = fingerprint
        self.settings = settings

    async def stitch(self, job_id: str) -> Job:
        """
        Stitch the job's scenes and complete it.

        Expects the job to be in the encoding stage. On success the job is
        completed with exactly one output; on failure StitchError propagates
        and the job is left for the caller to fail, scene artifacts intact.
        """
        job = await self.store.require(job_id)
        missing = incomplete_scenes(job)
        if missing:
            raise StitchError(
                f"Scenes not ready for stitching: {', '.join(str(i) for i in missing)}",
                scene_index=missing[0],
            )

        entries = job.manifest.scene_progress
        urls = [entries[i].artifact_url for i in range(len(job.options.scene_prompts))]
        key = output_key(job_id)

        final_url = await self.reporter.track(
            job_id,
            JobStatus.ENCODING,
            bounded_call(
                self.provider.stitch(urls, key),
                timeout=self.settings.STITCH_TIMEOUT_SECONDS,
                what="Stitching",
                error_cls=StitchError,
            ),
            expected_seconds=self.settings.ENCODE_STAGE_SECONDS,
            label=f"Stitching {len(urls)} scenes",
        )
        if not final_url:
            raise StitchError("Stitch provider returned no artifact")

        def complete(job: Job):
            now = utcnow()
            job.outputs = [final_url]
            seal_manifest(job, self.fingerprint, self.settings.PIPELINE_VERSION, now)
            job.status = JobStatus.COMPLETED
            job.error = None
            job.progress = JobProgress(stage=JobStatus.COMPLETED, progress=100.0, eta_seconds=0, message="Completed")
            job.completed_at = now
            job.expires_at = now + timedelta(seconds=self.settings.ARTIFACT_TTL_SECONDS)

        job = await self.store.update(job_id, complete)
        logger.info(f"[{job_id}] Stitched {len(urls)} scenes -> {final_url}")
        return job


__all__ = ["Stitcher", "output_key"]
