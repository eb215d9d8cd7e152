"""
Job manifest helpers.

The manifest is the durable record external systems read after a job
finishes. Scene-based jobs get one when they first start running so that
per-scene state has somewhere to live; everything else gets one at
completion.
"""

from datetime import datetime
from typing import Optional

from genpipe.schemas.job import Job, JobManifest, SceneProgress


def build_manifest(job: Job) -> JobManifest:
    options = job.options
    manifest = JobManifest(
        job_id=job.id,
        prompt=options.prompt,
        negative_prompt=options.negative_prompt,
        type=options.type,
        settings=options,
        created_at=job.created_at,
    )
    if options.is_scene_based:
        manifest.scene_prompts = list(options.scene_prompts)
        manifest.scene_progress = {i: SceneProgress() for i in range(len(options.scene_prompts))}
    return manifest


def seal_manifest(
    job: Job,
    provider_fingerprint: Optional[str],
    pipeline_version: str,
    completed_at: datetime,
) -> JobManifest:
    """Write the completion-only fields; creates the manifest if missing."""
    manifest = job.manifest or build_manifest(job)
    manifest.provider_fingerprint = provider_fingerprint
    manifest.pipeline_version = pipeline_version
    manifest.completed_at = completed_at
    manifest.current_scene_index = None
    manifest.regenerating_scene_index = None
    job.manifest = manifest
    return manifest


def is_sealed(manifest: Optional[JobManifest]) -> bool:
    return manifest is not None and manifest.completed_at is not None and manifest.pipeline_version is not None
