"""
Jobs API Routes
Handles job submission, status queries, cancellation, scene regeneration,
re-stitching and live progress streams.
"""

import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from sse_starlette.sse import EventSourceResponse

from genpipe.api.deps import get_pipeline
from genpipe.schemas.api import (
    CancelJobResponse,
    QueueStats,
    RegenerateSceneRequest,
    RegenerateSceneResponse,
    RestitchResponse,
    SubmitJobRequest,
    SubmitJobResponse,
)
from genpipe.schemas.job import Job, JobManifest, JobSnapshot, JobStatus, JobType, Scene
from genpipe.workers.base import JobNotFoundError, PipelineError, QueueFullError, ValidationError
from genpipe.workers.pipeline import JobPipeline

logger = logging.getLogger(__name__)

router = APIRouter()

KEEPALIVE_SECONDS = 15.0


def _http_error(e: PipelineError) -> HTTPException:
    """Translate pipeline errors into HTTP errors."""
    if isinstance(e, JobNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    if isinstance(e, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    if isinstance(e, QueueFullError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=e.message)


@router.post("/jobs", response_model=SubmitJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_job(
    request: SubmitJobRequest,
    pipeline: JobPipeline = Depends(get_pipeline),
):
    """
    Submit a generation job.

    The job is queued and processed in submission order. Poll
    GET /jobs/{job_id} or stream GET /jobs/{job_id}/events for progress.
    """
    try:
        job = await pipeline.submit(request.to_options(), request.job_id)
    except PipelineError as e:
        logger.warning(f"Submission rejected: {e.message}")
        raise _http_error(e)

    wait = pipeline.estimate_wait_seconds(job.id)
    return SubmitJobResponse(
        job_id=job.id,
        status=job.status,
        queue_position=pipeline.position(job.id),
        estimated_wait_seconds=int(round(wait)) if wait is not None else None,
        message=f"{job.type.value} job queued",
    )


@router.get("/jobs", response_model=List[Job])
async def list_jobs(
    job_status: Optional[JobStatus] = None,
    job_type: Optional[JobType] = None,
    limit: int = 20,
    offset: int = 0,
    pipeline: JobPipeline = Depends(get_pipeline),
):
    """List jobs with optional filters, newest first."""
    return await pipeline.list_jobs(job_status, job_type, limit, offset)


@router.get("/jobs/{job_id}", response_model=Job)
async def get_job_status(
    job_id: str,
    pipeline: JobPipeline = Depends(get_pipeline),
):
    """Get job status and result."""
    try:
        return await pipeline.get_job(job_id)
    except PipelineError as e:
        raise _http_error(e)


@router.delete("/jobs/{job_id}", response_model=CancelJobResponse)
async def cancel_job(
    job_id: str,
    pipeline: JobPipeline = Depends(get_pipeline),
):
    """Cancel a job that has not started yet. Running jobs are not affected."""
    try:
        cancelled = await pipeline.cancel(job_id)
    except PipelineError as e:
        raise _http_error(e)
    return CancelJobResponse(job_id=job_id, cancelled=cancelled)


@router.get("/jobs/{job_id}/manifest", response_model=JobManifest)
async def get_job_manifest(
    job_id: str,
    pipeline: JobPipeline = Depends(get_pipeline),
):
    try:
        manifest = await pipeline.manifest(job_id)
    except PipelineError as e:
        raise _http_error(e)
    if manifest is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Manifest not written yet")
    return manifest


@router.get("/jobs/{job_id}/scenes", response_model=List[Scene])
async def get_job_scenes(
    job_id: str,
    pipeline: JobPipeline = Depends(get_pipeline),
):
    try:
        return await pipeline.scenes(job_id)
    except PipelineError as e:
        raise _http_error(e)


@router.post(
    "/jobs/{job_id}/scenes/{scene_index}/regenerate",
    response_model=RegenerateSceneResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def regenerate_scene(
    job_id: str,
    scene_index: int,
    body: Optional[RegenerateSceneRequest] = Body(None),
    pipeline: JobPipeline = Depends(get_pipeline),
):
    """
    Regenerate one scene of a finished scene-based video job and re-stitch.

    Returns 409 while the job is still processing or another regeneration
    of it is running.
    """
    prompt = body.scene_prompt if body is not None else None
    try:
        result = await pipeline.regenerate_scene(job_id, scene_index, prompt)
    except PipelineError as e:
        raise _http_error(e)

    if not result.accepted:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.reason)
    return RegenerateSceneResponse(
        job_id=job_id,
        scene_index=scene_index,
        accepted=True,
        message=result.reason,
    )


@router.post(
    "/jobs/{job_id}/stitch",
    response_model=RestitchResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def restitch_job(
    job_id: str,
    pipeline: JobPipeline = Depends(get_pipeline),
):
    """
    Stitch a finished scene-based job again from its existing scene artifacts,
    e.g. after a stitch failure. Every scene must be completed.

    Returns 409 while the job is still processing or is being regenerated.
    """
    try:
        result = await pipeline.restitch(job_id)
    except PipelineError as e:
        raise _http_error(e)

    if not result.accepted:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.reason)
    return RestitchResponse(job_id=job_id, accepted=True, message=result.reason)


@router.get("/jobs/{job_id}/events")
async def stream_job_events(
    job_id: str,
    request: Request,
    pipeline: JobPipeline = Depends(get_pipeline),
):
    """
    Server-sent events with a JobSnapshot on every progress tick and stage
    transition. The stream ends once the job reaches a terminal state.
    """
    # Subscribe before reading the job so no transition falls in between.
    subscription = await pipeline.watch(job_id)
    try:
        job = await pipeline.get_job(job_id)
    except PipelineError as e:
        await subscription.close()
        raise _http_error(e)

    async def event_generator():
        try:
            current = JobSnapshot.from_job(job)
            yield {"event": "snapshot", "data": current.model_dump_json(by_alias=True)}
            if current.status.is_terminal:
                return
            while True:
                if await request.is_disconnected():
                    break
                snapshot = await subscription.get(timeout=KEEPALIVE_SECONDS)
                if snapshot is None:
                    yield {"comment": "keepalive"}
                    continue
                yield {"event": "snapshot", "data": snapshot.model_dump_json(by_alias=True)}
                if snapshot.status.is_terminal:
                    break
        except asyncio.CancelledError:
            pass
        finally:
            await subscription.close()

    return EventSourceResponse(event_generator())


@router.get("/queue", response_model=QueueStats)
async def get_queue_stats(
    pipeline: JobPipeline = Depends(get_pipeline),
):
    """Queue depth, active workers and job counts per status."""
    return QueueStats(**(await pipeline.stats()))
