import asyncio
from datetime import timedelta

import pytest

from conftest import FakeProvider, FakeStitchProvider, make_settings, statuses, video
from genpipe.schemas.job import GenerationOptions, JobStatus, SceneStatus
from genpipe.services.storage import StorageService
from genpipe.workers.base import StitchError, ValidationError
from genpipe.workers.pipeline import JobPipeline
from genpipe.workers.progress import utcnow
from genpipe.workers.stitcher import output_key


def test_output_key_depends_only_on_job_id():
    assert output_key("job_abc") == "jobs/job_abc/final.mp4"
    assert output_key("job_abc") == output_key("job_abc")


async def test_stitch_failure_fails_job_and_keeps_scenes(pipeline, stitch_provider):
    stitch_provider.fail = True
    sub = pipeline.subscribe("job_stitch")

    await pipeline.submit(video("a", "b"), "job_stitch")
    await pipeline.join()
    job = await pipeline.get_job("job_stitch")

    assert job.status == JobStatus.FAILED
    assert "concat demuxer error" in job.error
    assert job.outputs == []
    assert job.expires_at is None
    entries = job.manifest.scene_progress
    assert all(e.status == SceneStatus.COMPLETED for e in entries.values())
    assert all(e.artifact_url for e in entries.values())
    assert statuses(sub.drain())[-2:] == [JobStatus.ENCODING, JobStatus.FAILED]


async def test_stitch_timeout_fails_job(store, provider):
    stitcher = FakeStitchProvider(delay=1.0)
    pipeline = JobPipeline(store, provider, stitcher, make_settings(STITCH_TIMEOUT_SECONDS=0.05))
    pipeline.start()
    try:
        await pipeline.submit(video("a", "b"), "job_slow_stitch")
        await pipeline.join()
    finally:
        await pipeline.stop()

    job = await store.get("job_slow_stitch")
    assert job.status == JobStatus.FAILED
    assert "timed out" in job.error


async def test_stitch_refuses_incomplete_scenes(pipeline, provider):
    provider.fail_prompts.add("b")
    await pipeline.submit(video("a", "b", "c"), "job_partial")
    await pipeline.join()

    with pytest.raises(StitchError) as exc:
        await pipeline.machine.stitcher.stitch("job_partial")

    assert exc.value.scene_index == 1
    assert "1, 2" in exc.value.message


async def test_restitch_overwrites_same_key(pipeline, stitch_provider):
    await pipeline.submit(video("a", "b"), "job_again")
    await pipeline.join()
    await pipeline.regenerate_scene("job_again", 0)
    await pipeline.join()

    keys = [c["key"] for c in stitch_provider.calls]
    assert keys == ["jobs/job_again/final.mp4", "jobs/job_again/final.mp4"]
    job = await pipeline.get_job("job_again")
    assert job.outputs == ["https://cdn.test/jobs/job_again/final.mp4"]


async def test_single_scene_storyboard_still_stitches(store):
    provider = FakeProvider()
    stitcher = FakeStitchProvider()
    pipeline = JobPipeline(store, provider, stitcher, make_settings())
    pipeline.start()
    try:
        await pipeline.submit(video("only"), "job_one_scene")
        await pipeline.join()
    finally:
        await pipeline.stop()

    job = await store.get("job_one_scene")
    assert job.status == JobStatus.COMPLETED
    assert len(stitcher.calls) == 1
    assert len(stitcher.calls[0]["urls"]) == 1


# ── Re-stitching ─────────────────────────────────────────────────────────────

async def test_restitch_after_stitch_failure_completes(pipeline, provider, stitch_provider):
    stitch_provider.fail = True
    await pipeline.submit(video("a", "b"), "job_retry")
    await pipeline.join()
    failed = await pipeline.get_job("job_retry")
    assert failed.status == JobStatus.FAILED

    stitch_provider.fail = False
    sub = pipeline.subscribe("job_retry")
    result = await pipeline.restitch("job_retry")
    await pipeline.join()

    assert result.accepted
    job = await pipeline.get_job("job_retry")
    assert job.status == JobStatus.COMPLETED
    assert job.error is None
    assert job.outputs == ["https://cdn.test/jobs/job_retry/final.mp4"]
    assert job.expires_at is not None
    assert len(provider.calls) == 2
    assert stitch_provider.calls[0] == stitch_provider.calls[1]
    assert statuses(sub.drain()) == [JobStatus.ENCODING, JobStatus.COMPLETED]


async def test_restitch_requires_completed_scenes(pipeline, provider):
    provider.fail_prompts.add("b")
    await pipeline.submit(video("a", "b"), "job_gap")
    await pipeline.join()

    with pytest.raises(ValidationError, match="1"):
        await pipeline.restitch("job_gap")


async def test_restitch_requires_scene_job(pipeline):
    await pipeline.submit(GenerationOptions(prompt="single"), "job_single")
    await pipeline.join()

    with pytest.raises(ValidationError):
        await pipeline.restitch("job_single")


async def test_restitch_refused_while_job_busy(pipeline, provider):
    provider.delay = 0.1
    await pipeline.submit(video("a", "b"), "job_busy")
    await asyncio.sleep(0.02)

    result = await pipeline.restitch("job_busy")
    await pipeline.join()

    assert not result.accepted
    assert "running" in result.reason


async def test_restitch_and_regeneration_share_one_claim(pipeline, stitch_provider):
    stitch_provider.delay = 0.05
    await pipeline.submit(video("a", "b"), "job_claim")
    await pipeline.join()

    first = await pipeline.restitch("job_claim")
    second = await pipeline.regenerate_scene("job_claim", 0)
    await pipeline.join()

    assert first.accepted
    assert not second.accepted


# ── Artifact expiry ──────────────────────────────────────────────────────────

@pytest.fixture
def local_storage(tmp_path):
    return StorageService(make_settings(LOCAL_STORAGE_PATH=str(tmp_path)))


async def test_purge_expired_deletes_job_folder(store, provider, stitch_provider, local_storage, tmp_path):
    pipeline = JobPipeline(store, provider, stitch_provider, make_settings(), storage=local_storage)
    pipeline.start()
    try:
        await pipeline.submit(video("a"), "job_old")
        await pipeline.join()
    finally:
        await pipeline.stop()
    folder = tmp_path / "jobs" / "job_old"
    folder.mkdir(parents=True)
    (folder / "final.mp4").write_bytes(b"video")
    job = await store.get("job_old")

    assert await pipeline.purge_expired(now=job.expires_at - timedelta(seconds=1)) == []
    assert folder.exists()

    assert await pipeline.purge_expired(now=job.expires_at + timedelta(seconds=1)) == ["job_old"]
    assert not folder.exists()
    purged = await store.get("job_old")
    assert purged.purged_at is not None
    assert purged.status == JobStatus.COMPLETED
    assert purged.outputs == job.outputs

    assert await pipeline.purge_expired(now=job.expires_at + timedelta(days=1)) == []


async def test_purge_skips_failed_jobs(store, provider, stitch_provider, local_storage):
    stitch_provider.fail = True
    pipeline = JobPipeline(store, provider, stitch_provider, make_settings(), storage=local_storage)
    pipeline.start()
    try:
        await pipeline.submit(video("a"), "job_failed")
        await pipeline.join()
    finally:
        await pipeline.stop()

    assert await pipeline.purge_expired(now=utcnow() + timedelta(days=30)) == []


async def test_expiry_sweep_runs_in_background(store, provider, stitch_provider, local_storage, tmp_path):
    folder = tmp_path / "jobs" / "job_swept"
    folder.mkdir(parents=True)
    settings = make_settings(ARTIFACT_TTL_SECONDS=0, EXPIRY_SWEEP_SECONDS=0.01)
    pipeline = JobPipeline(store, provider, stitch_provider, settings, storage=local_storage)
    pipeline.start()
    try:
        await pipeline.submit(video("a"), "job_swept")
        await pipeline.join()
        for _ in range(200):
            if (await store.get("job_swept")).purged_at is not None:
                break
            await asyncio.sleep(0.01)
    finally:
        await pipeline.stop()

    assert (await store.get("job_swept")).purged_at is not None
    assert not folder.exists()
