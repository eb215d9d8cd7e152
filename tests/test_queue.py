import asyncio

import pytest

from conftest import FakeProvider, FakeStitchProvider, make_settings
from genpipe.schemas.job import GenerationOptions, Job, JobStatus, JobType
from genpipe.workers.base import JobNotFoundError, QueueFullError, ValidationError
from genpipe.workers.pipeline import JobPipeline
from genpipe.workers.progress import utcnow
from genpipe.workers.queue import CANCELLED_MESSAGE, RESTARTED_MESSAGE, JobQueue
from genpipe.workers.store import InMemoryJobStore, SqlJobStore


async def test_submit_assigns_id_and_queues(idle_pipeline):
    job = await idle_pipeline.submit(GenerationOptions(prompt="hello"))

    assert job.id.startswith("job_")
    assert len(job.id) == len("job_") + 12
    assert job.status == JobStatus.QUEUED
    assert job.progress.progress == 0
    assert job.progress.message == "Waiting in queue..."
    assert job.outputs == []


async def test_duplicate_id_rejected(idle_pipeline):
    await idle_pipeline.submit(GenerationOptions(prompt="one"), "job_dup")

    with pytest.raises(ValidationError):
        await idle_pipeline.submit(GenerationOptions(prompt="two"), "job_dup")
    assert idle_pipeline.queue.queued == 1


async def test_jobs_run_in_submission_order(pipeline, provider):
    for prompt in ("first", "second", "third"):
        await pipeline.submit(GenerationOptions(prompt=prompt))
    await pipeline.join()

    assert [c["prompt"] for c in provider.calls] == ["first", "second", "third"]


async def test_single_worker_runs_one_job_at_a_time(pipeline, provider, store):
    provider.delay = 0.02
    running_counts = []

    async def snoop(prompt):
        jobs = await store.list(limit=100)
        running_counts.append(sum(1 for j in jobs if not j.status.is_terminal and j.status != JobStatus.QUEUED))

    provider.before_generate = snoop
    for i in range(3):
        await pipeline.submit(GenerationOptions(prompt=f"job {i}"))
    await pipeline.join()

    assert running_counts == [1, 1, 1]


async def test_multiple_workers_drain_in_parallel(store):
    provider = FakeProvider(delay=0.05)
    settings = make_settings(WORKER_COUNT=3)
    pipeline = JobPipeline(store, provider, FakeStitchProvider(), settings)
    pipeline.start()
    try:
        for i in range(3):
            await pipeline.submit(GenerationOptions(prompt=f"p{i}"))
        await asyncio.sleep(0.02)
        assert pipeline.queue.active == 3
        await pipeline.join()
    finally:
        await pipeline.stop()

    jobs = await store.list()
    assert all(j.status == JobStatus.COMPLETED for j in jobs)


async def test_cancel_queued_job(idle_pipeline, provider):
    await idle_pipeline.submit(GenerationOptions(prompt="keep"), "job_keep")
    await idle_pipeline.submit(GenerationOptions(prompt="drop"), "job_drop")
    sub = idle_pipeline.subscribe("job_drop")

    assert await idle_pipeline.cancel("job_drop") is True

    job = await idle_pipeline.get_job("job_drop")
    assert job.status == JobStatus.FAILED
    assert job.error == CANCELLED_MESSAGE
    assert job.outputs == []
    assert idle_pipeline.position("job_drop") is None
    assert [s.status for s in sub.drain()] == [JobStatus.FAILED]

    idle_pipeline.start()
    await idle_pipeline.join()
    assert [c["prompt"] for c in provider.calls] == ["keep"]


async def test_cancel_twice_returns_false(idle_pipeline):
    await idle_pipeline.submit(GenerationOptions(prompt="x"), "job_x")

    assert await idle_pipeline.cancel("job_x") is True
    assert await idle_pipeline.cancel("job_x") is False


async def test_cancel_running_job_has_no_effect(pipeline, provider):
    provider.delay = 0.1
    await pipeline.submit(GenerationOptions(prompt="busy"), "job_busy")
    await asyncio.sleep(0.02)

    assert await pipeline.cancel("job_busy") is False
    await pipeline.join()
    assert (await pipeline.get_job("job_busy")).status == JobStatus.COMPLETED


async def test_cancel_unknown_job(idle_pipeline):
    with pytest.raises(JobNotFoundError):
        await idle_pipeline.cancel("job_nope")


async def test_queue_full_creates_nothing(store, provider, stitch_provider):
    pipeline = JobPipeline(store, provider, stitch_provider, make_settings(QUEUE_MAX_SIZE=2))
    await pipeline.submit(GenerationOptions(prompt="a"))
    await pipeline.submit(GenerationOptions(prompt="b"))

    with pytest.raises(QueueFullError):
        await pipeline.submit(GenerationOptions(prompt="c"), "job_c")

    assert await store.get("job_c") is None
    assert len(await store.list()) == 2


async def test_positions_and_wait_estimates(idle_pipeline):
    ids = []
    for prompt in ("a", "b", "c"):
        ids.append((await idle_pipeline.submit(GenerationOptions(prompt=prompt, type=JobType.THREE_D))).id)

    assert [idle_pipeline.position(i) for i in ids] == [1, 2, 3]
    waits = [idle_pipeline.estimate_wait_seconds(i) for i in ids]
    assert waits == [25.0, 50.0, 75.0]

    await idle_pipeline.cancel(ids[0])
    assert [idle_pipeline.position(i) for i in ids[1:]] == [1, 2]


async def test_worker_skips_job_no_longer_queued(settings):
    store = InMemoryJobStore()
    ran = []

    async def runner(job_id):
        ran.append(job_id)

    queue = JobQueue(store, runner, workers=1, settings=settings)
    job = await queue.submit(GenerationOptions(prompt="x"))

    def mark_running(j):
        j.status = JobStatus.RUNNING

    await store.update(job.id, mark_running)
    queue.start()
    try:
        await queue.join()
    finally:
        await queue.stop()

    assert ran == []


async def test_runner_crash_does_not_stop_worker(settings):
    store = InMemoryJobStore()
    ran = []

    async def runner(job_id):
        ran.append(job_id)
        if len(ran) == 1:
            raise RuntimeError("boom")

    queue = JobQueue(store, runner, workers=1, settings=settings)
    first = await queue.submit(GenerationOptions(prompt="x"))
    second = await queue.submit(GenerationOptions(prompt="y"))
    queue.start()
    try:
        await queue.join()
    finally:
        await queue.stop()

    assert ran == [first.id, second.id]


async def test_stats(idle_pipeline):
    await idle_pipeline.submit(GenerationOptions(prompt="a"))
    await idle_pipeline.submit(GenerationOptions(prompt="b"), "job_b")
    await idle_pipeline.cancel("job_b")

    stats = await idle_pipeline.stats()

    assert stats["queued"] == 1
    assert stats["active"] == 0
    assert stats["workers"] == 1
    assert stats["by_status"] == {"queued": 1, "failed": 1}


async def test_restart_resumes_persisted_queue(sql_store, provider, stitch_provider, settings):
    before = JobPipeline(sql_store, provider, stitch_provider, settings)
    await before.submit(GenerationOptions(prompt="one"), "job_one")
    await before.submit(GenerationOptions(prompt="two"), "job_two")
    interrupted = Job(id="job_mid", options=GenerationOptions(prompt="mid"), created_at=utcnow())
    interrupted.status = JobStatus.UPSCALING
    await sql_store.create(interrupted)
    await before.stop()

    after = JobPipeline(SqlJobStore(sql_store.session_factory), provider, stitch_provider, settings)
    after.start()
    try:
        await after.join()
    finally:
        await after.stop()

    assert [c["prompt"] for c in provider.calls] == ["one", "two"]
    assert (await sql_store.get("job_one")).status == JobStatus.COMPLETED
    assert (await sql_store.get("job_two")).status == JobStatus.COMPLETED
    orphan = await sql_store.get("job_mid")
    assert orphan.status == JobStatus.FAILED
    assert orphan.error == RESTARTED_MESSAGE
    assert orphan.outputs == []


async def test_recover_puts_older_jobs_ahead_of_new_ones(sql_store, settings):
    async def runner(job_id):
        pass

    first = JobQueue(sql_store, runner, settings=settings)
    await first.submit(GenerationOptions(prompt="old"), "job_old")

    second = JobQueue(sql_store, runner, settings=settings)
    await second.submit(GenerationOptions(prompt="new"), "job_new")
    result = await second.recover()
    await second.recover()

    assert result == {"requeued": 1, "failed": 0}
    assert second.position("job_old") == 1
    assert second.position("job_new") == 2


async def test_finished_jobs_leave_no_locks(pipeline, store):
    for i in range(50):
        await pipeline.submit(GenerationOptions(prompt=f"p{i}"))
    await pipeline.join()

    assert len(store.locks) == 0
