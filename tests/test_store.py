import asyncio
import json
from datetime import timedelta

import pytest

from genpipe.schemas.job import (
    GenerationOptions,
    Job,
    JobSnapshot,
    JobStatus,
    JobType,
    SceneProgress,
    SceneStatus,
)
from genpipe.workers.base import JobNotFoundError, ValidationError
from genpipe.workers.events import InMemoryEventChannel, RedisEventChannel
from genpipe.workers.manifest import build_manifest
from genpipe.workers.pipeline import JobPipeline
from genpipe.workers.progress import utcnow
from genpipe.workers.store import InMemoryJobStore, JobLocks


def new_job(job_id: str, **options) -> Job:
    options.setdefault("prompt", "x")
    return Job(id=job_id, options=GenerationOptions(**options), created_at=utcnow())


@pytest.fixture(params=["memory", "sql"])
def any_store(request, store, sql_store):
    return store if request.param == "memory" else sql_store


# ── Store behaviour, both backends ───────────────────────────────────────────

async def test_get_returns_isolated_copy(any_store):
    await any_store.create(new_job("job_a"))

    job = await any_store.get("job_a")
    job.outputs.append("https://tampered")

    assert (await any_store.get("job_a")).outputs == []


async def test_duplicate_create_rejected(any_store):
    await any_store.create(new_job("job_a"))

    with pytest.raises(ValidationError):
        await any_store.create(new_job("job_a"))


async def test_update_unknown_job(any_store):
    with pytest.raises(JobNotFoundError):
        await any_store.update("job_missing", lambda j: None)
    assert await any_store.get("job_missing") is None


async def test_raising_mutator_leaves_record_unchanged(any_store):
    await any_store.create(new_job("job_a"))

    def broken(job):
        job.status = JobStatus.RUNNING
        raise RuntimeError("half way")

    with pytest.raises(RuntimeError):
        await any_store.update("job_a", broken)

    assert (await any_store.get("job_a")).status == JobStatus.QUEUED


async def test_list_filters_and_counts(any_store):
    now = utcnow()
    for i, job_type in enumerate([JobType.IMAGE, JobType.VIDEO, JobType.IMAGE]):
        job = new_job(f"job_{i}", type=job_type)
        job.created_at = now + timedelta(seconds=i)
        await any_store.create(job)

    def finish(job):
        job.status = JobStatus.COMPLETED

    await any_store.update("job_2", finish)

    assert [j.id for j in await any_store.list()] == ["job_2", "job_1", "job_0"]
    assert [j.id for j in await any_store.list(job_type=JobType.IMAGE)] == ["job_2", "job_0"]
    assert [j.id for j in await any_store.list(status=JobStatus.QUEUED)] == ["job_1", "job_0"]
    assert [j.id for j in await any_store.list(limit=1, offset=1)] == ["job_1"]
    assert await any_store.count_by_status() == {"queued": 2, "completed": 1}


async def test_update_publishes_snapshot(any_store):
    await any_store.create(new_job("job_a"))
    sub = any_store.subscribe("job_a")

    def start(job):
        job.status = JobStatus.RUNNING

    await any_store.update("job_a", start)
    await any_store.update("job_a", lambda job: False)

    assert [s.status for s in sub.drain()] == [JobStatus.RUNNING]


async def test_list_oldest_first_without_limit(any_store):
    now = utcnow()
    for i in range(25):
        job = new_job(f"job_{i:02d}")
        job.created_at = now + timedelta(seconds=i)
        await any_store.create(job)

    jobs = await any_store.list(limit=None, oldest_first=True)

    assert [j.id for j in jobs] == [f"job_{i:02d}" for i in range(25)]


async def test_locks_released_after_updates(any_store):
    for i in range(20):
        await any_store.create(new_job(f"job_{i}"))

    def finish(job):
        job.status = JobStatus.COMPLETED

    await asyncio.gather(*(any_store.update(f"job_{i}", finish) for i in range(20)))

    assert len(any_store.locks) == 0


async def test_job_lock_serializes_holders():
    locks = JobLocks()
    inside = []
    peak = []

    async def writer():
        async with locks.hold("job_a"):
            inside.append(1)
            peak.append(len(inside))
            await asyncio.sleep(0.01)
            inside.pop()

    await asyncio.gather(writer(), writer(), writer())

    assert peak == [1, 1, 1]
    assert len(locks) == 0


async def test_sql_store_round_trips_manifest(sql_store):
    job = new_job("job_scenes", type=JobType.VIDEO, scene_prompts=["a", "b"], seed=3)
    job.manifest = build_manifest(job)
    job.manifest.scene_progress[1] = SceneProgress(
        status=SceneStatus.COMPLETED, progress=100, artifact_url="https://cdn.test/b.mp4", prompt="b again",
    )
    job.outputs = ["https://cdn.test/final.mp4"]
    await sql_store.create(job)

    loaded = await sql_store.get("job_scenes")

    assert loaded.options == job.options
    assert loaded.outputs == job.outputs
    entries = loaded.manifest.scene_progress
    assert sorted(entries) == [0, 1]
    assert entries[0].status == SceneStatus.PENDING
    assert entries[1].artifact_url == "https://cdn.test/b.mp4"
    assert entries[1].prompt == "b again"
    assert loaded.manifest.scene_prompts == ["a", "b"]


# ── Event channel ────────────────────────────────────────────────────────────

def snapshot(job_id: str, progress: float) -> JobSnapshot:
    return JobSnapshot(job_id=job_id, status=JobStatus.RUNNING, progress=progress)


async def test_slow_subscriber_drops_oldest():
    channel = InMemoryEventChannel(max_queue_size=3)
    sub = channel.subscribe("job_a")

    for p in range(6):
        channel.publish(snapshot("job_a", p))

    assert [s.progress for s in sub.drain()] == [3, 4, 5]


async def test_subscriptions_are_per_job():
    channel = InMemoryEventChannel()
    a = channel.subscribe("job_a")
    b = channel.subscribe("job_b")

    channel.publish(snapshot("job_a", 10))

    assert [s.progress for s in a.drain()] == [10]
    assert b.drain() == []


async def test_closed_subscription_stops_receiving():
    channel = InMemoryEventChannel()
    sub = channel.subscribe("job_a")

    await sub.close()
    channel.publish(snapshot("job_a", 10))

    assert channel.subscriber_count("job_a") == 0
    assert sub.drain() == []


async def test_get_times_out_with_none():
    channel = InMemoryEventChannel()
    sub = channel.subscribe("job_a")

    assert await sub.get(timeout=0.01) is None


class FakePubSub:

    def __init__(self, log):
        self.log = log
        self.messages = []

    async def subscribe(self, channel):
        self.log.append(("subscribe", channel))

    async def unsubscribe(self, channel):
        self.log.append(("unsubscribe", channel))

    async def get_message(self, ignore_subscribe_messages=False, timeout=None):
        await asyncio.sleep(0)
        return self.messages.pop(0) if self.messages else None

    async def aclose(self):
        self.log.append(("close",))


class RecordingRedis:

    def __init__(self):
        self.published = []
        self.log = []
        self.pubsubs = []

    async def publish(self, channel, data):
        await asyncio.sleep(0)
        self.published.append((channel, json.loads(data)))

    def pubsub(self):
        pubsub = FakePubSub(self.log)
        self.pubsubs.append(pubsub)
        return pubsub


async def test_redis_channel_publishes_in_order():
    redis = RecordingRedis()
    channel = RedisEventChannel(redis)

    for p in range(3):
        channel.publish(snapshot("job_a", p))
    await channel.close()

    assert [c for c, _ in redis.published] == ["genpipe:jobs:job_a"] * 3
    assert [d["progress"] for _, d in redis.published] == [0, 1, 2]
    assert all(d["jobId"] == "job_a" for _, d in redis.published)


async def test_watch_subscribes_to_redis_before_returning(provider, stitch_provider, settings):
    redis = RecordingRedis()
    pipeline = JobPipeline(InMemoryJobStore(RedisEventChannel(redis)), provider, stitch_provider, settings)

    sub = await pipeline.watch("job_a")

    assert redis.log == [("subscribe", "genpipe:jobs:job_a")]
    data = snapshot("job_a", 40).model_dump_json(by_alias=True)
    redis.pubsubs[0].messages.append({"type": "message", "data": data})
    received = await sub.get(timeout=1)
    await sub.close()
    await pipeline.stop()

    assert received.progress == 40
    assert redis.log[1:] == [("unsubscribe", "genpipe:jobs:job_a"), ("close",)]
