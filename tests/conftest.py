import asyncio
import re
from typing import Awaitable, Callable, Dict, List, Optional, Set

import pytest
from sqlalchemy.orm import sessionmaker

from genpipe.core.config import Settings
from genpipe.core.database import init_db, make_engine
from genpipe.schemas.job import GenerationOptions, JobStatus, JobType
from genpipe.services.provider import GenerationProvider
from genpipe.services.stitching import StitchProvider
from genpipe.workers.events import InMemoryEventChannel
from genpipe.workers.pipeline import JobPipeline
from genpipe.workers.store import InMemoryJobStore, SqlJobStore


class FakeProvider(GenerationProvider):
    """Deterministic provider that records every call."""

    name = "fake"

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls: List[dict] = []
        self.upscales: List[str] = []
        self.encodes: List[str] = []
        self.fail_prompts: Set[str] = set()
        self.slow_prompts: Dict[str, float] = {}
        self.empty_prompts: Set[str] = set()
        self.before_generate: Optional[Callable[[str], Awaitable[None]]] = None

    @property
    def fingerprint(self) -> str:
        return "fake:v1"

    async def generate(self, prompt, settings, reference_artifact=None, seed=None):
        self.calls.append({"prompt": prompt, "reference": reference_artifact, "seed": seed})
        if self.before_generate is not None:
            await self.before_generate(prompt)
        await asyncio.sleep(self.slow_prompts.get(prompt, self.delay))
        if prompt in self.fail_prompts:
            raise RuntimeError(f"model crashed on '{prompt}'")
        if prompt in self.empty_prompts:
            return ""
        slug = re.sub(r"[^a-z0-9]+", "-", prompt.lower()).strip("-")
        ext = "png" if settings.type == JobType.IMAGE else "mp4" if settings.type == JobType.VIDEO else "glb"
        return f"https://cdn.test/{slug}-{len(self.calls)}.{ext}"

    async def upscale(self, artifact_url, settings):
        self.upscales.append(artifact_url)
        if not settings.upscale:
            return artifact_url
        return f"{artifact_url}?up={settings.upscale_quality}"

    async def encode(self, artifact_url, settings):
        self.encodes.append(artifact_url)
        return artifact_url


class FakeStitchProvider(StitchProvider):

    name = "fake"

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls: List[dict] = []
        self.fail = False

    async def stitch(self, urls, output_key):
        self.calls.append({"urls": list(urls), "key": output_key})
        await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("concat demuxer error")
        return f"https://cdn.test/{output_key}"


def make_settings(**overrides) -> Settings:
    values = dict(
        PROGRESS_TICK_INTERVAL=0.005,
        UPSCALE_STAGE_SECONDS=0.02,
        ENCODE_STAGE_SECONDS=0.02,
        PROVIDER_TIMEOUT_SECONDS=5.0,
        STITCH_TIMEOUT_SECONDS=5.0,
        EVENT_QUEUE_SIZE=100000,
        WORKER_COUNT=1,
        QUEUE_MAX_SIZE=100,
        SIMULATED_LATENCY_SECONDS=0.0,
        EXPIRY_SWEEP_SECONDS=0,
    )
    values.update(overrides)
    return Settings(**values)


def statuses(snapshots) -> List[JobStatus]:
    """Stage sequence with consecutive duplicates collapsed."""
    seq: List[JobStatus] = []
    for snap in snapshots:
        if not seq or seq[-1] != snap.status:
            seq.append(snap.status)
    return seq


def video(*scenes: str, **kwargs) -> GenerationOptions:
    return GenerationOptions(prompt="storyboard", type=JobType.VIDEO, scene_prompts=list(scenes), **kwargs)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def channel(settings) -> InMemoryEventChannel:
    return InMemoryEventChannel(max_queue_size=settings.EVENT_QUEUE_SIZE)


@pytest.fixture
def store(channel) -> InMemoryJobStore:
    return InMemoryJobStore(channel)


@pytest.fixture
def sql_store(tmp_path, channel) -> SqlJobStore:
    engine = make_engine(f"sqlite:///{tmp_path / 'jobs.db'}")
    init_db(bind=engine)
    store = SqlJobStore(sessionmaker(autocommit=False, autoflush=False, bind=engine), channel)
    yield store
    engine.dispose()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def stitch_provider() -> FakeStitchProvider:
    return FakeStitchProvider()


@pytest.fixture
async def pipeline(store, provider, stitch_provider, settings):
    pipeline = JobPipeline(store, provider, stitch_provider, settings)
    pipeline.start()
    yield pipeline
    await pipeline.stop()


@pytest.fixture
async def idle_pipeline(store, provider, stitch_provider, settings):
    """Pipeline whose workers are not started; jobs stay queued."""
    pipeline = JobPipeline(store, provider, stitch_provider, settings)
    yield pipeline
    await pipeline.stop()
