"""
Job Event Channels
Fan-out of job snapshots to observers, per job id.

The in-process channel keeps one bounded asyncio.Queue per subscriber and
drops the oldest snapshot when a slow subscriber falls behind. The Redis
channel publishes the same snapshots on a pub/sub channel so observers in
other processes can follow a job.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Dict, List, Optional

from genpipe.core.redis import get_redis, job_channel
from genpipe.schemas.job import JobSnapshot

logger = logging.getLogger(__name__)


class Subscription(ABC):
    """Ordered stream of snapshots for one job."""

    def __init__(self, job_id: str):
        self.job_id = job_id

    async def open(self):
        """Wait until delivery is live; snapshots published after this are seen."""

    @abstractmethod
    async def get(self, timeout: Optional[float] = None) -> Optional[JobSnapshot]:
        """Next snapshot, or None when the timeout expires."""

    @abstractmethod
    async def close(self):
        pass

    async def __aiter__(self) -> AsyncIterator[JobSnapshot]:
        try:
            while True:
                snapshot = await self.get()
                if snapshot is not None:
                    yield snapshot
        finally:
            await self.close()


class EventChannel(ABC):
    """Publishes snapshots; hands out subscriptions keyed by job id."""

    @abstractmethod
    def publish(self, snapshot: JobSnapshot):
        """Publish synchronously so ordering follows the caller's lock."""

    @abstractmethod
    def subscribe(self, job_id: str) -> Subscription:
        """Register a subscriber for job_id; await Subscription.open() before relying on delivery."""

    async def close(self):
        pass


class MemorySubscription(Subscription):

    def __init__(self, channel: "InMemoryEventChannel", job_id: str, maxsize: int):
        super().__init__(job_id)
        self._channel = channel
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def offer(self, snapshot: JobSnapshot):
        if self.queue.full():
            # Drop oldest message to make room (backpressure)
            try:
                self.queue.get_nowait()
                logger.warning(f"Subscriber for {self.job_id} fell behind; dropped oldest snapshot")
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(snapshot)

    async def get(self, timeout: Optional[float] = None) -> Optional[JobSnapshot]:
        if timeout is None:
            return await self.queue.get()
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def drain(self) -> List[JobSnapshot]:
        """Everything buffered so far, without waiting."""
        items = []
        while not self.queue.empty():
            items.append(self.queue.get_nowait())
        return items

    async def close(self):
        self._channel.unsubscribe(self)


class InMemoryEventChannel(EventChannel):
    """Single-process channel backed by asyncio queues."""

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscribers: Dict[str, List[MemorySubscription]] = {}

    def publish(self, snapshot: JobSnapshot):
        for sub in list(self._subscribers.get(snapshot.job_id, [])):
            sub.offer(snapshot)

    def subscribe(self, job_id: str) -> MemorySubscription:
        sub = MemorySubscription(self, job_id, self.max_queue_size)
        self._subscribers.setdefault(job_id, []).append(sub)
        logger.debug(f"Subscriber added for {job_id}. Total: {len(self._subscribers[job_id])}")
        return sub

    def unsubscribe(self, sub: MemorySubscription):
        subs = self._subscribers.get(sub.job_id, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._subscribers.pop(sub.job_id, None)

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, []))


class RedisSubscription(Subscription):

    def __init__(self, redis_client, job_id: str):
        super().__init__(job_id)
        self._pubsub = redis_client.pubsub()
        self._subscribed = False

    async def open(self):
        if not self._subscribed:
            await self._pubsub.subscribe(job_channel(self.job_id))
            self._subscribed = True

    async def get(self, timeout: Optional[float] = None) -> Optional[JobSnapshot]:
        await self.open()
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            wait = 1.0 if deadline is None else max(0.0, deadline - loop.time())
            message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=wait)
            if message is not None and message.get("type") == "message":
                return JobSnapshot.model_validate_json(message["data"])
            if deadline is not None and loop.time() >= deadline:
                return None

    async def close(self):
        if self._subscribed:
            await self._pubsub.unsubscribe(job_channel(self.job_id))
        await self._pubsub.aclose()


class RedisEventChannel(EventChannel):
    """Cross-process channel over Redis pub/sub."""

    def __init__(self, redis_client=None):
        self.redis = redis_client or get_redis()
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._pump: Optional[asyncio.Task] = None

    def publish(self, snapshot: JobSnapshot):
        # A single pump task sends in enqueue order, so per-job ordering holds.
        self._outbox.put_nowait(snapshot)
        if self._pump is None or self._pump.done():
            self._pump = asyncio.get_running_loop().create_task(self._run_pump())

    async def _run_pump(self):
        while True:
            snapshot = await self._outbox.get()
            try:
                await self.redis.publish(
                    job_channel(snapshot.job_id),
                    snapshot.model_dump_json(by_alias=True),
                )
            except Exception as e:
                logger.error(f"Failed to publish snapshot for {snapshot.job_id}: {e}")
            finally:
                self._outbox.task_done()

    def subscribe(self, job_id: str) -> RedisSubscription:
        return RedisSubscription(self.redis, job_id)

    async def close(self):
        if self._pump is not None:
            await self._outbox.join()
            self._pump.cancel()
            self._pump = None


def build_event_channel(settings) -> EventChannel:
    """Pick the channel backend from settings."""
    if settings.EVENT_BACKEND == "redis":
        return RedisEventChannel()
    return InMemoryEventChannel(max_queue_size=settings.EVENT_QUEUE_SIZE)


__all__ = [
    "Subscription",
    "EventChannel",
    "InMemoryEventChannel",
    "MemorySubscription",
    "RedisEventChannel",
    "build_event_channel",
]
