"""
Job Store
The Job Record is the only shared mutable resource in the pipeline. Every
write goes through JobStore.update(), which holds a per-job lock while it
reads, mutates and writes the record and publishes the resulting snapshot.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import sessionmaker

from genpipe.models.job import JobRecord
from genpipe.schemas.job import Job, JobSnapshot, JobStatus, JobType
from genpipe.workers.base import JobNotFoundError, ValidationError
from genpipe.workers.events import EventChannel, InMemoryEventChannel, Subscription

logger = logging.getLogger(__name__)

Mutator = Callable[[Job], Optional[bool]]


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class JobLocks:
    """
    One asyncio.Lock per job id.

    An entry lives only while some coroutine holds or waits on it, so the
    map stays as small as the number of in-flight writes.
    """

    def __init__(self):
        self._locks: Dict[str, _LockEntry] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, job_id: str):
        entry = self._locks.get(job_id)
        if entry is None:
            entry = self._locks[job_id] = _LockEntry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[job_id]


class JobStore(ABC):
    """
    Storage abstraction for jobs.

    Subclasses implement _load/_save/_list; locking and publishing live here
    so every backend gets the same single-writer discipline.
    """

    # True when records survive a process restart
    durable = False

    def __init__(self, channel: Optional[EventChannel] = None):
        self.channel = channel or InMemoryEventChannel()
        self.locks = JobLocks()

    @abstractmethod
    def _load(self, job_id: str) -> Optional[Job]:
        pass

    @abstractmethod
    def _save(self, job: Job, create: bool = False):
        pass

    @abstractmethod
    def _list(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[JobType] = None,
        limit: Optional[int] = 20,
        offset: int = 0,
        oldest_first: bool = False,
    ) -> List[Job]:
        pass

    @abstractmethod
    def _count_by_status(self) -> Dict[str, int]:
        pass

    async def get(self, job_id: str) -> Optional[Job]:
        """Return a copy of the job, or None."""
        job = self._load(job_id)
        return job.model_copy(deep=True) if job is not None else None

    async def require(self, job_id: str) -> Job:
        job = await self.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def create(self, job: Job) -> Job:
        """Insert a new job; duplicate ids are rejected."""
        async with self.locks.hold(job.id):
            if self._load(job.id) is not None:
                raise ValidationError(f"Job id already exists: {job.id}", {"job_id": job.id})
            self._save(job, create=True)
            self._publish(job)
        return job.model_copy(deep=True)

    async def update(self, job_id: str, mutate: Mutator) -> Job:
        """
        Apply mutate() to the job under its lock and persist the result.

        mutate receives a private copy; raising from it leaves the record
        untouched, and returning False skips the write and the publish.
        """
        async with self.locks.hold(job_id):
            current = self._load(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            job = current.model_copy(deep=True)
            if mutate(job) is False:
                return current.model_copy(deep=True)
            self._save(job)
            self._publish(job)
        return job.model_copy(deep=True)

    async def list(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[JobType] = None,
        limit: Optional[int] = 20,
        offset: int = 0,
        oldest_first: bool = False,
    ) -> List[Job]:
        """Jobs newest first by default; limit=None returns every match."""
        jobs = self._list(status, job_type, limit, offset, oldest_first)
        return [j.model_copy(deep=True) for j in jobs]

    async def count_by_status(self) -> Dict[str, int]:
        return self._count_by_status()

    def subscribe(self, job_id: str) -> Subscription:
        return self.channel.subscribe(job_id)

    def _publish(self, job: Job):
        self.channel.publish(JobSnapshot.from_job(job))


class InMemoryJobStore(JobStore):
    """Process-local store; used in tests and single-process deployments."""

    def __init__(self, channel: Optional[EventChannel] = None):
        super().__init__(channel)
        self._jobs: Dict[str, Job] = {}

    def _load(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def _save(self, job: Job, create: bool = False):
        self._jobs[job.id] = job.model_copy(deep=True)

    def _list(self, status=None, job_type=None, limit=20, offset=0, oldest_first=False) -> List[Job]:
        jobs = sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=not oldest_first)
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        if job_type is not None:
            jobs = [j for j in jobs if j.options.type == job_type]
        return jobs[offset:] if limit is None else jobs[offset:offset + limit]

    def _count_by_status(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for job in self._jobs.values():
            counts[job.status.value] = counts.get(job.status.value, 0) + 1
        return counts


class SqlJobStore(JobStore):
    """Durable store backed by the jobs table."""

    durable = True

    def __init__(self, session_factory: Optional[sessionmaker] = None, channel: Optional[EventChannel] = None):
        super().__init__(channel)
        if session_factory is None:
            from genpipe.core.database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory

    @staticmethod
    def _to_job(record: JobRecord) -> Job:
        return Job.model_validate({
            "id": record.id,
            "options": record.options,
            "status": record.status,
            "progress": record.progress or {},
            "outputs": record.outputs or [],
            "manifest": record.manifest,
            "error": record.error_message,
            "created_at": record.created_at,
            "started_at": record.started_at,
            "completed_at": record.completed_at,
            "expires_at": record.expires_at,
            "purged_at": record.purged_at,
        })

    @staticmethod
    def _apply(record: JobRecord, job: Job):
        record.type = job.options.type.value
        record.prompt = job.options.prompt
        record.options = job.options.model_dump(mode="json")
        record.status = job.status.value
        record.progress = job.progress.model_dump(mode="json")
        record.outputs = list(job.outputs)
        record.manifest = job.manifest.model_dump(mode="json") if job.manifest else None
        record.error_message = job.error
        record.created_at = job.created_at
        record.started_at = job.started_at
        record.completed_at = job.completed_at
        record.expires_at = job.expires_at
        record.purged_at = job.purged_at

    def _load(self, job_id: str) -> Optional[Job]:
        db = self.session_factory()
        try:
            record = db.get(JobRecord, job_id)
            return self._to_job(record) if record is not None else None
        finally:
            db.close()

    def _save(self, job: Job, create: bool = False):
        db = self.session_factory()
        try:
            record = None if create else db.get(JobRecord, job.id)
            if record is None:
                record = JobRecord(id=job.id)
                db.add(record)
            self._apply(record, job)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"[JobStore] Failed to save {job.id}: {e}")
            raise
        finally:
            db.close()

    def _list(self, status=None, job_type=None, limit=20, offset=0, oldest_first=False) -> List[Job]:
        db = self.session_factory()
        try:
            query = db.query(JobRecord)
            if status is not None:
                query = query.filter(JobRecord.status == status.value)
            if job_type is not None:
                query = query.filter(JobRecord.type == job_type.value)
            order = JobRecord.created_at.asc() if oldest_first else JobRecord.created_at.desc()
            records = query.order_by(order).offset(offset).limit(limit).all()
            return [self._to_job(r) for r in records]
        finally:
            db.close()

    def _count_by_status(self) -> Dict[str, int]:
        db = self.session_factory()
        try:
            rows = db.query(JobRecord.status, func.count(JobRecord.id)).group_by(JobRecord.status).all()
            return {status: count for status, count in rows}
        finally:
            db.close()


def build_job_store(settings, channel: Optional[EventChannel] = None) -> JobStore:
    """Pick the store backend from settings."""
    if settings.JOB_STORE_BACKEND == "sql":
        from genpipe.core.database import init_db
        init_db()
        return SqlJobStore(channel=channel)
    return InMemoryJobStore(channel=channel)


__all__ = [
    "JobLocks",
    "JobStore",
    "InMemoryJobStore",
    "SqlJobStore",
    "build_job_store",
]
