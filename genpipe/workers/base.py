"""
Base Worker Classes
Error taxonomy, retry decorator and the logging base shared by pipeline workers.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar
from functools import wraps

logger = logging.getLogger(__name__)

T = TypeVar('T')


class PipelineError(Exception):
    """Base exception for pipeline errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(PipelineError):
    """Request rejected synchronously; no job state was changed."""


class JobNotFoundError(ValidationError):
    """Unknown job id."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}", {"job_id": job_id})
        self.job_id = job_id


class QueueFullError(PipelineError):
    """Submission refused by backpressure; no job was created."""


class ProviderError(PipelineError):
    """Generation call failed, timed out or returned no artifact."""

    def __init__(self, message: str, scene_index: Optional[int] = None, details: Optional[dict] = None):
        super().__init__(message, details)
        self.scene_index = scene_index


class StitchError(PipelineError):
    """Concatenation of scene artifacts failed."""

    def __init__(self, message: str, scene_index: Optional[int] = None, details: Optional[dict] = None):
        super().__init__(message, details)
        self.scene_index = scene_index


class WorkerException(Exception):
    """Transport-level failure inside a provider, classified for retry."""

    def __init__(self, message: str, retryable: bool = True, details: Optional[dict] = None):
        super().__init__(message)
        self.retryable = retryable
        self.details = details or {}


class NonRetryableError(WorkerException):
    """Error that should NOT be retried (e.g., invalid input)."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, retryable=False, details=details)


class RetryableError(WorkerException):
    """Error that SHOULD be retried (e.g., API timeout)."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, retryable=True, details=details)


def with_retry(
    max_retries: int = 3,
    retry_delay: float = 1.0,
    exponential_backoff: bool = True,
    retryable_exceptions: tuple = (RetryableError, TimeoutError, ConnectionError)
):
    """
    Decorator to add retry logic to async provider calls.

    Args:
        max_retries: Maximum number of retry attempts
        retry_delay: Base delay between retries (seconds)
        exponential_backoff: Whether to use exponential backoff
        retryable_exceptions: Tuple of exception types that should trigger retry
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            last_exception = None

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)

                except retryable_exceptions as e:
                    last_exception = e

                    if attempt < max_retries:
                        delay = retry_delay * (2 ** attempt if exponential_backoff else 1)
                        logger.warning(
                            f"[Retry {attempt + 1}/{max_retries}] {func.__name__} failed: {e}. "
                            f"Retrying in {delay:.1f}s..."
                        )
                        await asyncio.sleep(delay)
                    else:
                        logger.error(
                            f"[Failed] {func.__name__} exhausted all {max_retries} retries: {e}"
                        )

                except NonRetryableError as e:
                    logger.error(f"[Non-Retryable] {func.__name__}: {e}")
                    raise

            raise last_exception

        return wrapper

    return decorator


async def bounded_call(
    awaitable: Awaitable[T],
    timeout: float,
    what: str,
    error_cls=ProviderError,
    scene_index: Optional[int] = None,
) -> T:
    """
    Await an external call under a timeout, mapping any failure onto error_cls.

    Pipeline errors raised by the callee pass through unchanged.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        raise error_cls(f"{what} timed out after {timeout:.0f}s", scene_index=scene_index)
    except PipelineError:
        raise
    except Exception as e:
        raise error_cls(f"{what} failed: {e}", scene_index=scene_index) from e


class BaseWorker:
    """
    Base class for pipeline workers.

    Provides structured start/complete/error logging with timing. Instances
    are shared across jobs, so timing is passed around rather than stored.
    """

    TASK_NAME = "task"

    def _log_start(self, job_id: str, **context) -> float:
        """Log task start with context; returns the start time."""
        logger.info(f"[START] {self.TASK_NAME} {job_id} | Context: {context}")
        return time.monotonic()

    def _log_complete(self, job_id: str, started: float, result_summary: str = ""):
        """Log task completion with timing."""
        duration = time.monotonic() - started
        logger.info(f"[COMPLETE] {self.TASK_NAME} {job_id} | Duration: {duration:.2f}s | {result_summary}")

    def _log_error(self, job_id: str, started: float, error: Any):
        """Log task error with details."""
        duration = time.monotonic() - started
        logger.error(f"[ERROR] {self.TASK_NAME} {job_id} | Duration: {duration:.2f}s | Error: {error}")


__all__ = [
    "PipelineError",
    "ValidationError",
    "JobNotFoundError",
    "QueueFullError",
    "ProviderError",
    "StitchError",
    "WorkerException",
    "NonRetryableError",
    "RetryableError",
    "with_retry",
    "bounded_call",
    "BaseWorker",
]
