"""Keep queued jobs from overlapping.

A :class:`JobLockGuard` takes a lease named after a job before the job is
pushed onto a queue and holds it until the job has run, so a second job
with the same key is dropped instead of queued. The guard is queue-agnostic:
the caller hands it a ``push`` callable and tells it when to run the job.
"""

import logging
from typing import Any, Callable, Iterable, Optional

from .client import QuorumLock
from .exceptions import UndeterminableResourceKey, ValidationError
from .models import LockHandle

logger = logging.getLogger(__name__)

_SCALARS = (str, int, float, bool, type(None))


def fields_key(job: Any, exclude: Iterable[str] = ("lock_handle",)) -> str:
    """Build a resource key from a job's class and scalar attribute values.

    Jobs with equal attribute values map to the same key. Opt in by using
    this as the guard's ``key_func`` or from a job's ``lock_key``.

    Raises:
        UndeterminableResourceKey: if any attribute holds a non-scalar value
    """
    cls = type(job)
    try:
        attributes = vars(job)
    except TypeError:
        raise UndeterminableResourceKey(
            f"Cannot read the attributes of {cls.__qualname__}; define lock_key() or pass key_func"
        ) from None
    skipped = set(exclude)
    parts = []
    for name, value in attributes.items():
        if name in skipped:
            continue
        if not isinstance(value, _SCALARS):
            raise UndeterminableResourceKey(
                f"Cannot derive a lock key from {cls.__qualname__}.{name} "
                f"({type(value).__name__}); define lock_key() or pass key_func"
            )
        parts.append("" if value is None else str(value))
    return ":".join([f"{cls.__module__}.{cls.__qualname__}"] + parts)


class JobLockGuard:
    """Acquire before enqueueing, release after running."""

    def __init__(
        self,
        locker: QuorumLock,
        key_func: Optional[Callable[[Any], str]] = None,
        lock_time: int = 300,
        work: Optional[Callable[[Any], Any]] = None,
    ):
        """Initialize the guard.

        Args:
            locker: Coordinator used for every job
            key_func: Maps a job to its resource key; falls back to ``job.lock_key()``
            lock_time: Lease duration in seconds
            work: Runs a job; falls back to ``job.handle_sync()``
        """
        if lock_time <= 0:
            raise ValidationError("lock_time must be a positive number of seconds")
        self.locker = locker
        self.key_func = key_func
        self.lock_time = lock_time
        self.work = work

    @property
    def ttl(self) -> int:
        return self.lock_time * 1000

    def key_for(self, job: Any) -> str:
        """Resolve the resource key for ``job``."""
        if self.key_func is not None:
            key = self.key_func(job)
        elif callable(getattr(job, "lock_key", None)):
            key = job.lock_key()
        else:
            raise UndeterminableResourceKey(
                f"Define lock_key() on {type(job).__qualname__} or pass key_func to the guard"
            )
        if not isinstance(key, str) or not key:
            raise UndeterminableResourceKey(
                f"Lock key for {type(job).__qualname__} must be a non-empty string"
            )
        return key

    def _acquire(self, job: Any) -> Optional[LockHandle]:
        key = self.key_for(job)
        handle = self.locker.acquire(key, self.ttl)
        if handle is None:
            logger.info("Skipping job, an overlapping job holds the lock", extra={"resource": key})
        job.lock_handle = handle
        return handle

    def enqueue(self, job: Any, push: Callable[[Any], Any]) -> Any:
        """Lock ``job`` and hand it to ``push``.

        Returns:
            Whatever ``push`` returns, or False if the lock is held elsewhere

        Raises:
            ValidationError: if the job cannot be run, checked before locking
        """
        if self.work is None and not callable(getattr(job, "handle_sync", None)):
            raise ValidationError(
                f"Define handle_sync() on {type(job).__qualname__} or pass work to the guard"
            )
        if self._acquire(job) is None:
            return False
        return push(job)

    def run(self, job: Any, work: Optional[Callable[[Any], Any]] = None) -> Any:
        """Run ``job`` and release its lock afterwards, whatever the outcome.

        A job that reaches the worker without a lease (it was not enqueued
        through the guard) is locked here first and skipped if that fails.

        Returns:
            The job's result, or False if the job was skipped
        """
        if getattr(job, "lock_handle", None) is None and self._acquire(job) is None:
            return False
        try:
            work = work or self.work
            if work is not None:
                return work(job)
            return job.handle_sync()
        finally:
            self.release(job)

    def release(self, job: Any) -> None:
        handle = getattr(job, "lock_handle", None)
        if handle is not None:
            self.locker.release(handle)
            job.lock_handle = None

    def refresh(self, job: Any) -> bool:
        """Extend the job's lease.

        Returns:
            True if extended; False if the lease is lost and the job should stop
        """
        handle = getattr(job, "lock_handle", None)
        if handle is None:
            return False
        job.lock_handle = self.locker.refresh(handle)
        if job.lock_handle is None:
            logger.warning("Job lost its lease", extra={"resource": handle.resource})
            return False
        return True
