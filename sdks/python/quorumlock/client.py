"""quorumlock coordinators."""

import asyncio
import logging
import random
import time
import uuid
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence, Tuple

from .exceptions import InstanceUnreachable, LeaseLost, ValidationError
from .instances import AsyncRedisInstance, AsyncStoreInstance, RedisInstance, StoreInstance
from .models import Backoff, LockHandle, LockState, RunResult

logger = logging.getLogger(__name__)

CLOCK_DRIFT_FACTOR = 0.01
# Backend expiry precision is 1 ms, plus 1 ms of minimum drift for small TTLs.
DRIFT_PADDING = 2


def new_token() -> str:
    """Return a fresh lease token with 122 random bits."""
    return uuid.uuid4().hex


class _QuorumLockBase:
    """State and checks shared by the sync and async coordinators."""

    def __init__(
        self,
        instances: Iterable,
        retry_delay: int = 200,
        retry_count: int = 3,
        *,
        clock_drift_factor: float = CLOCK_DRIFT_FACTOR,
        backoff: Optional[Backoff] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
        token_factory: Callable[[], str] = new_token,
    ):
        """Initialize the coordinator.

        Args:
            instances: Independent store instances; fixed for the coordinator's lifetime
            retry_delay: Upper bound in milliseconds of the delay between attempts
            retry_count: Number of acquisition attempts before giving up
            clock_drift_factor: Share of the TTL subtracted from the validity estimate
            backoff: Delay bounds between attempts; defaults to half to full ``retry_delay``
            rng: Random source used for the jittered delay
            clock: Monotonic clock in seconds used to time each attempt
            token_factory: Callable returning a fresh unique token
        """
        instances = tuple(instances)
        if not instances:
            raise ValidationError("At least one store instance is required")
        if retry_count < 1:
            raise ValidationError("retry_count must be at least 1")
        if retry_delay < 0:
            raise ValidationError("retry_delay must not be negative")

        self._instances = instances
        self._quorum = min(len(instances), len(instances) // 2 + 1)
        self.retry_delay = retry_delay
        self.retry_count = retry_count
        self.clock_drift_factor = clock_drift_factor
        self.backoff = backoff or Backoff(retry_delay // 2, retry_delay)
        self._rng = rng or random.Random()
        self._clock = clock
        self._token_factory = token_factory
        self._owned_instances = ()

    @property
    def instances(self) -> Tuple:
        return self._instances

    @property
    def quorum(self) -> int:
        return self._quorum

    def _validate_resource(self, resource: str) -> None:
        """Validate resource key."""
        if not isinstance(resource, str) or not resource:
            raise ValidationError("Resource must be a non-empty string")

    def _validate_ttl(self, ttl: int) -> None:
        """Validate TTL value."""
        if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl <= 0:
            raise ValidationError("TTL must be a positive number of milliseconds")

    def _evaluate(
        self,
        resource: str,
        token: str,
        ttl: int,
        granted: int,
        started: float,
        acquired_at: float,
        attempt: int,
    ) -> Optional[LockHandle]:
        """Turn one attempt's tally into a handle, or None if it did not win."""
        drift = ttl * self.clock_drift_factor + DRIFT_PADDING
        elapsed = (self._clock() - started) * 1000
        validity = ttl - elapsed - drift
        extra = {
            "resource": resource,
            "attempt": attempt,
            "granted": granted,
            "quorum": self._quorum,
            "validity": validity,
        }
        if granted >= self._quorum and validity > 0:
            logger.debug("Lease acquired", extra=extra)
            return LockHandle(
                resource=resource,
                token=token,
                ttl=ttl,
                validity=validity,
                acquired_at=acquired_at,
            )
        logger.debug("Attempt did not reach quorum", extra=extra)
        return None

    def _log_unreachable(self, action: str, resource: str, error: InstanceUnreachable) -> None:
        logger.warning(
            "Store instance unreachable while %s", action,
            extra={"resource": resource, "instance": repr(error.instance), "error": str(error)},
        )

    def _log_gave_up(self, resource: str) -> None:
        logger.info(
            "Could not acquire lease",
            extra={"resource": resource, "attempts": self.retry_count, "quorum": self._quorum},
        )


class ManagedLease:
    """Refresh callable handed to work run by :meth:`QuorumLock.run_with_lock`.

    Calling it extends the lease and returns True, or returns False once the
    lease is lost. Work must stop when it gets False; :meth:`ensure` raises
    :class:`LeaseLost` instead for work that prefers to unwind.
    """

    def __init__(self, locker: "QuorumLock", handle: LockHandle):
        self._locker = locker
        self.resource = handle.resource
        self.handle = handle
        self.state = LockState.HELD
        self.refreshes = 0

    @property
    def lost(self) -> bool:
        return self.state == LockState.LOST

    def __call__(self) -> bool:
        if self.state != LockState.HELD:
            return False
        handle = self._locker.refresh(self.handle)
        if handle is None:
            self.handle = None
            self.state = LockState.LOST
            logger.warning("Lease lost during refresh", extra={"resource": self.resource})
            return False
        self.handle = handle
        self.refreshes += 1
        return True

    def ensure(self) -> None:
        if not self():
            raise LeaseLost(f"Lease on {self.resource!r} was lost", resource=self.resource)

    def close(self) -> None:
        if self.state == LockState.HELD:
            self._locker.release(self.handle)
            self.state = LockState.RELEASED


class QuorumLock(_QuorumLockBase):
    """Distributed lock over a quorum of independent store instances."""

    def __init__(
        self,
        instances: Sequence[StoreInstance],
        retry_delay: int = 200,
        retry_count: int = 3,
        *,
        sleep: Callable[[float], None] = time.sleep,
        **kwargs,
    ):
        super().__init__(instances, retry_delay, retry_count, **kwargs)
        self._sleep = sleep

    @classmethod
    def from_urls(cls, urls: Iterable[str], timeout: float = 1.0, **kwargs) -> "QuorumLock":
        """Build a coordinator over one Redis server per URL.

        Args:
            urls: Redis URLs of independent servers
            timeout: Socket timeout in seconds for each server
            **kwargs: Passed on to the constructor
        """
        instances = [RedisInstance.from_url(url, timeout=timeout) for url in urls]
        lock = cls(instances, **kwargs)
        lock._owned_instances = tuple(instances)
        return lock

    def close(self) -> None:
        """Close the instances built by :meth:`from_urls`; injected ones are left open."""
        for instance in self._owned_instances:
            instance.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    def _lock_instance(self, instance: StoreInstance, resource: str, token: str, ttl: int) -> bool:
        try:
            return bool(instance.conditional_set(resource, token, ttl))
        except InstanceUnreachable as e:
            self._log_unreachable("locking", resource, e)
            return False

    def _unlock_instance(self, instance: StoreInstance, resource: str, token: str) -> bool:
        try:
            return bool(instance.compare_and_delete(resource, token))
        except InstanceUnreachable as e:
            self._log_unreachable("unlocking", resource, e)
            return False

    def acquire(self, resource: str, ttl: int) -> Optional[LockHandle]:
        """Acquire a lease on ``resource``.

        Args:
            resource: Resource key
            ttl: Lease duration in milliseconds

        Returns:
            LockHandle on success, None once every attempt failed
        """
        self._validate_resource(resource)
        self._validate_ttl(ttl)

        for attempt in range(1, self.retry_count + 1):
            token = self._token_factory()
            acquired_at = time.time()
            started = self._clock()
            granted = 0
            for instance in self._instances:
                if self._lock_instance(instance, resource, token, ttl):
                    granted += 1

            handle = self._evaluate(resource, token, ttl, granted, started, acquired_at, attempt)
            if handle is not None:
                return handle

            for instance in self._instances:
                self._unlock_instance(instance, resource, token)
            if attempt < self.retry_count:
                self._sleep(self.backoff.next_delay(self._rng) / 1000.0)

        self._log_gave_up(resource)
        return None

    def release(self, handle: LockHandle) -> None:
        """Release a lease on every instance that still holds its token."""
        for instance in self._instances:
            self._unlock_instance(instance, handle.resource, handle.token)

    def refresh(self, handle: LockHandle) -> Optional[LockHandle]:
        """Release ``handle`` and acquire a new lease with the same TTL.

        Returns:
            A new LockHandle, or None when the lease is lost
        """
        self.release(handle)
        return self.acquire(handle.resource, handle.ttl)

    def run_with_lock(
        self, resource: str, ttl: int, work: Callable[[ManagedLease], Any]
    ) -> RunResult:
        """Run ``work`` while holding a lease on ``resource``.

        ``work`` receives a zero-argument refresh callable. The lease is
        released on every exit path; exceptions raised by ``work`` propagate
        after release.

        Returns:
            RunResult whose status is RELEASED when work completed, LOST when a
            refresh failed and UNACQUIRED when the lease was never obtained
        """
        handle = self.acquire(resource, ttl)
        if handle is None:
            return RunResult(LockState.UNACQUIRED)

        lease = ManagedLease(self, handle)
        try:
            value = work(lease)
        except LeaseLost:
            if not lease.lost:
                raise
            logger.warning("Work aborted after losing its lease", extra={"resource": resource})
            return RunResult(LockState.LOST, refreshes=lease.refreshes)
        finally:
            lease.close()

        if lease.lost:
            return RunResult(LockState.LOST, refreshes=lease.refreshes)
        return RunResult(LockState.RELEASED, value, lease.refreshes)


class AsyncManagedLease:
    """Async refresh callable handed to work run by :meth:`AsyncQuorumLock.run_with_lock`."""

    def __init__(self, locker: "AsyncQuorumLock", handle: LockHandle):
        self._locker = locker
        self.resource = handle.resource
        self.handle = handle
        self.state = LockState.HELD
        self.refreshes = 0

    @property
    def lost(self) -> bool:
        return self.state == LockState.LOST

    async def __call__(self) -> bool:
        if self.state != LockState.HELD:
            return False
        handle = await self._locker.refresh(self.handle)
        if handle is None:
            self.handle = None
            self.state = LockState.LOST
            logger.warning("Lease lost during refresh", extra={"resource": self.resource})
            return False
        self.handle = handle
        self.refreshes += 1
        return True

    async def ensure(self) -> None:
        if not await self():
            raise LeaseLost(f"Lease on {self.resource!r} was lost", resource=self.resource)

    async def close(self) -> None:
        if self.state == LockState.HELD:
            await self._locker.release(self.handle)
            self.state = LockState.RELEASED


class AsyncQuorumLock(_QuorumLockBase):
    """Async distributed lock; each attempt contacts all instances concurrently."""

    def __init__(
        self,
        instances: Sequence[AsyncStoreInstance],
        retry_delay: int = 200,
        retry_count: int = 3,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        **kwargs,
    ):
        super().__init__(instances, retry_delay, retry_count, **kwargs)
        self._sleep = sleep

    @classmethod
    def from_urls(cls, urls: Iterable[str], timeout: float = 1.0, **kwargs) -> "AsyncQuorumLock":
        """Build a coordinator over one Redis server per URL.

        Args:
            urls: Redis URLs of independent servers
            timeout: Socket timeout in seconds for each server
            **kwargs: Passed on to the constructor
        """
        instances = [AsyncRedisInstance.from_url(url, timeout=timeout) for url in urls]
        lock = cls(instances, **kwargs)
        lock._owned_instances = tuple(instances)
        return lock

    async def close(self) -> None:
        """Close the instances built by :meth:`from_urls`; injected ones are left open."""
        for instance in self._owned_instances:
            await instance.close()

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def _lock_instance(
        self, instance: AsyncStoreInstance, resource: str, token: str, ttl: int
    ) -> bool:
        try:
            return bool(await instance.conditional_set(resource, token, ttl))
        except InstanceUnreachable as e:
            self._log_unreachable("locking", resource, e)
            return False

    async def _unlock_instance(
        self, instance: AsyncStoreInstance, resource: str, token: str
    ) -> bool:
        try:
            return bool(await instance.compare_and_delete(resource, token))
        except InstanceUnreachable as e:
            self._log_unreachable("unlocking", resource, e)
            return False

    async def _unlock_all(self, resource: str, token: str) -> None:
        await asyncio.gather(
            *(self._unlock_instance(instance, resource, token) for instance in self._instances)
        )

    async def acquire(self, resource: str, ttl: int) -> Optional[LockHandle]:
        """Acquire a lease on ``resource``.

        Args:
            resource: Resource key
            ttl: Lease duration in milliseconds

        Returns:
            LockHandle on success, None once every attempt failed
        """
        self._validate_resource(resource)
        self._validate_ttl(ttl)

        for attempt in range(1, self.retry_count + 1):
            token = self._token_factory()
            acquired_at = time.time()
            started = self._clock()
            results = await asyncio.gather(
                *(self._lock_instance(instance, resource, token, ttl) for instance in self._instances)
            )

            handle = self._evaluate(resource, token, ttl, sum(results), started, acquired_at, attempt)
            if handle is not None:
                return handle

            await self._unlock_all(resource, token)
            if attempt < self.retry_count:
                await self._sleep(self.backoff.next_delay(self._rng) / 1000.0)

        self._log_gave_up(resource)
        return None

    async def release(self, handle: LockHandle) -> None:
        """Release a lease on every instance that still holds its token."""
        await self._unlock_all(handle.resource, handle.token)

    async def refresh(self, handle: LockHandle) -> Optional[LockHandle]:
        """Release ``handle`` and acquire a new lease with the same TTL."""
        await self.release(handle)
        return await self.acquire(handle.resource, handle.ttl)

    async def run_with_lock(
        self, resource: str, ttl: int, work: Callable[[AsyncManagedLease], Awaitable[Any]]
    ) -> RunResult:
        """Await ``work`` while holding a lease on ``resource``.

        See :meth:`QuorumLock.run_with_lock`; here the refresh callable is a
        coroutine function.
        """
        handle = await self.acquire(resource, ttl)
        if handle is None:
            return RunResult(LockState.UNACQUIRED)

        lease = AsyncManagedLease(self, handle)
        try:
            value = await work(lease)
        except LeaseLost:
            if not lease.lost:
                raise
            logger.warning("Work aborted after losing its lease", extra={"resource": resource})
            return RunResult(LockState.LOST, refreshes=lease.refreshes)
        finally:
            await lease.close()

        if lease.lost:
            return RunResult(LockState.LOST, refreshes=lease.refreshes)
        return RunResult(LockState.RELEASED, value, lease.refreshes)
