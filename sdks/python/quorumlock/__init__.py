"""quorumlock - Distributed lock over a quorum of independent stores."""

import logging

from .client import AsyncManagedLease, AsyncQuorumLock, ManagedLease, QuorumLock
from .exceptions import (
    QuorumLockError,
    ValidationError,
    UndeterminableResourceKey,
    InstanceUnreachable,
    LockError,
    LeaseLost,
)
from .instances import (
    StoreInstance,
    AsyncStoreInstance,
    RedisInstance,
    AsyncRedisInstance,
    EtcdInstance,
    AsyncEtcdInstance,
    MemoryInstance,
)
from .jobs import JobLockGuard, fields_key
from .models import (
    LockState,
    LockHandle,
    Backoff,
    RunResult,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "1.0.0"
__all__ = [
    "QuorumLock",
    "AsyncQuorumLock",
    "ManagedLease",
    "AsyncManagedLease",
    "QuorumLockError",
    "ValidationError",
    "UndeterminableResourceKey",
    "InstanceUnreachable",
    "LockError",
    "LeaseLost",
    "StoreInstance",
    "AsyncStoreInstance",
    "RedisInstance",
    "AsyncRedisInstance",
    "EtcdInstance",
    "AsyncEtcdInstance",
    "MemoryInstance",
    "JobLockGuard",
    "fields_key",
    "LockState",
    "LockHandle",
    "Backoff",
    "RunResult",
]
