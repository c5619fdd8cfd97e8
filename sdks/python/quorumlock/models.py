"""quorumlock data models."""

import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .exceptions import ValidationError


class LockState(str, Enum):
    """Lease lifecycle states."""
    UNACQUIRED = "unacquired"
    HELD = "held"
    LOST = "lost"
    RELEASED = "released"


@dataclass(frozen=True)
class LockHandle:
    """A lease held on a resource.

    ``validity`` is the remaining time in milliseconds estimated when the
    lease was acquired; it is not re-verified afterwards.
    """
    resource: str
    token: str
    ttl: int
    validity: float
    acquired_at: float

    @property
    def expires_at(self) -> float:
        """Wall-clock time (epoch seconds) at which the validity runs out."""
        return self.acquired_at + self.validity / 1000.0

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Whether the validity estimate has run out."""
        if self.validity <= 0:
            return True
        if now is None:
            now = time.time()
        return now >= self.expires_at


@dataclass(frozen=True)
class Backoff:
    """Jittered delay bounds, in milliseconds, between acquisition attempts."""
    min_delay: int
    max_delay: int

    def __post_init__(self):
        if self.min_delay < 0 or self.max_delay < self.min_delay:
            raise ValidationError("Backoff requires 0 <= min_delay <= max_delay")

    def next_delay(self, rng: random.Random) -> int:
        return rng.randint(self.min_delay, self.max_delay)


@dataclass
class RunResult:
    """Outcome of running work while holding a lease."""
    status: LockState
    value: Any = None
    refreshes: int = 0

    @property
    def completed(self) -> bool:
        return self.status == LockState.RELEASED

    def __bool__(self) -> bool:
        return self.completed
