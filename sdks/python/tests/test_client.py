import random
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import List

import pytest

from quorumlock import (
    Backoff,
    LeaseLost,
    LockState,
    MemoryInstance,
    QuorumLock,
    RedisInstance,
    ValidationError,
)


class SlowInstance(MemoryInstance):
    """Takes ``delay`` seconds of the shared fake clock per set."""

    def __init__(self, clock, delay: float) -> None:
        super().__init__(clock=clock)
        self._fake_clock = clock
        self.delay = delay

    def conditional_set(self, key, value, ttl):
        self._fake_clock.advance(self.delay)
        return super().conditional_set(key, value, ttl)


def _spy_releases(monkeypatch, lock: QuorumLock) -> List[str]:
    released: List[str] = []
    original = lock.release

    def release(handle):
        released.append(handle.token)
        original(handle)

    monkeypatch.setattr(lock, "release", release)
    return released


@pytest.mark.parametrize("count, quorum", [(1, 1), (2, 2), (3, 2), (4, 3), (5, 3)])
def test_quorum_is_majority_capped_by_instance_count(count, quorum):
    lock = QuorumLock([MemoryInstance() for _ in range(count)])
    assert lock.quorum == quorum
    assert len(lock.instances) == count


def test_constructor_validation():
    with pytest.raises(ValidationError):
        QuorumLock([])
    with pytest.raises(ValidationError):
        QuorumLock([MemoryInstance()], retry_count=0)
    with pytest.raises(ValidationError):
        QuorumLock([MemoryInstance()], retry_delay=-1)


@pytest.mark.parametrize("resource, ttl", [("", 1000), (None, 1000), ("jobs", 0), ("jobs", -5), ("jobs", 1.5)])
def test_acquire_rejects_bad_arguments(lock, resource, ttl):
    with pytest.raises(ValidationError):
        lock.acquire(resource, ttl)


def test_acquire_stores_token_on_every_instance(lock, instances):
    handle = lock.acquire("reports", 1000)

    assert handle is not None
    assert handle.resource == "reports"
    assert handle.ttl == 1000
    # 1000 - 0 elapsed - (1000 * 0.01 + 2)
    assert handle.validity == pytest.approx(988.0)
    assert [i.get("reports") for i in instances] == [handle.token] * 3


def test_acquire_with_one_instance_offline_succeeds(make_lock, instances):
    instances[2].online = False
    lock = make_lock(instances)

    handle = lock.acquire("reports", 1000)

    assert handle is not None
    assert instances[0].get("reports") == handle.token
    assert instances[1].get("reports") == handle.token


def test_acquire_with_two_instances_offline_fails_after_retries(make_lock, instances, sleep):
    instances[1].online = False
    instances[2].online = False
    lock = make_lock(instances, retry_count=3, retry_delay=200)

    assert lock.acquire("reports", 1000) is None

    # no sleep after the final attempt
    assert len(sleep.calls) == 2
    assert all(0.1 <= delay <= 0.2 for delay in sleep.calls)
    # partial grant cleaned up
    assert instances[0].get("reports") is None


def test_each_attempt_uses_a_fresh_token(make_lock, instances):
    instances[0].online = False
    instances[1].online = False
    tokens = iter(f"token-{n}" for n in range(10))
    issued = []

    def factory():
        issued.append(next(tokens))
        return issued[-1]

    lock = make_lock(instances, retry_count=4, token_factory=factory)

    assert lock.acquire("reports", 1000) is None
    assert issued == ["token-0", "token-1", "token-2", "token-3"]


def test_jittered_delay_follows_injected_random_source(make_lock, instances, sleep):
    for instance in instances:
        instance.online = False
    lock = make_lock(instances, retry_count=4, backoff=Backoff(50, 70), rng=random.Random(7))

    lock.acquire("reports", 1000)

    expected = random.Random(7)
    assert sleep.calls == [expected.randint(50, 70) / 1000.0 for _ in range(3)]


def test_slow_attempt_fails_validity_and_cleans_up(clock, make_lock):
    instances = [SlowInstance(clock, 0.4) for _ in range(3)]
    lock = make_lock(instances, retry_count=1)

    # 1200 ms elapsed against a 1000 ms lease leaves no validity
    assert lock.acquire("reports", 1000) is None
    assert all(i.get("reports") is None for i in instances)


def test_validity_subtracts_elapsed_time(clock, make_lock):
    instances = [SlowInstance(clock, 0.1) for _ in range(3)]
    lock = make_lock(instances)

    handle = lock.acquire("reports", 1000)

    assert handle.validity == pytest.approx(1000 - 300 - 12)


def test_contended_resource_cannot_be_acquired_twice(lock, make_lock, instances):
    first = lock.acquire("reports", 1000)
    other = make_lock(instances, retry_count=2)

    assert other.acquire("reports", 1000) is None
    assert all(i.get("reports") == first.token for i in instances)

    lock.release(first)
    assert other.acquire("reports", 1000) is not None


def test_release_is_idempotent_and_spares_new_holder(lock, instances, clock):
    stale = lock.acquire("reports", 1000)
    clock.advance(1.5)
    current = lock.acquire("reports", 1000)
    assert current is not None

    lock.release(stale)
    lock.release(stale)

    assert all(i.get("reports") == current.token for i in instances)
    lock.release(current)
    lock.release(current)
    assert all(i.get("reports") is None for i in instances)


def test_release_tolerates_unreachable_instances(lock, instances):
    handle = lock.acquire("reports", 1000)
    instances[0].online = False

    lock.release(handle)

    assert instances[1].get("reports") is None
    assert instances[2].get("reports") is None


def test_refresh_issues_new_token_with_reset_validity(lock, instances, clock):
    handle = lock.acquire("reports", 1000)
    clock.advance(0.9)

    refreshed = lock.refresh(handle)

    assert refreshed is not None
    assert refreshed.resource == handle.resource
    assert refreshed.token != handle.token
    assert refreshed.validity == pytest.approx(988.0)
    assert refreshed.acquired_at >= handle.acquired_at
    assert all(i.get("reports") == refreshed.token for i in instances)


def test_refresh_reports_loss_when_lease_was_taken(lock, make_lock, instances, clock):
    handle = lock.acquire("reports", 1000)
    clock.advance(1.5)
    intruder = make_lock(instances).acquire("reports", 1000)

    assert lock.refresh(handle) is None
    assert all(i.get("reports") == intruder.token for i in instances)


def test_unreleased_lease_expires_on_its_own(lock, clock):
    assert lock.acquire("reports", 1000) is not None
    clock.advance(1.0)

    assert lock.acquire("reports", 1000) is not None


def test_concurrent_acquires_have_at_most_one_winner():
    instances = [MemoryInstance() for _ in range(3)]
    lock = QuorumLock(instances, retry_count=1)
    barrier = threading.Barrier(8)

    def contend(_):
        barrier.wait()
        return lock.acquire("reports", 10000)

    with ThreadPoolExecutor(max_workers=8) as pool:
        handles = [h for h in pool.map(contend, range(8)) if h is not None]

    assert len(handles) <= 1


def test_run_with_lock_returns_work_result_and_releases(lock, instances, monkeypatch):
    released = _spy_releases(monkeypatch, lock)
    seen = []

    def work(refresh):
        seen.append(instances[0].get("reports"))
        return 42

    result = lock.run_with_lock("reports", 1000, work)

    assert result
    assert result.status == LockState.RELEASED
    assert result.value == 42
    assert released == seen
    assert all(i.get("reports") is None for i in instances)


def test_run_with_lock_skips_work_when_not_acquired(lock, make_lock, instances):
    lock.acquire("reports", 1000)
    other = make_lock(instances, retry_count=1)
    calls = []

    result = other.run_with_lock("reports", 1000, calls.append)

    assert not result
    assert result.status == LockState.UNACQUIRED
    assert calls == []


def test_run_with_lock_releases_when_work_raises(lock, instances, monkeypatch):
    released = _spy_releases(monkeypatch, lock)

    def work(refresh):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        lock.run_with_lock("reports", 1000, work)

    assert len(released) == 1
    assert all(i.get("reports") is None for i in instances)


def test_run_with_lock_releases_each_refreshed_lease_once(lock, instances, monkeypatch):
    released = _spy_releases(monkeypatch, lock)
    tokens = []

    def work(refresh):
        tokens.append(refresh.handle.token)
        assert refresh()
        tokens.append(refresh.handle.token)
        assert refresh()
        tokens.append(refresh.handle.token)
        return "done"

    result = lock.run_with_lock("reports", 1000, work)

    assert result.value == "done"
    assert result.refreshes == 2
    assert len(set(tokens)) == 3
    assert released == tokens


def test_run_with_lock_reports_loss_when_refresh_fails(lock, make_lock, instances, clock, monkeypatch):
    released = _spy_releases(monkeypatch, lock)
    intruder = make_lock(instances)
    steps = []

    def work(refresh):
        steps.append("started")
        clock.advance(1.5)
        intruder.acquire("reports", 1000)
        if not refresh():
            return "partial"
        steps.append("finished")

    result = lock.run_with_lock("reports", 1000, work)

    assert not result
    assert result.status == LockState.LOST
    assert result.value is None
    assert steps == ["started"]
    assert len(released) == 1
    assert instances[0].get("reports") is not None


def test_run_with_lock_absorbs_lease_lost_from_ensure(lock, make_lock, instances, clock):
    intruder = make_lock(instances)
    steps = []

    def work(refresh):
        clock.advance(1.5)
        intruder.acquire("reports", 1000)
        refresh.ensure()
        steps.append("unreachable")

    result = lock.run_with_lock("reports", 1000, work)

    assert result.status == LockState.LOST
    assert steps == []


def test_refresh_keeps_failing_after_loss(lock, make_lock, instances, clock):
    intruder = make_lock(instances)
    outcomes = []

    def work(refresh):
        clock.advance(1.5)
        intruder.acquire("reports", 1000)
        outcomes.append(refresh())
        outcomes.append(refresh())
        with pytest.raises(LeaseLost):
            refresh.ensure()

    lock.run_with_lock("reports", 1000, work)

    assert outcomes == [False, False]


def test_foreign_lease_lost_propagates_while_lease_is_held(lock, instances, monkeypatch):
    released = _spy_releases(monkeypatch, lock)

    def work(refresh):
        raise LeaseLost("nested lease on 'exports' was lost", resource="exports")

    with pytest.raises(LeaseLost) as excinfo:
        lock.run_with_lock("reports", 1000, work)

    assert excinfo.value.resource == "exports"
    assert len(released) == 1
    assert all(i.get("reports") is None for i in instances)


def test_close_shuts_clients_built_from_urls(monkeypatch):
    closed = []
    with QuorumLock.from_urls(["redis://127.0.0.1:6379/0", "redis://127.0.0.1:6380/0"]) as lock:
        for instance in lock.instances:
            monkeypatch.setattr(instance.client, "close", lambda: closed.append(True))
    assert closed == [True, True]


def test_close_leaves_injected_instances_open(monkeypatch):
    injected = RedisInstance.from_url("redis://127.0.0.1:6379/0")
    closed = []
    monkeypatch.setattr(injected.client, "close", lambda: closed.append(True))

    with QuorumLock([injected]):
        pass

    assert closed == []
