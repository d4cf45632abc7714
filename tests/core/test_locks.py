from __future__ import annotations

import threading
import time

import pytest
from redis.exceptions import LockNotOwnedError

from jarsmith.core.locks import LocalEnvironmentLocks, LockAborted, RedisEnvironmentLocks, build_environment_locks
from jarsmith.naming import environment_lock_name


def test_hold_yields_lock_name_and_releases() -> None:
    locks = LocalEnvironmentLocks(poll_seconds=0.01)
    with locks.hold("uat", owner="job-1") as name:
        assert name == environment_lock_name("uat")
        assert locks.holder(name) == "job-1"
    assert locks.holder(name) is None


def test_different_environments_do_not_block_each_other() -> None:
    locks = LocalEnvironmentLocks(poll_seconds=0.01)
    with locks.hold("uat", owner="job-1"):
        with locks.hold("prod", owner="job-2"):
            pass


def test_second_holder_waits_until_release() -> None:
    locks = LocalEnvironmentLocks(poll_seconds=0.01)
    events: list[str] = []
    waits: list[str | None] = []
    first_in = threading.Event()

    def first() -> None:
        with locks.hold("uat", owner="job-1"):
            events.append("first-in")
            first_in.set()
            time.sleep(0.1)
            events.append("first-out")

    def second() -> None:
        first_in.wait(timeout=5)
        with locks.hold("uat", owner="job-2", on_wait=waits.append):
            events.append("second-in")

    threads = [threading.Thread(target=first), threading.Thread(target=second)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert events == ["first-in", "first-out", "second-in"]
    assert waits == ["job-1"]


def test_waiting_can_be_aborted() -> None:
    sleeps: list[float] = []
    locks = LocalEnvironmentLocks(poll_seconds=0.5, sleep=sleeps.append)
    assert locks.try_acquire(environment_lock_name("uat"), "job-1")

    checks = iter([False, False, True])
    with pytest.raises(LockAborted):
        with locks.hold("uat", owner="job-2", should_abort=lambda: next(checks)):
            pytest.fail("lock must not be granted")
    assert sleeps == [0.5, 0.5]
    assert locks.holder(environment_lock_name("uat")) == "job-1"


class FakeRedisLock:
    def __init__(self, client: "FakeRedis", name: str) -> None:
        self.client = client
        self.name = name
        self.token: bytes | None = None

    def acquire(self, blocking=None, token=None):
        if self.name in self.client.store:
            return False
        self.token = str(token).encode()
        self.client.store[self.name] = self.token
        return True

    def reacquire(self):
        if self.client.store.get(self.name) != self.token:
            raise LockNotOwnedError("lease expired")
        self.client.renewals.append(self.name)
        return True

    def release(self):
        if self.client.store.get(self.name) != self.token:
            raise LockNotOwnedError("lease expired")
        del self.client.store[self.name]


class FakeRedis:
    """Just enough of redis.Redis for the lock backend."""

    def __init__(self) -> None:
        self.store: dict[str, bytes] = {}
        self.lock_calls: list[dict] = []
        self.renewals: list[str] = []

    def lock(self, name, timeout=None, thread_local=True):
        self.lock_calls.append({"name": name, "timeout": timeout, "thread_local": thread_local})
        return FakeRedisLock(self, name)

    def get(self, name):
        return self.store.get(name)


def test_redis_locks_are_owned_and_leased() -> None:
    client = FakeRedis()
    locks = RedisEnvironmentLocks(client, lease_seconds=30, poll_seconds=0.01)
    name = environment_lock_name("uat")

    assert locks.try_acquire(name, "job-1")
    assert not locks.try_acquire(name, "job-2")
    assert client.lock_calls[0] == {"name": name, "timeout": 30.0, "thread_local": False}
    assert locks.holder(name) == "job-1"

    locks.release(name, "job-2")
    assert locks.holder(name) == "job-1"
    locks.release(name, "job-1")
    assert locks.holder(name) is None


def test_redis_lease_is_renewed_while_held() -> None:
    client = FakeRedis()
    locks = RedisEnvironmentLocks(client, lease_seconds=1, poll_seconds=0.01)

    with locks.hold("uat", owner="job-1") as name:
        deadline = time.monotonic() + 5
        while not client.renewals and time.monotonic() < deadline:
            time.sleep(0.05)
        assert client.renewals and client.renewals[0] == name
    assert locks.holder(name) is None


def test_redis_release_after_lost_lease_does_not_raise() -> None:
    client = FakeRedis()
    locks = RedisEnvironmentLocks(client, lease_seconds=30, poll_seconds=0.01)
    name = environment_lock_name("uat")
    assert locks.try_acquire(name, "job-1")

    client.store[name] = b"job-9"
    locks.release(name, "job-1")
    assert locks.holder(name) == "job-9"


def test_build_environment_locks_defaults_to_local(settings) -> None:
    assert isinstance(build_environment_locks(settings), LocalEnvironmentLocks)
