from __future__ import annotations

"""Per-environment deployment locks.

Deployments to one environment are serialised; builds are not. A job takes the
lock for its target environment right before it enters ``deploying`` and
gives it back after its terminal transition. Two backends exist:

  - :class:`LocalEnvironmentLocks` for a single worker process (threads);
  - :class:`RedisEnvironmentLocks` for several worker processes sharing Redis.

Waiting is done by polling so the caller can bail out between attempts (for
example when the job was cancelled while queued behind another deployment).
"""

import threading
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Iterator

import redis
from loguru import logger
from redis.exceptions import LockError
from redis.lock import Lock

from jarsmith.config import Settings, get_settings
from jarsmith.naming import environment_lock_name

log = logger.bind(module="core.locks")

__all__ = [
    "EnvironmentLocks",
    "LocalEnvironmentLocks",
    "LockAborted",
    "RedisEnvironmentLocks",
    "build_environment_locks",
]


class LockAborted(RuntimeError):
    """Raised when ``should_abort`` returned True while waiting for a lock."""


class EnvironmentLocks:
    """Polling lock acquisition shared by both backends."""

    def __init__(self, *, poll_seconds: float = 1.0, sleep: Callable[[float], None] | None = None) -> None:
        self.poll_seconds = max(0.0, float(poll_seconds))
        self._sleep = sleep or time.sleep

    def try_acquire(self, name: str, owner: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    def release(self, name: str, owner: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def holder(self, name: str) -> str | None:  # pragma: no cover - interface
        raise NotImplementedError

    @contextmanager
    def hold(
        self,
        environment_id: str,
        *,
        owner: str | None = None,
        should_abort: Callable[[], bool] | None = None,
        on_wait: Callable[[str | None], None] | None = None,
    ) -> Iterator[str]:
        """Block until the environment lock is held, yield its name, release on exit."""

        name = environment_lock_name(environment_id)
        token = owner or uuid.uuid4().hex
        waited = False
        while not self.try_acquire(name, token):
            if should_abort is not None and should_abort():
                raise LockAborted(f"Gave up waiting for {name}.")
            if not waited:
                waited = True
                current = self.holder(name)
                log.info("Waiting for {} held by {}", name, current)
                if on_wait is not None:
                    on_wait(current)
            self._sleep(self.poll_seconds)
        log.debug("Acquired {} as {}", name, token)
        try:
            yield name
        finally:
            self.release(name, token)
            log.debug("Released {} held by {}", name, token)


class LocalEnvironmentLocks(EnvironmentLocks):
    """In-process locks keyed by environment id."""

    def __init__(self, *, poll_seconds: float = 1.0, sleep: Callable[[float], None] | None = None) -> None:
        super().__init__(poll_seconds=poll_seconds, sleep=sleep)
        self._owners: dict[str, str] = {}
        self._guard = threading.Lock()

    def try_acquire(self, name: str, owner: str) -> bool:
        with self._guard:
            current = self._owners.get(name)
            if current is not None and current != owner:
                return False
            self._owners[name] = owner
            return True

    def release(self, name: str, owner: str) -> None:
        with self._guard:
            if self._owners.get(name) == owner:
                del self._owners[name]

    def holder(self, name: str) -> str | None:
        with self._guard:
            return self._owners.get(name)


class RedisEnvironmentLocks(EnvironmentLocks):
    """Locks held through redis-py's :class:`redis.lock.Lock`.

    Each lock carries a lease so a crashed worker cannot wedge an environment.
    While a deployment holds the lock a daemon thread renews the lease every
    third of its length; a renewal that finds the lock gone is logged and
    stops.
    """

    def __init__(
        self,
        client: redis.Redis,
        *,
        lease_seconds: float = 3600.0,
        poll_seconds: float = 1.0,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        super().__init__(poll_seconds=poll_seconds, sleep=sleep)
        self.client = client
        self.lease_seconds = max(1.0, float(lease_seconds))
        self._held: dict[tuple[str, str], tuple[Lock, threading.Event]] = {}
        self._guard = threading.Lock()

    def try_acquire(self, name: str, owner: str) -> bool:
        # thread_local=False so the renewal thread sees the owner's token.
        lock = self.client.lock(name, timeout=self.lease_seconds, thread_local=False)
        if not lock.acquire(blocking=False, token=owner):
            return False
        stop = threading.Event()
        with self._guard:
            self._held[(name, owner)] = (lock, stop)
        threading.Thread(
            target=self._renew,
            args=(lock, stop),
            name=f"lease-{name}",
            daemon=True,
        ).start()
        return True

    def release(self, name: str, owner: str) -> None:
        with self._guard:
            held = self._held.pop((name, owner), None)
        if held is None:
            return
        lock, stop = held
        stop.set()
        try:
            lock.release()
        except LockError as exc:
            log.warning("Lease on {} ended before release by {}: {}", name, owner, exc)

    def holder(self, name: str) -> str | None:
        value = self.client.get(name)
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    def _renew(self, lock: Lock, stop: threading.Event) -> None:
        while not stop.wait(self.lease_seconds / 3):
            try:
                lock.reacquire()
            except LockError as exc:
                log.error("Lost deployment lock {}: {}", lock.name, exc)
                return
            except redis.RedisError as exc:
                log.warning("Could not renew {} (will retry): {}", lock.name, exc)



def build_environment_locks(settings: Settings | None = None) -> EnvironmentLocks:
    """Return the lock backend selected by ``DEPLOY_LOCK_BACKEND``."""

    settings = settings or get_settings()
    if settings.deploy_lock_backend == "redis":
        client = redis.Redis.from_url(settings.tasks_redis_url)
        log.info("Using Redis deployment locks")
        return RedisEnvironmentLocks(
            client,
            lease_seconds=settings.deploy_lock_lease_seconds,
            poll_seconds=settings.deploy_lock_poll_seconds,
        )
    return LocalEnvironmentLocks(poll_seconds=settings.deploy_lock_poll_seconds)
