"""Per-resource mutation scopes for bulk commits.

A commit holds one lock per affected resource key ("caregiver:<id>",
"client:<id>", "authorization:<id>") for the whole re-validate + write
section, so a second commit touching the same caregiver or authorization
waits and then re-validates against the updated data.

Locks are in-process. Multi-process deployments additionally rely on the
authorization row lock taken by the SQL store.
"""

import threading
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager

from loguru import logger


def caregiver_key(caregiver_id: str) -> str:
    return f"caregiver:{caregiver_id}"


def client_key(client_id: str) -> str:
    return f"client:{client_id}"


def authorization_key(authorization_id: str) -> str:
    return f"authorization:{authorization_id}"


class _CountedLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class ResourceLockRegistry:
    """Registry of named locks.

    A key's lock exists only while some commit holds or waits for it, so the
    registry does not grow with the number of caregivers and clients seen.
    """

    def __init__(self) -> None:
        self._locks: dict[str, _CountedLock] = {}
        self._registry_lock = threading.Lock()

    def active_keys(self) -> list[str]:
        """Keys currently held or waited on."""
        with self._registry_lock:
            return sorted(self._locks)

    def _checkout(self, key: str) -> threading.Lock:
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = _CountedLock()
                self._locks[key] = entry
            entry.users += 1
            return entry.lock

    def _checkin(self, key: str) -> None:
        with self._registry_lock:
            entry = self._locks[key]
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    def _release(self, key: str, lock: threading.Lock) -> None:
        lock.release()
        self._checkin(key)

    @contextmanager
    def hold(self, keys: Iterable[str]) -> Iterator[list[str]]:
        """Acquire every lock in `keys`, always in sorted order to avoid deadlocks.

        Yields:
            The sorted, de-duplicated keys held
        """
        ordered = sorted(set(keys))
        with ExitStack() as stack:
            for key in ordered:
                lock = self._checkout(key)
                try:
                    if not lock.acquire(blocking=False):
                        logger.debug("[LOCK] Waiting for resource", key=key)
                        lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                stack.callback(self._release, key, lock)
            yield ordered


# Process-wide registry shared by every BulkScheduleService by default
default_lock_registry = ResourceLockRegistry()
