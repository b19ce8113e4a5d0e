import threading
import weakref
from contextlib import contextmanager
from typing import Iterator


class ElectionLocks:
    """Arena of re-entrant locks, one per election id.

    Everything that mutates an election, its voter records or its
    commitments runs inside ``hold(election_id)``. Unrelated elections
    never share a lock. Locks are held weakly: an entry lives only while
    some caller holds or waits on it, so ids that are never seen again
    (including unknown ones) do not accumulate.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _lock_for(self, election_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(election_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[election_id] = lock
            return lock

    @contextmanager
    def hold(self, election_id: str) -> Iterator[None]:
        lock = self._lock_for(election_id)
        with lock:
            yield
