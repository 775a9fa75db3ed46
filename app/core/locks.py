import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable, Iterable


class KeyedLocks:
    """
    In-process mutexes keyed by an identifier (e.g. an inventory item id).

    `hold()` takes several keys at once and always acquires them in sorted
    order, so two tasks locking overlapping key sets cannot deadlock.
    A key's lock is dropped once no task holds or waits for it.
    Row locks (SELECT ... FOR UPDATE) still guard writers in other processes.
    """

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, keys: Iterable[Hashable]) -> AsyncIterator[None]:
        ordered = sorted(set(keys), key=str)
        # Registered before acquiring, so a waiter keeps the lock alive
        for key in ordered:
            if key not in self._locks:
                self._locks[key] = asyncio.Lock()
            self._users[key] = self._users.get(key, 0) + 1

        acquired = []
        try:
            for key in ordered:
                lock = self._locks[key]
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in ordered:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]
