import asyncio
from contextlib import asynccontextmanager


class KeyedLocks:
    """One asyncio.Lock per key (a ride id or a driver id).

    Every mutation of a ride or its assignments runs inside `hold(ride_id)`,
    so accept, decline, expiry and cancellation for the same ride are totally
    ordered. Different keys never contend. Entries are dropped once nobody
    holds or waits on them.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
