import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class _LockEntry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.refs = 0


class ConversationLocks:
    """Keyed lock registry; one lock per conversation id, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._entries: Dict[str, _LockEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    async def acquire(self, key: str) -> None:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _LockEntry()
        entry.refs += 1
        try:
            await entry.lock.acquire()
        except BaseException:
            self._drop_ref(key, entry)
            raise

    def release(self, key: str) -> None:
        entry = self._entries.get(key)
        if entry is None:
            raise RuntimeError(f"lock for {key!r} is not held")
        entry.lock.release()
        self._drop_ref(key, entry)

    def _drop_ref(self, key: str, entry: _LockEntry) -> None:
        entry.refs -= 1
        if entry.refs <= 0 and self._entries.get(key) is entry:
            del self._entries[key]

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        await self.acquire(key)
        try:
            yield
        finally:
            self.release(key)
