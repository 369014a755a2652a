from __future__ import annotations
import asyncio
import time
from typing import Callable, Dict, Hashable, Optional


class ExpiringSet:
    """Set of keys that fall out after a per-key time to live.

    Expiry is lazy (checked on read) plus an explicit ``purge()``. State is
    process-local; a multi-process deployment needs a shared store offering the
    same insert-if-absent / contains / discard operations.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._expiry: Dict[Hashable, float] = {}

    def add(self, key: Hashable, ttl: float) -> bool:
        """Insert key unless a live entry exists. Returns True when inserted."""
        now = self._clock()
        expires = self._expiry.get(key)
        if expires is not None and expires > now:
            return False
        self._expiry[key] = now + ttl
        return True

    def touch(self, key: Hashable, ttl: float) -> None:
        """Insert or refresh key."""
        self._expiry[key] = self._clock() + ttl

    def discard(self, key: Hashable) -> None:
        self._expiry.pop(key, None)

    def purge(self) -> int:
        now = self._clock()
        stale = [k for k, expires in self._expiry.items() if expires <= now]
        for k in stale:
            del self._expiry[k]
        return len(stale)

    def __contains__(self, key: Hashable) -> bool:
        expires = self._expiry.get(key)
        if expires is None:
            return False
        if expires <= self._clock():
            del self._expiry[key]
            return False
        return True

    def __len__(self) -> int:
        self.purge()
        return len(self._expiry)


class Turn:
    """One reserved slot in an ``OrderTurns`` queue (async context manager)."""

    def __init__(self, turns: 'OrderTurns', key: Hashable, previous: Optional[asyncio.Future], done: asyncio.Future):
        self._turns = turns
        self.key = key
        self._previous = previous
        self._done = done
        self._released = False

    async def wait(self) -> None:
        if self._previous is not None and not self._previous.done():
            await asyncio.wait([self._previous])

    def release(self) -> None:
        """Give up this slot; later slots still wait for every earlier one."""
        if self._released:
            return
        self._released = True
        previous = self._previous
        if previous is not None and not previous.done():
            previous.add_done_callback(lambda _: self._finish())
        else:
            self._finish()

    def _finish(self) -> None:
        if not self._done.done():
            self._done.set_result(None)
        self._turns._forget(self.key, self._done)

    async def __aenter__(self) -> 'Turn':
        try:
            await self.wait()
        except BaseException:
            self.release()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class OrderTurns:
    """Serializes work per key in reservation order.

    ``reserve`` is synchronous, so a caller that reserves before its first
    await is guaranteed to run after every earlier reservation for that key.
    Must be used from inside the running event loop.
    """

    def __init__(self):
        self._tails: Dict[Hashable, asyncio.Future] = {}

    def reserve(self, key: Hashable) -> Turn:
        previous = self._tails.get(key)
        done = asyncio.get_running_loop().create_future()
        self._tails[key] = done
        return Turn(self, key, previous, done)

    def _forget(self, key: Hashable, done: asyncio.Future) -> None:
        if self._tails.get(key) is done:
            del self._tails[key]

    def __len__(self) -> int:
        return len(self._tails)

__all__ = ['ExpiringSet', 'OrderTurns', 'Turn']
