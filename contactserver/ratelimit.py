"""
Sliding-window rate limiting keyed by client identity.

The limiter is the only shared mutable state in the server. Stores keep
a log of accepted submission times per identity and implement one atomic
operation, ``hit``: drop entries older than the window, then record the
attempt only if fewer than ``limit`` entries remain. Any span of
``window`` seconds therefore holds at most ``limit`` accepted hits.

Two stores:
  - MemoryRateLimitStore: deques guarded by an asyncio.Lock
  - SqliteRateLimitStore: aiosqlite, conditional INSERT ... SELECT
"""

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

import aiosqlite

from contactserver.models import RateLimitRecord

logger = logging.getLogger("contactserver.ratelimit")


class RateLimitStore:
    """Interface for rate-limit state."""

    async def initialize(self) -> None:
        pass

    async def hit(self, identity: str, now: float, window: float, limit: int) -> RateLimitRecord:
        """
        Atomically test and record one attempt for ``identity`` at ``now``.

        Entries at or before ``now - window`` no longer count, so a
        request exactly on the boundary sees the older hit expired.
        Denied attempts are not recorded.
        """
        raise NotImplementedError

    async def prune(self, now: float, window: float) -> int:
        """Drop expired entries. Returns entries removed."""
        raise NotImplementedError

    async def close(self) -> None:
        pass


class MemoryRateLimitStore(RateLimitStore):
    def __init__(self):
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = asyncio.Lock()

    async def hit(self, identity: str, now: float, window: float, limit: int) -> RateLimitRecord:
        cutoff = now - window
        async with self._lock:
            hits = self._hits.setdefault(identity, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            allowed = len(hits) < limit
            if allowed:
                hits.append(now)
            return RateLimitRecord(identity, hits[0] if hits else now, len(hits), allowed)

    async def prune(self, now: float, window: float) -> int:
        cutoff = now - window
        removed = 0
        async with self._lock:
            for identity in list(self._hits):
                hits = self._hits[identity]
                while hits and hits[0] <= cutoff:
                    hits.popleft()
                    removed += 1
                if not hits:
                    del self._hits[identity]
            return removed

    def __len__(self) -> int:
        return len(self._hits)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS rate_limit_hits (
    identity  TEXT  NOT NULL,
    ts        REAL  NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_rate_limit_hits_identity_ts ON rate_limit_hits(identity, ts);
"""

# One statement: the count and the insert cannot interleave with another writer.
HIT_SQL = """
    INSERT INTO rate_limit_hits (identity, ts)
    SELECT ?, ?
    WHERE (SELECT COUNT(*) FROM rate_limit_hits WHERE identity = ? AND ts > ?) < ?
"""

WINDOW_SQL = """
    SELECT COUNT(*), MIN(ts) FROM rate_limit_hits WHERE identity = ? AND ts > ?
"""


class SqliteRateLimitStore(RateLimitStore):
    """
    Rate-limit hit log in SQLite via aiosqlite.

    Uses parameterized queries exclusively. The test-and-insert is one
    statement, and an asyncio.Lock keeps the statements and commit
    together on the shared connection.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self):
        """Create connection and ensure schema exists."""
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(SCHEMA_SQL)
        await self._db.commit()
        logger.info(f"Rate limit store initialized at {self.db_path}")

    async def hit(self, identity: str, now: float, window: float, limit: int) -> RateLimitRecord:
        cutoff = now - window
        async with self._lock:
            await self._db.execute(
                "DELETE FROM rate_limit_hits WHERE identity = ? AND ts <= ?", (identity, cutoff)
            )
            cursor = await self._db.execute(HIT_SQL, (identity, now, identity, cutoff, limit))
            allowed = cursor.rowcount == 1
            async with self._db.execute(WINDOW_SQL, (identity, cutoff)) as cursor:
                count, oldest = await cursor.fetchone()
            await self._db.commit()
        return RateLimitRecord(identity, oldest if oldest is not None else now, count, allowed)

    async def prune(self, now: float, window: float) -> int:
        async with self._lock:
            cursor = await self._db.execute(
                "DELETE FROM rate_limit_hits WHERE ts <= ?", (now - window,)
            )
            await self._db.commit()
            return cursor.rowcount

    async def close(self):
        if self._db:
            await self._db.close()
            self._db = None


class RateLimiter:
    """At most ``max_requests`` accepted submissions per identity in any ``window`` seconds."""

    def __init__(
        self,
        store: RateLimitStore,
        max_requests: int = 3,
        window: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.max_requests = max_requests
        self.window = window
        self.clock = clock

    async def is_allowed(self, identity: str) -> bool:
        record = await self.store.hit(identity, self.clock(), self.window, self.max_requests)
        if not record.allowed:
            logger.debug(f"Rate limit full ({record.count}/{self.max_requests}) for {identity}")
        return record.allowed

    async def cleanup(self):
        """Remove entries that fell out of the window."""
        removed = await self.store.prune(self.clock(), self.window)
        if removed:
            logger.debug(f"Pruned {removed} expired rate limit entries")
