"""
In-memory presence tracking with batched persistence.

Heartbeats arrive every few seconds per candidate, so they only touch the
in-memory map. A background flusher periodically evicts stale connections and
bulk-upserts the dirty entries to the ``session_heartbeats`` table.
"""
import asyncio
import itertools
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from ..core.config import settings
from ..utils.timezone import SystemClock

logger = logging.getLogger(__name__)

CONNECTED = "connected"
DISCONNECTED = "disconnected"


@dataclass
class PresenceEntry:
    attempt_id: int
    connection_id: str
    last_seen_at: datetime
    status: str = CONNECTED
    dirty: bool = True
    # bumped on every mutation; lets a flush tell whether an entry changed under it
    version: int = 0


@dataclass
class FlushResult:
    flushed: int = 0
    evicted: int = 0
    failed: bool = False
    error: Optional[str] = None


PresenceKey = Tuple[int, str]


class PresenceTracker:
    """Owned, lock-guarded map of live connections.

    One instance is created by the application and handed to every component
    that needs it.
    """

    def __init__(self, clock=None, stale_seconds: Optional[int] = None):
        self.clock = clock or SystemClock()
        self.stale_after = timedelta(seconds=stale_seconds or settings.presence_stale_seconds)
        self._entries: Dict[PresenceKey, PresenceEntry] = {}
        self._lock = asyncio.Lock()
        # tracker-wide so a re-created entry never reuses a flushed version
        self._versions = itertools.count(1)

    async def update(
        self,
        attempt_id: int,
        connection_id: str,
        status: str = CONNECTED,
        last_seen_at: Optional[datetime] = None,
    ) -> Tuple[PresenceEntry, Optional[datetime]]:
        """Upsert an entry; returns (entry copy, previous last_seen_at)."""
        last_seen_at = last_seen_at or self.clock.now()
        key = (attempt_id, connection_id)
        async with self._lock:
            existing = self._entries.get(key)
            previous_seen = existing.last_seen_at if existing else None
            entry = PresenceEntry(attempt_id, connection_id, last_seen_at, status, True, next(self._versions))
            self._entries[key] = entry
            return replace(entry), previous_seen

    async def get(self, attempt_id: int, connection_id: str) -> Optional[PresenceEntry]:
        async with self._lock:
            entry = self._entries.get((attempt_id, connection_id))
            return replace(entry) if entry else None

    async def get_all_for_attempt(self, attempt_id: int) -> List[PresenceEntry]:
        """Connected entries for one attempt."""
        async with self._lock:
            return [
                replace(entry)
                for (entry_attempt, _), entry in self._entries.items()
                if entry_attempt == attempt_id and entry.status == CONNECTED
            ]

    async def latest_seen(self, attempt_id: int) -> Optional[datetime]:
        entries = await self.get_all_for_attempt(attempt_id)
        if not entries:
            return None
        return max(entry.last_seen_at for entry in entries)

    async def remove(self, attempt_id: int, connection_id: str) -> bool:
        async with self._lock:
            return self._entries.pop((attempt_id, connection_id), None) is not None

    async def dirty_entries(self) -> List[PresenceEntry]:
        async with self._lock:
            return [replace(entry) for entry in self._entries.values() if entry.dirty]

    async def mark_clean(self, flushed: List[PresenceEntry]) -> int:
        """Clear ``dirty`` only on entries still identical to what was flushed."""
        cleaned = 0
        async with self._lock:
            for snapshot in flushed:
                current = self._entries.get((snapshot.attempt_id, snapshot.connection_id))
                if current is not None and current.version == snapshot.version:
                    current.dirty = False
                    cleaned += 1
        return cleaned

    async def evict_stale(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock.now()
        async with self._lock:
            stale = [
                key for key, entry in self._entries.items()
                if now - entry.last_seen_at > self.stale_after
            ]
            for key in stale:
                del self._entries[key]
        return len(stale)

    async def flush(self, store) -> FlushResult:
        """Evict stale entries, then bulk-upsert the dirty ones through ``store``.

        ``store`` must expose ``upsert_presence(entries)``. On failure every
        entry is left dirty for the next tick.
        """
        result = FlushResult(evicted=await self.evict_stale())
        if result.evicted:
            logger.info(f"Removed {result.evicted} stale presence session(s)")

        dirty = await self.dirty_entries()
        if not dirty:
            return result

        try:
            await store.upsert_presence(dirty)
        except Exception as e:
            logger.error(f"Presence flush error: {e}")
            result.failed = True
            result.error = str(e)
            return result

        await self.mark_clean(dirty)
        result.flushed = len(dirty)
        logger.debug(f"Flushed {result.flushed} presence entr(ies)")
        return result

    async def disconnect(self, attempt_id: int, connection_id: str, store) -> bool:
        """Mark disconnected, persist that one entry immediately, then drop it.

        Returns whether the out-of-band write succeeded. The entry is removed
        either way; the periodic flush has no copy left to retry.
        """
        entry, _ = await self.update(attempt_id, connection_id, status=DISCONNECTED)
        persisted = True
        try:
            await store.upsert_presence([entry])
        except Exception as e:
            logger.error(f"Presence disconnect flush failed for attempt {attempt_id}: {e}")
            persisted = False
        await self.remove(attempt_id, connection_id)
        return persisted

    def __len__(self) -> int:
        return len(self._entries)


class PresenceFlusher:
    """Single background timer driving ``PresenceTracker.flush``."""

    def __init__(self, tracker: PresenceTracker, store, interval_seconds: Optional[int] = None, on_tick=None):
        self.tracker = tracker
        self.store = store
        self.interval = interval_seconds or settings.presence_flush_interval_seconds
        self.on_tick = on_tick
        self._task: Optional[asyncio.Task] = None
        self.last_result: Optional[FlushResult] = None

    async def tick(self) -> FlushResult:
        self.last_result = await self.tracker.flush(self.store)
        if self.on_tick is not None:
            await self.on_tick(self.last_result)
        return self.last_result

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Presence flush tick failed: {e}", exc_info=True)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
            logger.info(f"Presence flusher started (every {self.interval}s)")

    async def stop(self) -> FlushResult:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        # final flush so nothing buffered is lost on shutdown
        self.last_result = await self.tracker.flush(self.store)
        return self.last_result
