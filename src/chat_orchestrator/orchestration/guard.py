"""
Per-scope mutual exclusion.

A ConcurrencyGuard owns one asyncio.Lock per scope, created lazily. Chat
traffic uses the non-blocking ``try_acquire`` so a busy scope drops the
message instead of queueing it; background work uses ``acquire`` with a
bounded wait.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field

from ..core.models import Scope

logger = logging.getLogger(__name__)


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_used: float = field(default_factory=time.monotonic)


class ConcurrencyGuard:
    """Registry of per-scope locks with idle eviction."""

    def __init__(self, idle_seconds: float = 300.0, cleanup_interval: float = 300.0):
        self.idle_seconds = idle_seconds
        self.cleanup_interval = cleanup_interval
        self._entries: dict[str, _LockEntry] = {}
        self._cleanup_task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None

    def _entry(self, scope: Scope | str) -> _LockEntry:
        key = scope.key if isinstance(scope, Scope) else scope
        entry = self._entries.get(key)
        if entry is None:
            entry = _LockEntry()
            self._entries[key] = entry
        entry.last_used = time.monotonic()
        return entry

    async def try_acquire(self, scope: Scope | str) -> bool:
        """Acquire the scope's lock if free. Never waits."""
        entry = self._entry(scope)
        if entry.lock.locked():
            return False
        # Uncontended acquire completes without suspending
        await entry.lock.acquire()
        return True

    async def acquire(self, scope: Scope | str, timeout: float | None = None) -> bool:
        """Wait at most ``timeout`` seconds for the scope's lock."""
        entry = self._entry(scope)
        if not entry.lock.locked():
            # wait_for with a zero timeout cancels before the acquire runs
            await entry.lock.acquire()
            return True
        try:
            await asyncio.wait_for(entry.lock.acquire(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    def release(self, scope: Scope | str) -> None:
        key = scope.key if isinstance(scope, Scope) else scope
        entry = self._entries.get(key)
        if entry is None or not entry.lock.locked():
            logger.warning(f"Release of unlocked scope {key}")
            return
        entry.last_used = time.monotonic()
        entry.lock.release()

    def is_locked(self, scope: Scope | str) -> bool:
        key = scope.key if isinstance(scope, Scope) else scope
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)

    def evict_idle(self, max_idle: float | None = None) -> int:
        """Drop unlocked entries idle for longer than ``max_idle`` seconds."""
        max_idle = self.idle_seconds if max_idle is None else max_idle
        cutoff = time.monotonic() - max_idle
        stale = [
            key
            for key, entry in self._entries.items()
            if not entry.lock.locked() and entry.last_used <= cutoff
        ]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug(f"Evicted {len(stale)} idle scope locks")
        return len(stale)

    def start_cleanup(self) -> None:
        """Start the periodic idle-eviction loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._stop_event = asyncio.Event()
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(self._stop_event))

    async def _cleanup_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.cleanup_interval)
            except TimeoutError:
                self.evict_idle()

    async def stop(self) -> None:
        if self._cleanup_task is None:
            return
        if self._stop_event is not None:
            self._stop_event.set()
        await self._cleanup_task
        self._cleanup_task = None
        self._stop_event = None
