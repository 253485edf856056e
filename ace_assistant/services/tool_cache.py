"""
ToolCache: explicit memoization for tool-building fetches.

Passed into the registry builder instead of living at module level.
Concurrent callers for the same key share one in-flight fetch. A fetch
that fails (or is cancelled) drops its entry, so the next call retries
instead of replaying the failure forever. Entries optionally expire.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

_PENDING = object()


@dataclass
class _Entry:
    task: "asyncio.Future[Any]"
    created_at: float
    value: Any = field(default=_PENDING)


class ToolCache:
    """Keyed cache of awaited results with in-flight sharing."""

    def __init__(self, ttl_s: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self._ttl_s = ttl_s
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not self._expired(entry)

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, entry: _Entry) -> bool:
        return self._ttl_s is not None and self._clock() - entry.created_at > self._ttl_s

    async def get_or_fetch(self, key: str, fetch: Callable[[], Awaitable[Any]]) -> Any:
        entry = self._entries.get(key)
        if entry is not None and self._expired(entry):
            self._entries.pop(key, None)
            entry = None

        if entry is None:
            task = asyncio.ensure_future(fetch())
            entry = _Entry(task=task, created_at=self._clock())
            self._entries[key] = entry
            task.add_done_callback(lambda done, k=key, e=entry: self._settle(k, e, done))
            logger.debug("tool_cache_miss", extra={"cache_key": key})
        elif entry.value is not _PENDING:
            return entry.value

        # shield: one waiter being cancelled must not cancel the shared fetch
        return await asyncio.shield(entry.task)

    def _settle(self, key: str, entry: _Entry, task: "asyncio.Future[Any]") -> None:
        if task.cancelled() or task.exception() is not None:
            if self._entries.get(key) is entry:
                self._entries.pop(key, None)
            reason = "cancelled" if task.cancelled() else repr(task.exception())
            logger.info("tool_cache_evicted", extra={"cache_key": key, "reason": reason})
            return
        entry.value = task.result()

    def invalidate(self, key: Optional[str] = None) -> None:
        """Drop one key, or everything when ``key`` is None."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)
