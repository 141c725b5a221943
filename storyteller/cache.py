"""Bounded LRU cache of in-flight and finished synthesis tasks, keyed by segment index."""

import asyncio
import enum
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable

from storyteller.constants import PREFETCH_CACHE_CAPACITY
from storyteller.models import SynthesisOutcome

logger = logging.getLogger(__name__)

Producer = Callable[[int], Awaitable[SynthesisOutcome]]


class EntryState(enum.Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"


@dataclass
class CacheEntry:
    index: int
    task: asyncio.Future

    @property
    def state(self) -> EntryState:
        if not self.task.done():
            return EntryState.PENDING
        if self.task.cancelled() or self.task.exception() is not None:
            return EntryState.FAILED
        return EntryState.RESOLVED


class PrefetchCache:
    """At most one synthesis task per index, evicting the least recently used.

    Evicted or cleared tasks keep running; their results are dropped when
    they settle. A task that fails removes its own entry so the next request
    for that index starts over.
    """

    def __init__(self, capacity: int = PREFETCH_CACHE_CAPACITY):
        if capacity < 1:
            raise ValueError(f"Cache capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._entries: OrderedDict[int, CacheEntry] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, index: int) -> bool:
        return index in self._entries

    def indices(self) -> list[int]:
        """Cached indices, least recently used first."""
        return list(self._entries)

    def entry(self, index: int) -> CacheEntry | None:
        return self._entries.get(index)

    def get(self, index: int) -> asyncio.Future | None:
        """Return the task for index (pending or done) and mark it recently used."""
        entry = self._entries.get(index)
        if entry is None:
            return None
        self._entries.move_to_end(index)
        return entry.task

    def ensure(self, index: int, producer: Producer) -> asyncio.Future:
        """Return the existing task for index, or start one with producer(index).

        Must be called from a running event loop.
        """
        existing = self.get(index)
        if existing is not None:
            return existing

        task = asyncio.ensure_future(producer(index))
        while len(self._entries) >= self.capacity:
            evicted, old = self._entries.popitem(last=False)
            logger.debug("Evicted segment %d from prefetch cache (%s)", evicted, old.state.value)

        self._entries[index] = CacheEntry(index=index, task=task)
        task.add_done_callback(lambda done: self._settled(index, done))
        return task

    def invalidate(self, index: int) -> None:
        self._entries.pop(index, None)

    def clear(self) -> None:
        if self._entries:
            logger.debug("Clearing %d cached segments", len(self._entries))
        self._entries.clear()

    def _settled(self, index: int, task: asyncio.Future) -> None:
        if task.cancelled():
            error = None
        else:
            error = task.exception()  # marks the exception as retrieved
            if error is None:
                return

        entry = self._entries.get(index)
        # A newer entry may already occupy this index after eviction or clear()
        if entry is not None and entry.task is task:
            del self._entries[index]
        if error is not None:
            logger.warning("Synthesis for segment %d failed: %s", index, error)
