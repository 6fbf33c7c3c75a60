"""Fixed-size LRU cache addressed by small integer keys."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, TextIO

from .message import Priority, msg

__all__ = ["CacheNode", "LruCache"]


@dataclass
class CacheNode:
    """One cache slot: its key, the cached item and how often it was used."""

    key: int
    item: Any = None
    uses: int = 1


class LruCache:
    """Cache of ``size`` slots; key ``k`` always lands in slot ``k``.

    The most recently used node is the front, the least recently used the end.
    ``cleanup`` is called with an item whenever its node is released.
    """

    def __init__(
        self,
        size: int,
        name: str,
        cleanup: Optional[Callable[[Any], None]] = None,
    ) -> None:
        if size < 0:
            raise ValueError("cache size must not be negative")
        self.total = size
        self.name = name
        self.cleanup = cleanup
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        # Ordered from least recently used to most recently used.
        self._nodes: OrderedDict[int, CacheNode] = OrderedDict()

    @property
    def count(self) -> int:
        """Number of slots in use."""
        return len(self._nodes)

    @property
    def front(self) -> Optional[CacheNode]:
        """The most recently used node, or None when empty."""
        if not self._nodes:
            return None
        return next(reversed(self._nodes.values()))

    @property
    def end(self) -> Optional[CacheNode]:
        """The least recently used node, or None when empty."""
        if not self._nodes:
            return None
        return next(iter(self._nodes.values()))

    def _release(self, node: CacheNode) -> None:
        if self.cleanup is not None and node.item is not None:
            self.cleanup(node.item)
        node.item = None

    def _dequeue(self) -> None:
        if not self._nodes:
            return
        _, node = self._nodes.popitem(last=False)
        self._release(node)

    def check(self, key: int) -> Optional[CacheNode]:
        """Return the node for ``key``, creating an empty one on a miss.

        The node becomes the front of the queue. Returns None when ``key``
        is out of range.
        """
        if key < 0 or key >= self.total:
            return None

        node = self._nodes.get(key)
        if node is None:
            if self.count == self.total:
                self._dequeue()
            node = CacheNode(key)
            self._nodes[key] = node
            self.misses += 1
        elif node is not self.front:
            self._nodes.move_to_end(key)
            node.uses += 1
            self.hits += 1
        else:
            self.hits += 1
        return self.front

    def evict(self, key: int) -> None:
        """Drop the front node, which must be the one just returned for ``key``."""
        if not self._nodes:
            return
        _, node = self._nodes.popitem(last=True)
        self._nodes.pop(key, None)
        self._release(node)
        self.evictions += 1

    def clear(self) -> None:
        """Release every node, oldest first, after logging the statistics."""
        self._dump_stats()
        while self._nodes:
            self._dequeue()

    def subject_key(self, pid: int) -> int:
        """Slot for a process id."""
        return pid % self.total if self.total else 0

    def object_key(self, num: int) -> int:
        """Slot for a file fingerprint number."""
        return num % self.total if self.total else 0

    def nodes_oldest_first(self) -> Iterator[CacheNode]:
        """Iterate from the least to the most recently used node."""
        return iter(list(self._nodes.values()))

    def _stat_lines(self) -> list[str]:
        used_pct = (100 * self.count) // self.total if self.total else 0
        evict_pct = (100 * self.evictions) // self.hits if self.hits else 0
        return [
            f"{self.name} cache size: {self.total}",
            f"{self.name} slots in use: {self.count} ({used_pct}%)",
            f"{self.name} hits: {self.hits}",
            f"{self.name} misses: {self.misses}",
            f"{self.name} evictions: {self.evictions} ({evict_pct}%)",
        ]

    def _dump_stats(self) -> None:
        for line in self._stat_lines():
            msg(Priority.DEBUG, "%s", line)

    def report(self, stream: TextIO) -> None:
        """Write the cache statistics to ``stream``."""
        for line in self._stat_lines():
            stream.write(line + "\n")