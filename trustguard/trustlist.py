"""Ordered list of (index, data) trust records."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any, Iterator

__all__ = ["ListItem", "TrustList"]


@dataclass
class ListItem:
    """One entry: an index (usually a path) and its data."""

    index: Any
    data: Any


class TrustList:
    """Insertion-ordered collection of :class:`ListItem` entries."""

    def __init__(self) -> None:
        self._items: deque[ListItem] = deque()

    def append(self, index: Any, data: Any) -> None:
        """Add an entry at the end."""
        self._items.append(ListItem(index, data))

    def prepend(self, index: Any, data: Any) -> None:
        """Add an entry at the front."""
        self._items.appendleft(ListItem(index, data))

    def contains(self, index: Any) -> bool:
        """True if some entry has this index."""
        return any(item.index == index for item in self._items)

    def remove(self, index: Any) -> bool:
        """Remove the first entry with this index; return whether one was found."""
        for item in self._items:
            if item.index == index:
                self._items.remove(item)
                return True
        return False

    def merge(self, other: TrustList) -> None:
        """Move every entry of ``other`` to the end of this list."""
        self._items.extend(other._items)
        other.clear()

    def clear(self) -> None:
        """Remove every entry."""
        self._items.clear()

    def __iter__(self) -> Iterator[ListItem]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, index: object) -> bool:
        return self.contains(index)