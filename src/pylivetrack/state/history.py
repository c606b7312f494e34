"""Bounded route change history."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Iterator

from pylivetrack._constants import DEFAULT_ROUTE_LOG_CAPACITY
from pylivetrack.models.route import RouteChangeLogEntry


class RouteChangeLog:
    """Fixed-capacity ring buffer of route changes.

    Append-only; once full the oldest entry is evicted.  Iteration yields
    entries oldest first, so a reroute's "old route" entry always precedes
    the "new route" entry appended after it.
    """

    def __init__(
        self,
        entries: Iterable[RouteChangeLogEntry] = (),
        *,
        capacity: int = DEFAULT_ROUTE_LOG_CAPACITY,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._entries: deque[RouteChangeLogEntry] = deque(entries, maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def append(self, entry: RouteChangeLogEntry) -> None:
        self._entries.append(entry)

    def extend(self, entries: Iterable[RouteChangeLogEntry]) -> None:
        self._entries.extend(entries)

    @property
    def latest(self) -> RouteChangeLogEntry | None:
        return self._entries[-1] if self._entries else None

    def to_list(self) -> list[RouteChangeLogEntry]:
        return list(self._entries)

    def __iter__(self) -> Iterator[RouteChangeLogEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
