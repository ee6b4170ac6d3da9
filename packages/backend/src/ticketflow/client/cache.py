"""Query cache — key-addressed store the invalidation router marks stale.

Learn: Keys are tuples, mirroring the browser's query keys:

    ("/api/tasks",)
    ("/api/tasks/42",)
    ("/api/teams", 7, "tasks")

invalidate(key) matches by tuple prefix, so invalidating
("/api/teams", 7) also marks ("/api/teams", 7, "members") stale.
Pass exact=True to touch only the key itself. Listeners get the list
of keys that went stale, which is where a UI would refetch.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Protocol, Union

from ticketflow.events.envelope import utcnow

QueryKey = tuple
KeyLike = Union[QueryKey, str]
Listener = Callable[[list[QueryKey]], None]


class InvalidationTarget(Protocol):
    """What the router needs from a cache."""

    def invalidate(self, key: KeyLike, *, exact: bool = False) -> list[QueryKey]: ...

    def invalidate_where(self, predicate: Callable[[QueryKey], bool]) -> list[QueryKey]: ...


def as_key(key: KeyLike) -> QueryKey:
    return (key,) if isinstance(key, str) else tuple(key)


@dataclass
class QueryEntry:
    data: Any
    stale: bool = False
    updated_at: datetime = field(default_factory=utcnow)


class QueryCache:
    def __init__(self):
        self._entries: dict[QueryKey, QueryEntry] = {}
        self._listeners: list[Listener] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: KeyLike) -> bool:
        return as_key(key) in self._entries

    def keys(self) -> list[QueryKey]:
        return list(self._entries)

    def set(self, key: KeyLike, data: Any) -> None:
        self._entries[as_key(key)] = QueryEntry(data)

    def get(self, key: KeyLike, default: Any = None) -> Any:
        entry = self._entries.get(as_key(key))
        return entry.data if entry else default

    def entry(self, key: KeyLike) -> Optional[QueryEntry]:
        return self._entries.get(as_key(key))

    def is_stale(self, key: KeyLike) -> bool:
        entry = self._entries.get(as_key(key))
        return entry.stale if entry else False

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    # ─── Invalidation ────────────────────────────────────

    def invalidate(self, key: KeyLike, *, exact: bool = False) -> list[QueryKey]:
        prefix = as_key(key)
        if exact:
            return self._mark([prefix] if prefix in self._entries else [])
        n = len(prefix)
        return self._mark(k for k in self._entries if k[:n] == prefix)

    def invalidate_where(self, predicate: Callable[[QueryKey], bool]) -> list[QueryKey]:
        return self._mark(k for k in self._entries if predicate(k))

    def _mark(self, keys: Iterable[QueryKey]) -> list[QueryKey]:
        matched = list(keys)
        for k in matched:
            self._entries[k].stale = True
        if matched:
            for listener in list(self._listeners):
                listener(matched)
        return matched
