"""
Client-side optimistic cache for attendance lists.

``QueryCache`` is a small keyed store with staleness, subscriptions and
fetch generations (a fetch started before a speculative write cannot land on
top of it). ``OptimisticAttendanceCache`` layers the attendance toggle
discipline on one class-list query:

- on_action_start: snapshot, flip the class locally, publish immediately.
- on_action_error: put the exact snapshot back, staleness and absence included.
- on_action_settle: mark the list and related queries stale so the next
  read refetches canonical state.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Hashable, List, Optional, Sequence, Tuple

QueryKey = Tuple[Hashable, ...]
Listener = Callable[[QueryKey, Any], None]

OPTIMISTIC_ROW_ID = "optimistic"


@dataclass
class CacheEntry:
    data: Any = None
    stale: bool = False


@dataclass(frozen=True)
class Snapshot:
    key: QueryKey
    class_id: str
    data: Any
    existed: bool = True
    stale: bool = False


def _matches(key: QueryKey, prefix: QueryKey) -> bool:
    return key[: len(prefix)] == prefix


class QueryCache:
    def __init__(self):
        self._entries: Dict[QueryKey, CacheEntry] = {}
        # outlives entries: a cancelled fetch stays cancelled after a rollback removes the entry
        self._generations: Dict[QueryKey, int] = {}
        self._listeners: Dict[QueryKey, List[Listener]] = {}

    def _entry(self, key: QueryKey) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = CacheEntry(stale=True)
        return entry

    def has(self, key: QueryKey) -> bool:
        return key in self._entries

    def get_data(self, key: QueryKey) -> Any:
        entry = self._entries.get(key)
        return entry.data if entry else None

    def is_stale(self, key: QueryKey) -> bool:
        entry = self._entries.get(key)
        return True if entry is None else entry.stale

    def set_data(self, key: QueryKey, data: Any) -> None:
        entry = self._entry(key)
        entry.data = data
        entry.stale = False
        self._publish(key, data)

    def restore(self, key: QueryKey, data: Any, *, existed: bool, stale: bool) -> None:
        """Put an entry back exactly as it was, including its absence."""
        if existed:
            entry = self._entry(key)
            entry.data = data
            entry.stale = stale
        else:
            self._entries.pop(key, None)
        self._publish(key, data)

    def begin_fetch(self, key: QueryKey) -> int:
        return self._generations.get(key, 0)

    def resolve_fetch(self, key: QueryKey, token: int, data: Any) -> bool:
        """Store fetched ``data`` unless the query was cancelled since ``begin_fetch``."""
        if self._generations.get(key, 0) != token:
            return False
        entry = self._entry(key)
        entry.data = data
        entry.stale = False
        self._publish(key, data)
        return True

    def cancel(self, key: QueryKey) -> None:
        self._generations[key] = self._generations.get(key, 0) + 1

    def invalidate(self, prefix: QueryKey) -> List[QueryKey]:
        marked = [key for key in self._entries if _matches(key, prefix)]
        for key in marked:
            self._entries[key].stale = True
        return marked

    def subscribe(self, key: QueryKey, listener: Listener) -> Callable[[], None]:
        self._listeners.setdefault(key, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(key, [])
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def _publish(self, key: QueryKey, data: Any) -> None:
        for listener in list(self._listeners.get(key, [])):
            listener(key, data)


def flip_class(entry: Dict[str, Any], *, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Present becomes absent and anything else becomes present."""
    flipped = dict(entry)
    if entry.get("attendance"):
        flipped["attendance"] = None
        flipped["status"] = "absent"
        return flipped
    moment = now or datetime.now(timezone.utc)
    flipped["attendance"] = {
        "classID": entry.get("classID"),
        "userID": user_id,
        "courseID": entry.get("courseID"),
        "classTime": entry.get("classStartTime"),
        "checkinTime": moment.isoformat(),
        "rowID": OPTIMISTIC_ROW_ID,
    }
    flipped["status"] = "present"
    return flipped


@dataclass
class OptimisticAttendanceCache:
    cache: QueryCache
    key: QueryKey
    user_id: str
    related: Sequence[QueryKey] = field(default_factory=lambda: (("subject-ledger",), ("attendance-summary",)))

    def on_action_start(self, class_id: str) -> Snapshot:
        self.cache.cancel(self.key)
        current = self.cache.get_data(self.key)
        snapshot = Snapshot(
            key=self.key,
            class_id=class_id,
            data=copy.deepcopy(current),
            existed=self.cache.has(self.key),
            stale=self.cache.is_stale(self.key),
        )
        rows = current or []
        self.cache.set_data(
            self.key,
            [flip_class(row, user_id=self.user_id) if row.get("classID") == class_id else copy.deepcopy(row) for row in rows],
        )
        return snapshot

    def on_action_error(self, class_id: str, snapshot: Snapshot) -> None:
        if snapshot.class_id != class_id:
            raise ValueError(f"Snapshot belongs to class {snapshot.class_id}, not {class_id}")
        self.cache.restore(snapshot.key, copy.deepcopy(snapshot.data), existed=snapshot.existed, stale=snapshot.stale)

    def on_action_settle(self, class_id: str) -> List[QueryKey]:
        """Mark the list and related queries stale, whatever the outcome."""
        marked = self.cache.invalidate(self.key)
        for prefix in self.related:
            marked.extend(self.cache.invalidate(prefix))
        return marked
