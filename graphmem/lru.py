from __future__ import annotations

from collections import OrderedDict
from collections.abc import Iterator

MAX_SEEN_TURNS_PER_GROUP = 500
MAX_SEEN_GROUPS = 50


class LruSet:
    """Bounded set; adding an existing key refreshes it, overflow drops the oldest."""

    def __init__(self, max_size: int) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._items: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def touch(self, key: str) -> bool:
        if key not in self._items:
            return False
        self._items.move_to_end(key)
        return True

    def add(self, key: str) -> None:
        if key in self._items:
            self._items.move_to_end(key)
            return
        self._items[key] = None
        while len(self._items) > self.max_size:
            self._items.popitem(last=False)


class DedupTracker:
    """Per-group windows of turn ids that were already queued.

    Both levels are LRU-bounded: each group keeps at most ``max_turns_per_group``
    ids and at most ``max_groups`` groups are tracked. A lookup or mark moves
    the group and the turn id to the most-recently-used position.
    """

    def __init__(
        self,
        *,
        max_turns_per_group: int = MAX_SEEN_TURNS_PER_GROUP,
        max_groups: int = MAX_SEEN_GROUPS,
    ) -> None:
        if max_groups <= 0:
            raise ValueError("max_groups must be positive")
        self.max_turns_per_group = max_turns_per_group
        self.max_groups = max_groups
        self._groups: OrderedDict[str, LruSet] = OrderedDict()

    def __len__(self) -> int:
        return len(self._groups)

    def __contains__(self, group_id: object) -> bool:
        return group_id in self._groups

    def seen_set(self, group_id: str) -> LruSet:
        existing = self._groups.get(group_id)
        if existing is not None:
            self._groups.move_to_end(group_id)
            return existing
        created = LruSet(self.max_turns_per_group)
        self._groups[group_id] = created
        while len(self._groups) > self.max_groups:
            self._groups.popitem(last=False)
        return created

    def seen(self, group_id: str, turn_id: str) -> bool:
        return self.seen_set(group_id).touch(turn_id)

    def mark_seen(self, group_id: str, turn_id: str) -> None:
        self.seen_set(group_id).add(turn_id)

    def reset(self) -> None:
        self._groups.clear()
