from __future__ import annotations

from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass

from .types import IngestionBatch, Message, QueueEntry


@dataclass(frozen=True)
class EnqueueResult:
    dropped_count: int = 0


class IngestionQueue:
    """In-memory FIFO of ``(group_id, message)`` entries across all groups.

    The queue is a single ordered sequence; grouping only happens when a batch
    is taken from the front. When an enqueue pushes the size past
    ``max_queue_size`` the oldest entries are dropped, whatever their group.
    """

    def __init__(self) -> None:
        self._entries: deque[QueueEntry] = deque()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def size(self) -> int:
        return len(self._entries)

    def entries(self) -> list[QueueEntry]:
        return list(self._entries)

    def enqueue(
        self, group_id: str, messages: Iterable[Message], max_queue_size: int
    ) -> EnqueueResult:
        for message in messages:
            self._entries.append(QueueEntry(group_id=group_id, message=message))
        dropped = 0
        bound = max(0, max_queue_size)
        while len(self._entries) > bound:
            self._entries.popleft()
            dropped += 1
        return EnqueueResult(dropped_count=dropped)

    def take_batch(self, max_batch_size: int) -> IngestionBatch | None:
        if not self._entries:
            return None
        limit = max(1, max_batch_size)
        group_id = self._entries[0].group_id
        messages: list[Message] = []
        while self._entries and len(messages) < limit:
            if self._entries[0].group_id != group_id:
                break
            messages.append(self._entries.popleft().message)
        return IngestionBatch(group_id=group_id, messages=tuple(messages))

    def requeue_batch(self, batch: IngestionBatch) -> None:
        # extendleft reverses its input, so feed it reversed to keep order.
        self._entries.extendleft(
            QueueEntry(group_id=batch.group_id, message=message)
            for message in reversed(batch.messages)
        )

    def clear(self) -> None:
        self._entries.clear()
