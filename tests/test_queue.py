from __future__ import annotations

from graphmem.queue import IngestionQueue
from graphmem.types import Message


def _msg(content: str) -> Message:
    return Message(role_type="user", role="user", content=content)


def _contents(queue: IngestionQueue) -> list[tuple[str, str]]:
    return [(entry.group_id, entry.message.content) for entry in queue.entries()]


def test_enqueue_drops_oldest_entries_past_bound() -> None:
    queue = IngestionQueue()
    queue.enqueue("g1", [_msg("a"), _msg("b")], max_queue_size=3)

    result = queue.enqueue("g2", [_msg("c"), _msg("d")], max_queue_size=3)

    assert result.dropped_count == 1
    assert _contents(queue) == [("g1", "b"), ("g2", "c"), ("g2", "d")]


def test_enqueue_can_drop_messages_from_the_same_call() -> None:
    queue = IngestionQueue()

    result = queue.enqueue("g1", [_msg("a"), _msg("b"), _msg("c")], max_queue_size=2)

    assert result.dropped_count == 1
    assert _contents(queue) == [("g1", "b"), ("g1", "c")]


def test_take_batch_stops_at_group_boundary() -> None:
    queue = IngestionQueue()
    queue.enqueue("g1", [_msg("a"), _msg("b")], max_queue_size=10)
    queue.enqueue("g2", [_msg("c")], max_queue_size=10)
    queue.enqueue("g1", [_msg("d")], max_queue_size=10)

    first = queue.take_batch(max_batch_size=10)
    second = queue.take_batch(max_batch_size=10)
    third = queue.take_batch(max_batch_size=10)

    assert first is not None and second is not None and third is not None
    assert first.group_id == "g1"
    assert [m.content for m in first.messages] == ["a", "b"]
    assert second.group_id == "g2"
    assert third.group_id == "g1"
    assert [m.content for m in third.messages] == ["d"]
    assert queue.take_batch(max_batch_size=10) is None


def test_take_batch_respects_max_batch_size() -> None:
    queue = IngestionQueue()
    queue.enqueue("g1", [_msg(str(i)) for i in range(5)], max_queue_size=10)

    batch = queue.take_batch(max_batch_size=2)

    assert batch is not None
    assert [m.content for m in batch.messages] == ["0", "1"]
    assert queue.size == 3


def test_requeue_batch_restores_front_order() -> None:
    queue = IngestionQueue()
    queue.enqueue("g1", [_msg("a"), _msg("b"), _msg("c")], max_queue_size=10)
    queue.enqueue("g2", [_msg("x")], max_queue_size=10)

    batch = queue.take_batch(max_batch_size=2)
    assert batch is not None
    queue.requeue_batch(batch)

    assert _contents(queue) == [("g1", "a"), ("g1", "b"), ("g1", "c"), ("g2", "x")]


def test_take_batch_on_empty_queue_returns_none() -> None:
    queue = IngestionQueue()

    assert queue.take_batch(max_batch_size=5) is None
    assert len(queue) == 0


def test_clear_empties_queue() -> None:
    queue = IngestionQueue()
    queue.enqueue("g1", [_msg("a")], max_queue_size=10)

    queue.clear()

    assert queue.size == 0
    assert queue.entries() == []
