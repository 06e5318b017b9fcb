from __future__ import annotations

import json
import threading
from collections.abc import Sequence
from dataclasses import replace

from graphmem.client import MemoryClientError
from graphmem.config import IngestionSettings
from graphmem.group_ids import compute_group_id, session_scope_key
from graphmem.scheduler import DeliveryScheduler
from graphmem.timers import ManualTimers, ThreadingTimers
from graphmem.types import AddMessagesResult, ConversationTurn, GitMetadata, Message, WorkspaceContext

CONTEXT = WorkspaceContext(workspace_key="/repo", folder_basenames=("repo",), owner="octocat")
SESSION_GROUP = compute_group_id("session", "hashed", session_scope_key("s1"))
WORKSPACE_GROUP = compute_group_id("workspace", "hashed", "/repo")


class FakeClient:
    def __init__(self, *, failures: int = 0, reject: int = 0) -> None:
        self.calls: list[tuple[str, list[str | None]]] = []
        self.messages: list[Message] = []
        self.failures = failures
        self.reject = reject
        self.closed = False

    def add_messages(self, group_id: str, messages: Sequence[Message]) -> AddMessagesResult:
        self.calls.append((group_id, [m.name for m in messages]))
        if self.failures > 0:
            self.failures -= 1
            raise MemoryClientError("service unavailable", status=503)
        if self.reject > 0:
            self.reject -= 1
            return AddMessagesResult(success=False, message="rejected")
        self.messages.extend(messages)
        return AddMessagesResult(success=True, message="queued")

    def close(self) -> None:
        self.closed = True


def _settings(**overrides: object) -> IngestionSettings:
    base = IngestionSettings(
        endpoint="http://localhost:8000",
        timeout_ms=1000,
        max_batch_size=20,
        max_queue_size=200,
        max_message_chars=4000,
        scopes="session",
        group_id_strategy="hashed",
        include_system_messages=False,
        include_git_metadata=False,
    )
    return replace(base, **overrides)  # type: ignore[arg-type]


def _turns(count: int) -> list[ConversationTurn]:
    return [
        ConversationTurn(f"t{i}", f"user {i}", f"assistant {i}", 1_000 * i)
        for i in range(1, count + 1)
    ]


def _names(*turn_ids: str) -> list[str]:
    names: list[str] = []
    for turn_id in turn_ids:
        names.extend([f"graphmem.turn.{turn_id}.user", f"graphmem.turn.{turn_id}.assistant"])
    return names


def _build(
    client: FakeClient,
    timers: ManualTimers,
    box: dict[str, IngestionSettings | None],
    **kwargs: object,
) -> DeliveryScheduler:
    return DeliveryScheduler(
        lambda: box["settings"],
        lambda: CONTEXT,
        client_factory=lambda _settings: client,
        timers=timers,
        **kwargs,  # type: ignore[arg-type]
    )


def test_latest_turn_is_delivered_to_each_scope_after_debounce() -> None:
    client = FakeClient()
    timers = ManualTimers()
    scheduler = _build(client, timers, {"settings": _settings(scopes="both")})

    scheduler.enqueue_conversation_snapshot("s1", _turns(1))

    assert scheduler.queue.size == 4
    timers.advance(249)
    assert client.calls == []
    timers.advance(1)
    assert client.calls == [(SESSION_GROUP, _names("t1")), (WORKSPACE_GROUP, _names("t1"))]
    assert scheduler.is_idle()


def test_repeated_snapshot_does_not_requeue_seen_turn() -> None:
    client = FakeClient()
    timers = ManualTimers()
    scheduler = _build(client, timers, {"settings": _settings()})

    scheduler.enqueue_conversation_snapshot("s1", _turns(1))
    scheduler.enqueue_conversation_snapshot("s1", _turns(1))
    timers.run_all()
    scheduler.enqueue_conversation_snapshot("s1", _turns(1))
    timers.run_all()

    assert client.calls == [(SESSION_GROUP, _names("t1"))]


def test_failed_batch_is_retried_with_exponential_backoff() -> None:
    client = FakeClient(failures=2)
    timers = ManualTimers()
    scheduler = _build(client, timers, {"settings": _settings()})

    scheduler.enqueue_conversation_snapshot("s1", _turns(1))
    timers.advance(250)

    assert len(client.calls) == 1
    assert scheduler.last_retry_delay_ms == 500
    assert scheduler.queue.size == 2
    assert scheduler.stats().retry_scheduled is True

    timers.advance(499)
    assert len(client.calls) == 1
    timers.advance(1)
    assert len(client.calls) == 2
    assert scheduler.last_retry_delay_ms == 1000

    timers.advance(1000)
    assert len(client.calls) == 3
    assert client.calls[-1] == (SESSION_GROUP, _names("t1"))
    stats = scheduler.stats()
    assert stats.backoff_ms == 500
    assert stats.pending == 0
    assert stats.failed_batches == 2
    assert stats.delivered_batches == 1


def test_rejected_batch_counts_as_failure() -> None:
    client = FakeClient(reject=1)
    timers = ManualTimers()
    scheduler = _build(client, timers, {"settings": _settings()})

    scheduler.enqueue_conversation_snapshot("s1", _turns(1))
    timers.advance(250)

    assert scheduler.queue.size == 2
    assert scheduler.last_retry_delay_ms == 500
    timers.run_all()
    assert [m.name for m in client.messages] == _names("t1")


def test_failure_keeps_order_and_blocks_later_groups() -> None:
    client = FakeClient(failures=1)
    timers = ManualTimers()
    scheduler = _build(client, timers, {"settings": _settings(scopes="both")})

    scheduler.enqueue_conversation_snapshot("s1", _turns(1))
    timers.advance(250)

    assert client.calls == [(SESSION_GROUP, _names("t1"))]
    assert [entry.group_id for entry in scheduler.queue.entries()] == [
        SESSION_GROUP,
        SESSION_GROUP,
        WORKSPACE_GROUP,
        WORKSPACE_GROUP,
    ]

    timers.run_all()
    assert client.calls[1:] == [(SESSION_GROUP, _names("t1")), (WORKSPACE_GROUP, _names("t1"))]


def test_backoff_is_capped() -> None:
    client = FakeClient(failures=100)
    timers = ManualTimers()
    scheduler = _build(client, timers, {"settings": _settings()})

    scheduler.enqueue_conversation_snapshot("s1", _turns(1))
    timers.advance(250)
    delays = []
    for _ in range(9):
        delays.append(scheduler.last_retry_delay_ms)
        timers.advance(scheduler.last_retry_delay_ms or 0)

    assert delays[:7] == [500, 1000, 2000, 4000, 8000, 16000, 30000]
    assert scheduler.last_retry_delay_ms == 30000


def test_backfill_delivers_older_turns_after_latest() -> None:
    client = FakeClient()
    timers = ManualTimers()
    scheduler = _build(client, timers, {"settings": _settings()})

    scheduler.enqueue_conversation_snapshot("s1", _turns(3))
    timers.advance(250)

    assert client.calls == [(SESSION_GROUP, _names("t3"))]
    assert scheduler.queue.size == 4
    assert scheduler.backfill_cursor("s1") is None

    timers.advance(250)
    assert client.calls[1] == (SESSION_GROUP, _names("t1", "t2"))
    assert scheduler.is_idle()


def test_backfill_is_rate_limited_per_tick() -> None:
    client = FakeClient()
    timers = ManualTimers()
    scheduler = _build(client, timers, {"settings": _settings()})

    scheduler.enqueue_conversation_snapshot("s1", _turns(30))
    timers.advance(250)

    assert scheduler.backfill_cursor("s1") == 25
    assert scheduler.queue.size == 50

    timers.run_all()
    delivered = [m.name for m in client.messages]
    assert len(delivered) == 60
    assert delivered[:2] == _names("t30")
    assert delivered[2:] == _names(*[f"t{i}" for i in range(1, 30)])


def test_backfill_waits_for_queue_capacity() -> None:
    client = FakeClient()
    timers = ManualTimers()
    scheduler = _build(client, timers, {"settings": _settings(max_queue_size=4)})

    scheduler.enqueue_conversation_snapshot("s1", _turns(4))
    timers.advance(250)

    assert scheduler.backfill_cursor("s1") == 2
    assert scheduler.queue.size == 4

    timers.run_all()
    assert scheduler.stats().dropped_messages == 0
    assert sorted(m.name or "" for m in client.messages) == sorted(_names("t1", "t2", "t3", "t4"))


def test_backfill_skips_turn_that_can_never_fit() -> None:
    client = FakeClient()
    timers = ManualTimers()
    scheduler = _build(client, timers, {"settings": _settings(max_queue_size=1)})

    scheduler.enqueue_conversation_snapshot("s1", _turns(2))
    timers.run_all()

    assert scheduler.stats().dropped_messages == 1
    assert scheduler.dedup.seen(SESSION_GROUP, "t1") is True
    assert all("t1" not in (m.name or "") for m in client.messages)
    assert scheduler.is_idle()


def test_backfill_pauses_while_retry_pending() -> None:
    client = FakeClient(failures=100)
    timers = ManualTimers()
    scheduler = _build(client, timers, {"settings": _settings()})

    scheduler.enqueue_conversation_snapshot("s1", _turns(3))
    timers.advance(250)
    timers.advance(250)

    assert scheduler.backfill_cursor("s1") == 0
    assert scheduler.queue.size == 2
    assert scheduler.stats().backfill_scheduled is True


def test_new_snapshot_keeps_backfill_cursor() -> None:
    client = FakeClient()
    timers = ManualTimers()
    scheduler = _build(client, timers, {"settings": _settings()})

    scheduler.enqueue_conversation_snapshot("s1", _turns(30))
    timers.advance(250)
    assert scheduler.backfill_cursor("s1") == 25

    scheduler.enqueue_conversation_snapshot("s1", _turns(31))

    assert scheduler.backfill_cursor("s1") == 25


def test_configuration_change_drops_queued_state() -> None:
    client = FakeClient()
    timers = ManualTimers()
    box: dict[str, IngestionSettings | None] = {"settings": _settings()}
    scheduler = _build(client, timers, box)

    scheduler.enqueue_conversation_snapshot("s1", _turns(3))
    scheduler.notify_configuration_changed()
    timers.run_all()

    assert client.calls == []
    assert scheduler.queue.size == 0
    assert len(scheduler.dedup) == 0
    assert scheduler.is_idle()


def test_settings_change_is_detected_on_flush() -> None:
    client = FakeClient()
    timers = ManualTimers()
    box: dict[str, IngestionSettings | None] = {"settings": _settings()}
    scheduler = _build(client, timers, box)

    scheduler.enqueue_conversation_snapshot("s1", _turns(1))
    box["settings"] = _settings(endpoint="http://other:8000")
    timers.run_all()

    assert client.calls == []
    assert scheduler.queue.size == 0


def test_disabled_settings_make_enqueue_a_noop() -> None:
    client = FakeClient()
    timers = ManualTimers()
    scheduler = _build(client, timers, {"settings": None})

    scheduler.enqueue_conversation_snapshot("s1", _turns(2))

    assert scheduler.queue.size == 0
    assert timers.pending() == 0


def test_settings_disabled_before_flush_clears_queue() -> None:
    client = FakeClient()
    timers = ManualTimers()
    box: dict[str, IngestionSettings | None] = {"settings": _settings()}
    scheduler = _build(client, timers, box)

    scheduler.enqueue_conversation_snapshot("s1", _turns(1))
    box["settings"] = None
    timers.run_all()

    assert client.calls == []
    assert scheduler.is_idle()


def test_settings_provider_errors_are_swallowed() -> None:
    def _boom() -> IngestionSettings:
        raise RuntimeError("config broken")

    scheduler = DeliveryScheduler(_boom, lambda: CONTEXT, timers=ManualTimers())

    scheduler.enqueue_conversation_snapshot("s1", _turns(1))

    assert scheduler.queue.size == 0


def test_client_factory_failure_schedules_retry() -> None:
    timers = ManualTimers()
    client = FakeClient()
    attempts = {"count": 0}

    def _factory(_settings: IngestionSettings) -> FakeClient:
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise RuntimeError("no client")
        return client

    scheduler = DeliveryScheduler(
        lambda: _settings(), lambda: CONTEXT, client_factory=_factory, timers=timers
    )
    scheduler.enqueue_conversation_snapshot("s1", _turns(1))
    timers.advance(250)

    assert scheduler.last_retry_delay_ms == 500
    timers.run_all()
    assert client.calls == [(SESSION_GROUP, _names("t1"))]


def test_ownership_context_is_sent_once_per_group() -> None:
    client = FakeClient()
    timers = ManualTimers()
    scheduler = _build(client, timers, {"settings": _settings(include_system_messages=True)})

    scheduler.enqueue_conversation_snapshot("s1", _turns(1))
    timers.run_all()
    scheduler.enqueue_conversation_snapshot("s1", _turns(2))
    timers.run_all()

    names = [m.name for m in client.messages]
    assert names == ["graphmem.ownership_context.session", *_names("t1", "t2")]
    assert "owner: octocat" in client.messages[0].content


def test_git_metadata_goes_into_source_description() -> None:
    client = FakeClient()
    timers = ManualTimers()
    scheduler = _build(
        client,
        timers,
        {"settings": _settings(include_git_metadata=True)},
        git_metadata_provider=lambda: GitMetadata(branch="main", commit="abc123", dirty=True),
    )

    scheduler.enqueue_conversation_snapshot("s1", _turns(1))
    timers.run_all()

    source = json.loads(client.messages[0].source_description or "{}")
    assert source["scope"] == "session"
    assert source["git"] == {"branch": "main", "commit": "abc123", "dirty": True}


def test_all_scope_includes_user_group_when_key_present() -> None:
    client = FakeClient()
    timers = ManualTimers()
    context = replace(CONTEXT, user_scope_key="github_login:octocat")
    scheduler = DeliveryScheduler(
        lambda: _settings(scopes="all"),
        lambda: context,
        client_factory=lambda _settings: client,
        timers=timers,
    )

    scheduler.enqueue_conversation_snapshot("s1", _turns(1))
    timers.run_all()

    user_group = compute_group_id("user", "hashed", "github_login:octocat")
    assert [group for group, _ in client.calls] == [SESSION_GROUP, WORKSPACE_GROUP, user_group]


def test_flush_now_delivers_synchronously_and_dispose_closes_client() -> None:
    client = FakeClient()
    timers = ManualTimers()
    scheduler = _build(client, timers, {"settings": _settings()})

    scheduler.enqueue_conversation_snapshot("s1", _turns(1))
    scheduler.flush_now()

    assert client.calls == [(SESSION_GROUP, _names("t1"))]
    assert scheduler.stats().flush_scheduled is False

    scheduler.dispose()
    assert client.closed is True
    assert timers.pending() == 0


def test_wait_idle_times_out_when_work_is_pending() -> None:
    scheduler = _build(FakeClient(), ManualTimers(), {"settings": _settings()})
    scheduler.enqueue_conversation_snapshot("s1", _turns(1))

    assert scheduler.wait_idle(0.01, poll_s=0.001) is False


def _unmappable_turn(turn_id: str = "bad") -> ConversationTurn:
    # Far outside the datetime range, so the timestamp cannot be formatted.
    return ConversationTurn(turn_id, "user", "assistant", 10**17)


def test_unmappable_backfill_turn_is_skipped_and_later_turns_still_flow() -> None:
    client = FakeClient()
    timers = ManualTimers()
    scheduler = _build(client, timers, {"settings": _settings()})
    turns = _turns(3)
    turns[1] = _unmappable_turn()

    scheduler.enqueue_conversation_snapshot("s1", turns)
    timers.run_all()

    assert [names for _, names in client.calls] == [_names("t3"), _names("t1")]
    assert scheduler.dedup.seen(SESSION_GROUP, "bad") is False
    assert scheduler.is_idle()


def test_unmappable_latest_turn_still_records_backfill() -> None:
    client = FakeClient()
    timers = ManualTimers()
    scheduler = _build(client, timers, {"settings": _settings()})

    scheduler.enqueue_conversation_snapshot("s1", [*_turns(1), _unmappable_turn()])

    assert scheduler.backfill_cursor("s1") == 0
    timers.run_all()
    assert client.calls == [(SESSION_GROUP, _names("t1"))]
    assert scheduler.dedup.seen(SESSION_GROUP, "bad") is False
    assert scheduler.is_idle()


def test_unmappable_turn_does_not_consume_ownership_context() -> None:
    client = FakeClient()
    timers = ManualTimers()
    scheduler = _build(client, timers, {"settings": _settings(include_system_messages=True)})

    scheduler.enqueue_conversation_snapshot("s1", [_unmappable_turn()])
    timers.run_all()
    scheduler.enqueue_conversation_snapshot("s1", _turns(1))
    timers.run_all()

    names = [m.name for m in client.messages]
    assert names == ["graphmem.ownership_context.session", *_names("t1")]


class ReentrantClient(FakeClient):
    """Enqueues a newer snapshot from inside its first delivery."""

    def __init__(self) -> None:
        super().__init__()
        self.scheduler: DeliveryScheduler | None = None
        self.active = 0
        self.max_active = 0
        self.flushing_seen: list[tuple[bool, bool]] = []

    def add_messages(self, group_id: str, messages: Sequence[Message]) -> AddMessagesResult:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.scheduler is not None and not self.calls:
                self.scheduler.enqueue_conversation_snapshot("s1", _turns(2))
                stats = self.scheduler.stats()
                self.flushing_seen.append((stats.flushing, stats.flush_scheduled))
            return super().add_messages(group_id, messages)
        finally:
            self.active -= 1


def test_enqueue_during_flush_is_delivered_without_overlap() -> None:
    client = ReentrantClient()
    timers = ManualTimers()
    scheduler = _build(client, timers, {"settings": _settings()})
    client.scheduler = scheduler

    scheduler.enqueue_conversation_snapshot("s1", _turns(1))
    timers.run_all()

    assert client.flushing_seen == [(True, False)]
    assert client.max_active == 1
    assert client.calls == [(SESSION_GROUP, _names("t1")), (SESSION_GROUP, _names("t2"))]
    assert scheduler.is_idle()


class BlockingClient:
    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls: list[tuple[str, list[str | None]]] = []
        self.active = 0
        self.max_active = 0
        self._guard = threading.Lock()

    def add_messages(self, group_id: str, messages: Sequence[Message]) -> AddMessagesResult:
        with self._guard:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.calls.append((group_id, [m.name for m in messages]))
        try:
            self.started.set()
            self.release.wait(5)
        finally:
            with self._guard:
                self.active -= 1
        return AddMessagesResult(success=True, message="queued")


def test_enqueue_while_request_in_flight_waits_for_running_flush() -> None:
    client = BlockingClient()
    scheduler = DeliveryScheduler(
        lambda: _settings(),
        lambda: CONTEXT,
        client_factory=lambda _settings: client,
        timers=ThreadingTimers(),
    )
    try:
        scheduler.enqueue_conversation_snapshot("s1", _turns(1))
        assert client.started.wait(5)

        scheduler.enqueue_conversation_snapshot("s1", _turns(2))
        stats = scheduler.stats()
        assert stats.flushing is True
        assert stats.flush_scheduled is False
        assert scheduler.queue.size == 2

        client.release.set()
        assert scheduler.wait_idle(5)
    finally:
        client.release.set()
        scheduler.dispose()

    assert client.calls == [(SESSION_GROUP, _names("t1")), (SESSION_GROUP, _names("t2"))]
    assert client.max_active == 1


def _lock_is_free(scheduler: DeliveryScheduler) -> bool:
    reader = threading.Thread(target=scheduler.stats, daemon=True)
    reader.start()
    reader.join(1)
    return not reader.is_alive()


def test_providers_run_without_holding_the_scheduler_lock() -> None:
    client = FakeClient()
    timers = ManualTimers()
    checks: list[bool] = []

    def context_provider() -> WorkspaceContext:
        checks.append(_lock_is_free(scheduler))
        return CONTEXT

    def git_provider() -> GitMetadata:
        checks.append(_lock_is_free(scheduler))
        return GitMetadata(branch="main")

    scheduler = DeliveryScheduler(
        lambda: _settings(include_git_metadata=True),
        context_provider,
        client_factory=lambda _settings: client,
        timers=timers,
        git_metadata_provider=git_provider,
    )

    scheduler.enqueue_conversation_snapshot("s1", _turns(2))
    timers.run_all()

    # One enqueue and one backfill tick, each asking both providers.
    assert checks == [True, True, True, True]
    assert [names for _, names in client.calls] == [_names("t2"), _names("t1")]
