from __future__ import annotations

import functools
import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

from .client import MemoryClient, MemoryClientError
from .config import IngestionSettings
from .group_ids import compute_group_id, session_scope_key
from .lru import MAX_SEEN_GROUPS, MAX_SEEN_TURNS_PER_GROUP, DedupTracker
from .message_mapping import (
    OWNERSHIP_CONTEXT_TURN_ID,
    build_source_description,
    map_turn_to_messages,
    ownership_context_message,
)
from .queue import IngestionQueue
from .timers import ThreadingTimers, TimerHandle, Timers
from .types import (
    AddMessagesResult,
    ConversationTurn,
    GitMetadata,
    Message,
    PendingBackfillState,
    SchedulerStats,
    Target,
    WorkspaceContext,
)

logger = logging.getLogger(__name__)

FLUSH_DELAY_MS = 250
BACKFILL_DELAY_MS = 250
INITIAL_BACKOFF_MS = 500
MAX_BACKOFF_MS = 30_000
MAX_BACKFILL_TURNS_PER_TICK = 25


class DeliveryClient(Protocol):
    def add_messages(self, group_id: str, messages: Sequence[Message]) -> AddMessagesResult: ...


@dataclass(frozen=True)
class _PreparedTarget:
    target: Target
    ownership: Message | None
    messages: list[Message]

    @property
    def slots(self) -> int:
        return len(self.messages) + (1 if self.ownership is not None else 0)


def _default_client_factory(settings: IngestionSettings) -> DeliveryClient:
    return MemoryClient(settings.endpoint, timeout_ms=settings.timeout_ms)


class DeliveryScheduler:
    """Queues conversation turns and delivers them to the memory service.

    All queue, dedup, backfill and timer state sits behind one re-entrant lock.
    The network call made while flushing happens outside the lock, so new
    snapshots can still be enqueued; ``_flush_in_progress`` together with
    ``_flush_requested`` keeps flushes from overlapping.

    A delivery failure puts the batch back at the front of the queue and arms
    a retry timer with exponential backoff; the flush loop stops there rather
    than skipping ahead, so per-group order is kept at the cost of
    head-of-line blocking.
    """

    def __init__(
        self,
        settings_provider: Callable[[], IngestionSettings | None],
        context_provider: Callable[[], WorkspaceContext],
        *,
        client_factory: Callable[[IngestionSettings], DeliveryClient] | None = None,
        timers: Timers | None = None,
        git_metadata_provider: Callable[[], GitMetadata | None] | None = None,
        max_turns_per_group: int = MAX_SEEN_TURNS_PER_GROUP,
        max_groups: int = MAX_SEEN_GROUPS,
    ) -> None:
        self._settings_provider = settings_provider
        self._context_provider = context_provider
        self._client_factory = client_factory or _default_client_factory
        self._timers = timers or ThreadingTimers()
        self._git_metadata_provider = git_metadata_provider

        self._lock = threading.RLock()
        self._queue = IngestionQueue()
        self._dedup = DedupTracker(max_turns_per_group=max_turns_per_group, max_groups=max_groups)
        self._pending_backfill: dict[str, PendingBackfillState] = {}

        self._flush_timer: TimerHandle | None = None
        self._retry_timer: TimerHandle | None = None
        self._backfill_timer: TimerHandle | None = None
        self._flush_in_progress = False
        self._flush_requested = False
        self._backoff_ms = INITIAL_BACKOFF_MS
        self._last_retry_delay_ms: int | None = None
        # Bumped on every reset so callbacks and flushes from before it go inert.
        self._generation = 0
        self._fingerprint: tuple[object, ...] | None = None

        self._client: DeliveryClient | None = None
        self._client_endpoint: str | None = None

        self._delivered_batches = 0
        self._failed_batches = 0
        self._dropped_messages = 0

    # Public entry points -------------------------------------------------

    def enqueue_conversation_snapshot(
        self, session_id: str, turns: Sequence[ConversationTurn]
    ) -> None:
        """Queue the latest turn of a snapshot and remember the rest for backfill.

        Best-effort: any failure is logged and swallowed.
        """

        try:
            settings = self._read_settings()
            if settings is None or not turns:
                return
            # Providers may read files or spawn git; keep them off the lock.
            context = self._context_provider()
            git = self._read_git_metadata(settings)
            with self._lock:
                self._track_settings(settings)
                snapshot = tuple(turns)
                latest = snapshot[-1]
                targets = self._target_groups(settings, session_id, context)

                self._enqueue_turn_to_targets(settings, targets, latest, git, context)

                existing = self._pending_backfill.get(session_id)
                cursor = min(existing.cursor, len(snapshot)) if existing else 0
                self._pending_backfill[session_id] = PendingBackfillState(
                    turns=snapshot, cursor=cursor
                )
                self._schedule_backfill()
        except Exception as exc:
            logger.exception("memory ingestion enqueue failed", exc_info=exc)

    def notify_configuration_changed(self) -> None:
        """Drop all queued, dedup and backfill state after a settings change."""

        with self._lock:
            self._clear_state()
            self._fingerprint = None

    def reset(self) -> None:
        with self._lock:
            self._clear_state()

    def dispose(self) -> None:
        with self._lock:
            self._clear_state()
            client = self._client
            self._client = None
            self._client_endpoint = None
        _close_client(client)

    def flush_now(self) -> None:
        """Run a flush on the calling thread unless a retry is pending."""

        with self._lock:
            if self._retry_timer is not None:
                return
            if self._flush_timer is not None:
                self._flush_timer.cancel()
                self._flush_timer = None
        self._flush_queue()

    def stats(self) -> SchedulerStats:
        with self._lock:
            return SchedulerStats(
                pending=self._queue.size,
                backoff_ms=self._backoff_ms,
                flushing=self._flush_in_progress,
                flush_scheduled=self._flush_timer is not None,
                retry_scheduled=self._retry_timer is not None,
                backfill_scheduled=self._backfill_timer is not None,
                backfill_sessions=len(self._pending_backfill),
                tracked_groups=len(self._dedup),
                delivered_batches=self._delivered_batches,
                failed_batches=self._failed_batches,
                dropped_messages=self._dropped_messages,
            )

    def is_idle(self) -> bool:
        with self._lock:
            return (
                self._queue.size == 0
                and not self._pending_backfill
                and not self._flush_in_progress
                and self._flush_timer is None
                and self._retry_timer is None
                and self._backfill_timer is None
            )

    def wait_idle(self, timeout_s: float, *, poll_s: float = 0.05) -> bool:
        deadline = time.monotonic() + timeout_s
        while not self.is_idle():
            if time.monotonic() >= deadline:
                return False
            time.sleep(poll_s)
        return True

    @property
    def last_retry_delay_ms(self) -> int | None:
        return self._last_retry_delay_ms

    @property
    def queue(self) -> IngestionQueue:
        return self._queue

    @property
    def dedup(self) -> DedupTracker:
        return self._dedup

    def backfill_cursor(self, session_id: str) -> int | None:
        with self._lock:
            state = self._pending_backfill.get(session_id)
            return state.cursor if state else None

    # Configuration -------------------------------------------------------

    def _read_settings(self) -> IngestionSettings | None:
        try:
            return self._settings_provider()
        except Exception as exc:
            logger.exception("memory ingestion settings lookup failed", exc_info=exc)
            return None

    def _track_settings(self, settings: IngestionSettings) -> None:
        # Caller holds the lock.
        fingerprint = settings.fingerprint()
        if self._fingerprint is not None and fingerprint != self._fingerprint:
            logger.info("memory ingestion settings changed; clearing queued state")
            self._clear_state()
        self._fingerprint = fingerprint

    def _read_git_metadata(self, settings: IngestionSettings) -> GitMetadata | None:
        if not settings.include_git_metadata or self._git_metadata_provider is None:
            return None
        try:
            return self._git_metadata_provider()
        except Exception as exc:
            logger.debug("git metadata lookup failed", exc_info=exc)
            return None

    def _target_groups(
        self, settings: IngestionSettings, session_id: str, context: WorkspaceContext
    ) -> list[Target]:
        strategy = settings.group_id_strategy
        targets: list[Target] = []
        if settings.scopes in {"session", "both", "all"}:
            targets.append(
                Target(
                    scope="session",
                    group_id=compute_group_id("session", strategy, session_scope_key(session_id)),
                )
            )
        if settings.scopes in {"workspace", "both", "all"}:
            targets.append(
                Target(
                    scope="workspace",
                    group_id=compute_group_id("workspace", strategy, context.workspace_key),
                )
            )
        if settings.scopes == "all" and context.user_scope_key:
            targets.append(
                Target(
                    scope="user",
                    group_id=compute_group_id("user", strategy, context.user_scope_key),
                )
            )
        return targets

    def _get_client(self, settings: IngestionSettings) -> DeliveryClient:
        if self._client is None or self._client_endpoint != settings.endpoint:
            _close_client(self._client)
            self._client = self._client_factory(settings)
            self._client_endpoint = settings.endpoint
        return self._client

    # Enqueue -------------------------------------------------------------

    def _enqueue(self, settings: IngestionSettings, group_id: str, messages: list[Message]) -> None:
        result = self._queue.enqueue(group_id, messages, settings.max_queue_size)
        if result.dropped_count > 0:
            self._dropped_messages += result.dropped_count
            logger.warning(
                "memory ingestion queue full; dropped %s queued message(s)",
                result.dropped_count,
            )

    def _turn_messages(
        self,
        settings: IngestionSettings,
        target: Target,
        turn: ConversationTurn,
        git: GitMetadata | None,
    ) -> list[Message]:
        source_description = (
            build_source_description(target.scope, git) if settings.include_git_metadata else None
        )
        return map_turn_to_messages(
            turn,
            max_message_chars=settings.max_message_chars,
            source_description=source_description,
        )

    def _ownership_message(
        self,
        settings: IngestionSettings,
        target: Target,
        timestamp_ms: int,
        git: GitMetadata | None,
        context: WorkspaceContext,
    ) -> Message | None:
        if not settings.include_system_messages:
            return None
        if self._dedup.seen(target.group_id, OWNERSHIP_CONTEXT_TURN_ID):
            return None
        return ownership_context_message(
            scope=target.scope,
            owner=context.owner,
            workspace_folder_basenames=context.folder_basenames,
            git=git,
            timestamp_ms=timestamp_ms,
            include_git_metadata=settings.include_git_metadata,
        )

    def _prepare_turn(
        self,
        settings: IngestionSettings,
        targets: Sequence[Target],
        turn: ConversationTurn,
        git: GitMetadata | None,
        context: WorkspaceContext,
    ) -> list[_PreparedTarget] | None:
        """Messages for every target still missing ``turn``.

        Nothing is marked seen here. Returns ``None`` when the turn cannot be
        mapped, so the caller can skip it without losing dedup state.
        """

        prepared: list[_PreparedTarget] = []
        try:
            for target in targets:
                if self._dedup.seen(target.group_id, turn.turn_id):
                    continue
                ownership = self._ownership_message(
                    settings, target, turn.timestamp_ms, git, context
                )
                messages = self._turn_messages(settings, target, turn, git)
                prepared.append(_PreparedTarget(target, ownership, messages))
        except Exception as exc:
            logger.warning("memory ingestion skipped turn %s: cannot map messages: %s", turn.turn_id, exc)
            return None
        return prepared

    def _commit_turn(
        self, settings: IngestionSettings, turn: ConversationTurn, prepared: Sequence[_PreparedTarget]
    ) -> None:
        for item in prepared:
            group_id = item.target.group_id
            if item.ownership is not None:
                self._dedup.mark_seen(group_id, OWNERSHIP_CONTEXT_TURN_ID)
                self._enqueue(settings, group_id, [item.ownership])
            self._dedup.mark_seen(group_id, turn.turn_id)
            self._enqueue(settings, group_id, item.messages)

    def _enqueue_turn_to_targets(
        self,
        settings: IngestionSettings,
        targets: Sequence[Target],
        turn: ConversationTurn,
        git: GitMetadata | None,
        context: WorkspaceContext,
    ) -> None:
        prepared = self._prepare_turn(settings, targets, turn, git, context)
        if prepared:
            self._commit_turn(settings, turn, prepared)
            logger.debug("memory ingestion queued message(s); pending=%s", self._queue.size)
        self._schedule_flush()

    # Flush ---------------------------------------------------------------

    def _schedule_flush(self) -> None:
        if self._retry_timer is not None or self._flush_timer is not None:
            return
        if self._flush_in_progress:
            self._flush_requested = True
            return
        self._flush_timer = self._timers.call_later(
            FLUSH_DELAY_MS, functools.partial(self._on_flush_timer, self._generation)
        )

    def _on_flush_timer(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._flush_timer = None
        self._flush_queue()

    def _on_retry_timer(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._retry_timer = None
        self._flush_queue()

    def _flush_queue(self) -> None:
        settings = self._read_settings()
        with self._lock:
            if self._flush_in_progress:
                return
            if settings is None:
                self._clear_state()
                return
            self._track_settings(settings)
            try:
                client = self._get_client(settings)
            except Exception as exc:
                logger.warning(
                    "memory client creation failed; retrying in %sms: %s", self._backoff_ms, exc
                )
                self._schedule_retry()
                return
            self._flush_in_progress = True
            self._flush_requested = False
            generation = self._generation

        try:
            while True:
                with self._lock:
                    if generation != self._generation:
                        return
                    batch = self._queue.take_batch(settings.max_batch_size)
                if batch is None:
                    return
                try:
                    result = client.add_messages(batch.group_id, batch.messages)
                    if not result.success:
                        raise MemoryClientError(result.message or "memory service rejected batch")
                except Exception as exc:
                    with self._lock:
                        if generation != self._generation:
                            return
                        self._queue.requeue_batch(batch)
                        self._failed_batches += 1
                        logger.warning(
                            "memory ingestion request failed for %s; retrying in %sms: %s",
                            batch.group_id,
                            self._backoff_ms,
                            exc,
                        )
                        self._schedule_retry()
                    return
                with self._lock:
                    if generation != self._generation:
                        return
                    self._delivered_batches += 1
                    self._backoff_ms = INITIAL_BACKOFF_MS
                    logger.debug(
                        "memory ingestion flushed %s message(s); pending=%s",
                        len(batch.messages),
                        self._queue.size,
                    )
        finally:
            with self._lock:
                if generation == self._generation:
                    self._flush_in_progress = False
                    if (
                        self._flush_requested
                        and self._retry_timer is None
                        and self._queue.size > 0
                    ):
                        self._flush_requested = False
                        self._schedule_flush()

    def _schedule_retry(self) -> None:
        if self._retry_timer is not None:
            return
        delay_ms = self._backoff_ms
        self._last_retry_delay_ms = delay_ms
        self._retry_timer = self._timers.call_later(
            delay_ms, functools.partial(self._on_retry_timer, self._generation)
        )
        self._backoff_ms = min(self._backoff_ms * 2, MAX_BACKOFF_MS)

    # Backfill ------------------------------------------------------------

    def _schedule_backfill(self) -> None:
        if self._backfill_timer is not None or not self._pending_backfill:
            return
        self._backfill_timer = self._timers.call_later(
            BACKFILL_DELAY_MS, functools.partial(self._on_backfill_timer, self._generation)
        )

    def _on_backfill_timer(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._backfill_timer = None

        settings = self._read_settings()
        context: WorkspaceContext | None = None
        git: GitMetadata | None = None
        if settings is not None:
            try:
                context = self._context_provider()
            except Exception as exc:
                logger.exception("memory backfill context lookup failed", exc_info=exc)
            git = self._read_git_metadata(settings)

        with self._lock:
            if generation != self._generation:
                return
            if settings is None:
                self._pending_backfill.clear()
                return
            if context is None:
                self._schedule_backfill()
                return
            try:
                self._process_backfill(settings, context, git)
            except Exception as exc:
                logger.exception("memory backfill tick failed", exc_info=exc)

    def _process_backfill(
        self,
        settings: IngestionSettings,
        context: WorkspaceContext,
        git: GitMetadata | None,
    ) -> None:
        # Caller holds the lock.
        self._track_settings(settings)

        # Do not pile more work onto an endpoint that is already failing.
        if self._retry_timer is not None:
            self._schedule_backfill()
            return

        did_enqueue = False
        try:
            for session_id, state in self._pending_backfill.items():
                targets = self._target_groups(settings, session_id, context)
                turns_this_tick = 0
                queue_full = False
                while not state.done and turns_this_tick < MAX_BACKFILL_TURNS_PER_TICK:
                    turn = state.turns[state.cursor]
                    prepared = self._prepare_turn(settings, targets, turn, git, context)
                    if not prepared:
                        # Already delivered everywhere, or unmappable and left unseen.
                        state.cursor += 1
                        continue

                    required = sum(item.slots for item in prepared)
                    if required > settings.max_queue_size:
                        # Waiting for room cannot help a turn larger than the
                        # whole queue, so it is skipped instead of blocking the
                        # rest of the session.
                        logger.warning(
                            "memory backfill skipped turn %s: needs %s slots, queue holds %s",
                            turn.turn_id,
                            required,
                            settings.max_queue_size,
                        )
                        for item in prepared:
                            self._dedup.mark_seen(item.target.group_id, turn.turn_id)
                        state.cursor += 1
                        continue
                    if self._queue.size + required > settings.max_queue_size:
                        queue_full = True
                        break

                    self._commit_turn(settings, turn, prepared)
                    did_enqueue = True
                    turns_this_tick += 1
                    state.cursor += 1

                if queue_full:
                    break
        finally:
            for session_id in [sid for sid, st in self._pending_backfill.items() if st.done]:
                del self._pending_backfill[session_id]

            if did_enqueue:
                logger.debug("memory backfill queued message(s); pending=%s", self._queue.size)
                self._schedule_flush()

            if self._pending_backfill:
                self._schedule_backfill()

    # Reset ---------------------------------------------------------------

    def _clear_state(self) -> None:
        self._generation += 1
        self._queue.clear()
        self._pending_backfill.clear()
        self._dedup.reset()
        for timer in (self._flush_timer, self._retry_timer, self._backfill_timer):
            if timer is not None:
                timer.cancel()
        self._flush_timer = None
        self._retry_timer = None
        self._backfill_timer = None
        self._flush_in_progress = False
        self._flush_requested = False
        self._backoff_ms = INITIAL_BACKOFF_MS


def _close_client(client: object | None) -> None:
    close = getattr(client, "close", None)
    if callable(close):
        try:
            close()
        except Exception as exc:
            logger.debug("memory client close failed", exc_info=exc)
