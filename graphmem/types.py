from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

Scope = Literal["session", "workspace", "user"]
RoleType = Literal["user", "assistant", "system"]


@dataclass(frozen=True)
class Message:
    role_type: RoleType
    role: str
    content: str
    name: str | None = None
    timestamp: str | None = None
    source_description: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "role_type": self.role_type,
            "role": self.role,
            "content": self.content,
        }
        if self.name is not None:
            payload["name"] = self.name
        if self.timestamp is not None:
            payload["timestamp"] = self.timestamp
        if self.source_description is not None:
            payload["source_description"] = self.source_description
        return payload


@dataclass(frozen=True)
class ConversationTurn:
    turn_id: str
    user_message: str
    assistant_message: str
    timestamp_ms: int

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> ConversationTurn:
        turn_id = data.get("turn_id") or data.get("turnId")
        if not isinstance(turn_id, str) or not turn_id:
            raise ValueError("turn is missing turn_id")
        timestamp = data.get("timestamp_ms", data.get("timestampMs", 0))
        try:
            timestamp_ms = int(timestamp)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"invalid timestamp for turn {turn_id}") from exc
        return cls(
            turn_id=turn_id,
            user_message=str(data.get("user_message", data.get("userMessage")) or ""),
            assistant_message=str(
                data.get("assistant_message", data.get("assistantMessage")) or ""
            ),
            timestamp_ms=timestamp_ms,
        )


@dataclass(frozen=True)
class QueueEntry:
    group_id: str
    message: Message


@dataclass(frozen=True)
class IngestionBatch:
    group_id: str
    messages: tuple[Message, ...]


@dataclass(frozen=True)
class Target:
    scope: Scope
    group_id: str


@dataclass
class PendingBackfillState:
    turns: tuple[ConversationTurn, ...]
    cursor: int = 0

    @property
    def done(self) -> bool:
        return self.cursor >= len(self.turns)


@dataclass(frozen=True)
class Fact:
    fact: str
    uuid: str | None = None
    name: str | None = None
    valid_at: str | None = None
    invalid_at: str | None = None
    created_at: str | None = None
    expired_at: str | None = None

    @property
    def dedup_key(self) -> str:
        return self.uuid or self.fact

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> Fact:
        def _opt(key: str) -> str | None:
            value = data.get(key)
            return str(value) if value is not None else None

        return cls(
            fact=str(data.get("fact") or ""),
            uuid=_opt("uuid") or None,
            name=_opt("name"),
            valid_at=_opt("valid_at"),
            invalid_at=_opt("invalid_at"),
            created_at=_opt("created_at"),
            expired_at=_opt("expired_at"),
        )


@dataclass(frozen=True)
class RecalledFact:
    scope: Scope
    fact: Fact


@dataclass(frozen=True)
class AddMessagesResult:
    success: bool
    message: str = ""


@dataclass(frozen=True)
class GitMetadata:
    branch: str | None = None
    commit: str | None = None
    dirty: bool | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.branch is not None:
            payload["branch"] = self.branch
        if self.commit is not None:
            payload["commit"] = self.commit
        if self.dirty is not None:
            payload["dirty"] = self.dirty
        return payload


@dataclass(frozen=True)
class SchedulerStats:
    pending: int
    backoff_ms: int
    flushing: bool
    flush_scheduled: bool
    retry_scheduled: bool
    backfill_scheduled: bool
    backfill_sessions: int
    tracked_groups: int
    delivered_batches: int = 0
    failed_batches: int = 0
    dropped_messages: int = 0


@dataclass(frozen=True)
class WorkspaceContext:
    """Identity inputs for group ids and ownership messages."""

    workspace_key: str
    folder_basenames: tuple[str, ...] = ()
    owner: str | None = None
    user_scope_key: str | None = None
