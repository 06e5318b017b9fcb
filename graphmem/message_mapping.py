from __future__ import annotations

import datetime as dt
import json
from collections.abc import Sequence

from .types import ConversationTurn, GitMetadata, Message, Scope

SOURCE_NAME = "graphmem"
OWNERSHIP_CONTEXT_TURN_ID = "graphmem.ownership_context.v1"
ELLIPSIS = "…"


def truncate_for_memory(text: str, max_chars: int) -> str:
    if max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text
    if max_chars == 1:
        return ELLIPSIS
    return text[: max_chars - 1] + ELLIPSIS


def iso_from_ms(timestamp_ms: int) -> str:
    moment = dt.datetime.fromtimestamp(timestamp_ms / 1000.0, tz=dt.UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_source_description(
    scope: Scope, git: GitMetadata | None, *, event: str | None = None
) -> str:
    payload: dict[str, object] = {"source": SOURCE_NAME}
    if event:
        payload["event"] = event
    payload["scope"] = scope
    if git is not None:
        git_payload = git.to_payload()
        if git_payload:
            payload["git"] = git_payload
    return json.dumps(payload, ensure_ascii=False)


def map_turn_to_messages(
    turn: ConversationTurn,
    *,
    max_message_chars: int,
    source_description: str | None = None,
) -> list[Message]:
    timestamp = iso_from_ms(turn.timestamp_ms)
    return [
        Message(
            role_type="user",
            role="user",
            name=f"{SOURCE_NAME}.turn.{turn.turn_id}.user",
            content=truncate_for_memory(turn.user_message, max_message_chars),
            timestamp=timestamp,
            source_description=source_description,
        ),
        Message(
            role_type="assistant",
            role="assistant",
            name=f"{SOURCE_NAME}.turn.{turn.turn_id}.assistant",
            content=truncate_for_memory(turn.assistant_message, max_message_chars),
            timestamp=timestamp,
            source_description=source_description,
        ),
    ]


def format_ownership_context(
    *,
    scope: Scope,
    owner: str | None,
    workspace_folder_basenames: Sequence[str],
    git: GitMetadata | None,
    now: dt.datetime,
) -> str:
    lines = [
        '<graphiti_episode kind="ownership_context">',
        f"scope: {scope}",
        f"owner: {owner or 'unknown'}",
    ]
    if workspace_folder_basenames:
        lines.append(f"Workspace folders (basenames): {', '.join(workspace_folder_basenames)}.")
    if git is not None:
        if git.branch:
            lines.append(f"git branch: {git.branch}")
        if git.commit:
            lines.append(f"git commit: {git.commit}")
        if git.dirty is not None:
            lines.append(f"git dirty: {'yes' if git.dirty else 'no'}")
    lines.append(f"recorded_at: {now.isoformat()}")
    lines.append("</graphiti_episode>")
    return "\n".join(lines)


def ownership_context_message(
    *,
    scope: Scope,
    owner: str | None,
    workspace_folder_basenames: Sequence[str],
    git: GitMetadata | None,
    timestamp_ms: int,
    include_git_metadata: bool,
) -> Message:
    now = dt.datetime.fromtimestamp(timestamp_ms / 1000.0, tz=dt.UTC)
    content = format_ownership_context(
        scope=scope,
        owner=owner,
        workspace_folder_basenames=workspace_folder_basenames,
        git=git if include_git_metadata else None,
        now=now,
    )
    source_description = (
        build_source_description(scope, git, event="ownership_context")
        if include_git_metadata
        else None
    )
    return Message(
        role_type="system",
        role="system",
        name=f"{SOURCE_NAME}.ownership_context.{scope}",
        content=content,
        timestamp=iso_from_ms(timestamp_ms),
        source_description=source_description,
    )
