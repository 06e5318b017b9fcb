from __future__ import annotations

import json
from pathlib import Path

import typer
from rich import print
from rich.markup import escape

from graphmem.client import MemoryClientError
from graphmem.commands.common import client_for, format_error, load_turns_or_exit
from graphmem.recall import format_recalled_facts
from graphmem.runtime import Runtime


def ingest_cmd(
    runtime: Runtime,
    *,
    transcript: Path,
    session_id: str,
    timeout_s: float,
) -> None:
    """Queue a transcript snapshot and wait until it has been delivered."""

    turns = load_turns_or_exit(transcript)
    if not turns:
        print("No turns in transcript")
        return
    if runtime.ingestion_settings() is None:
        print(
            "[yellow]Ingestion inactive: check enabled/endpoint/trust and run "
            "'graphmem consent'.[/yellow]"
        )
        raise typer.Exit(code=1)

    scheduler = runtime.build_scheduler()
    try:
        scheduler.enqueue_conversation_snapshot(session_id, turns)
        idle = scheduler.wait_idle(timeout_s)
        stats = scheduler.stats()
    finally:
        scheduler.dispose()
    print(
        f"Delivered {stats.delivered_batches} batch(es); "
        f"failed attempts={stats.failed_batches} dropped={stats.dropped_messages}"
    )
    if not idle:
        print(f"[red]Delivery incomplete after {timeout_s:g}s; {stats.pending} message(s) pending[/red]")
        raise typer.Exit(code=1)


def recall_cmd(
    runtime: Runtime, *, query: str, session_id: str | None, as_json: bool
) -> None:
    """Search the memory scopes and print merged facts."""

    facts = runtime.build_recall().recall_facts(query, session_id=session_id)
    if as_json:
        payload = [
            {"scope": item.scope, "uuid": item.fact.uuid, "fact": item.fact.fact}
            for item in facts
        ]
        typer.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    if not facts:
        print("No facts recalled")
        return
    print(escape(format_recalled_facts(facts)))


def episodes_cmd(runtime: Runtime, *, group_id: str, last_n: int) -> None:
    """Show the most recent episodes stored for a group."""

    with client_for(runtime) as client:
        try:
            episodes = client.get_episodes(group_id, last_n)
        except MemoryClientError as exc:
            print(f"[red]Failed to fetch episodes: {format_error(exc)}[/red]")
            raise typer.Exit(code=1) from exc
    if not episodes:
        print("No episodes")
        return
    for episode in episodes:
        name = episode.get("name") or episode.get("uuid") or "-"
        created = episode.get("created_at") or ""
        content = str(episode.get("content") or "").replace("\n", " ")
        if len(content) > 120:
            content = content[:117] + "..."
        print(escape(f"- {name} {created} {content}"))


def delete_group_cmd(runtime: Runtime, *, group_id: str, yes: bool) -> None:
    """Delete every episode stored for a group."""

    if not yes:
        typer.confirm(f"Delete memory group {group_id}?", abort=True)
    with client_for(runtime) as client:
        try:
            result = client.delete_group(group_id)
        except MemoryClientError as exc:
            print(f"[red]Failed to delete group: {format_error(exc)}[/red]")
            raise typer.Exit(code=1) from exc
    print(f"Deleted {group_id}: {result.message or ('ok' if result.success else 'not deleted')}")
