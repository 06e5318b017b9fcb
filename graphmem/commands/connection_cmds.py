from __future__ import annotations

import time
import uuid
from collections.abc import Callable

import typer
from rich import print
from rich.markup import escape

from graphmem.client import MemoryClient, MemoryClientError
from graphmem.commands.common import (
    client_for,
    endpoint_or_exit,
    format_error,
    read_config_or_exit,
    trusted_or_exit,
    write_config_or_exit,
)
from graphmem.config import resolve_ingestion_config, resolve_recall_config
from graphmem.group_ids import compute_group_id, normalize_endpoint, session_scope_key
from graphmem.runtime import Runtime
from graphmem.types import Message

SMOKE_POLL_INTERVAL_S = 0.5
SMOKE_POLL_MAX_WAIT_S = 5.0
RESOLVE_CHECK_KEY = "github_login:graphmem-smoketest"


def status_cmd(runtime: Runtime, *, session_id: str | None) -> None:
    """Show resolved configuration, consent state and group ids."""

    cfg = runtime.config()
    context = runtime.context()
    consent = runtime.consent.get(context.workspace_key)
    print(f"enabled: {cfg.enabled}")
    print(f"endpoint: {cfg.endpoint or '-'}")
    print(f"workspace trusted: {cfg.workspace_trusted}")
    print(f"consent: {consent.endpoint + ' @ ' + consent.consented_at if consent else 'none'}")
    ingestion = resolve_ingestion_config(cfg, consent)
    recall = resolve_recall_config(cfg, consent)
    print(f"ingestion: {'active' if ingestion else 'inactive'} (scopes={cfg.scopes})")
    print(f"recall: {'active' if recall else 'inactive'} (scopes={cfg.recall_scopes})")
    strategy = "raw" if cfg.group_id_strategy == "raw" else "hashed"
    print(f"workspace group: {compute_group_id('workspace', strategy, context.workspace_key)}")
    if session_id:
        group_id = compute_group_id("session", strategy, session_scope_key(session_id))
        print(f"session group: {group_id}")
    if context.user_scope_key:
        print(f"user group: {compute_group_id('user', strategy, context.user_scope_key)}")


def consent_cmd(runtime: Runtime, *, revoke: bool) -> None:
    """Record or revoke consent to send chat text to the configured endpoint."""

    cfg = runtime.config()
    context = runtime.context()
    if revoke:
        if runtime.consent.revoke(context.workspace_key):
            print("[green]Consent revoked for this workspace[/green]")
        else:
            print("No consent recorded for this workspace")
        return
    trusted_or_exit(cfg)
    endpoint = endpoint_or_exit(cfg)
    record = runtime.consent.grant(context.workspace_key, endpoint)
    print(f"[green]Consent recorded for {record.endpoint}[/green]")


def enable_cmd(runtime: Runtime, *, endpoint: str | None) -> None:
    """Turn memory delivery on in the config file."""

    data = read_config_or_exit(runtime.config_path)
    if endpoint is not None:
        normalized = normalize_endpoint(endpoint)
        if not normalized:
            print(f"[red]Invalid endpoint: {escape(endpoint)}[/red]")
            raise typer.Exit(code=1)
        data["endpoint"] = normalized
    data["enabled"] = True
    path = write_config_or_exit(data, runtime.config_path)
    print(f"[green]Memory enabled in {escape(str(path))}[/green]")
    if not normalize_endpoint(data.get("endpoint")):
        print("[yellow]No endpoint configured yet; pass --endpoint.[/yellow]")
    elif runtime.consent.get(runtime.context().workspace_key) is None:
        print("Run 'graphmem consent' to allow delivery from this workspace.")


def disable_cmd(runtime: Runtime) -> None:
    """Turn memory delivery off in the config file."""

    data = read_config_or_exit(runtime.config_path)
    data["enabled"] = False
    path = write_config_or_exit(data, runtime.config_path)
    print(f"Memory disabled in {escape(str(path))}")


def _poll_for_episodes(
    client: MemoryClient,
    group_id: str,
    *,
    max_wait_s: float,
    sleep: Callable[[float], None] = time.sleep,
) -> tuple[bool, int, str | None]:
    start = time.monotonic()
    attempts = 0
    last_error: str | None = None
    while time.monotonic() - start < max_wait_s:
        attempts += 1
        try:
            if client.get_episodes(group_id, 1):
                return True, attempts, None
            last_error = None
        except MemoryClientError as exc:
            last_error = format_error(exc)
        sleep(SMOKE_POLL_INTERVAL_S)
    return False, attempts, last_error


def check_connection_cmd(runtime: Runtime, *, smoke: bool) -> None:
    """Check that the memory service is reachable, optionally with a write."""

    with client_for(runtime) as client:
        print(f"Endpoint: {client.endpoint}")
        print(f"Mode: {'smoke (writes + deletes)' if smoke else 'basic (read-only)'}")
        try:
            health = client.healthcheck()
            print(f"[green]✓[/green] GET /healthcheck: {health.get('status', 'ok')}")
        except MemoryClientError as exc:
            print(f"[red]✗ GET /healthcheck failed: {format_error(exc)}[/red]")
            raise typer.Exit(code=1) from exc

        try:
            client.openapi()
            print("[green]✓[/green] GET /openapi.json")
        except MemoryClientError as exc:
            print(f"[yellow]! GET /openapi.json failed (optional): {format_error(exc)}[/yellow]")

        try:
            local = compute_group_id("user", "hashed", RESOLVE_CHECK_KEY)
            resolved = client.resolve_group_id("user", RESOLVE_CHECK_KEY)
            print(f"[green]✓[/green] POST /groups/resolve (optional): {resolved}")
            if resolved != local:
                print(f"[yellow]! /groups/resolve mismatch (local={local})[/yellow]")
        except MemoryClientError as exc:
            print(f"[yellow]! POST /groups/resolve failed (optional): {format_error(exc)}[/yellow]")

        if not smoke:
            return

        group_id = f"graphmem_smoketest_{int(time.time() * 1000)}_{uuid.uuid4().hex}"
        print(f"Smoke test group_id: {group_id}")
        message = Message(
            role_type="system",
            role="system",
            content="graphmem smoke test message. Safe to delete.",
            timestamp=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        )
        try:
            result = client.add_messages(group_id, [message])
            state = "accepted" if result.success else "not accepted"
            print(f"[green]✓[/green] POST /messages: {state} ({result.message})")
            found, attempts, last_error = _poll_for_episodes(
                client, group_id, max_wait_s=SMOKE_POLL_MAX_WAIT_S
            )
            if found:
                print(f"[green]✓[/green] GET /episodes: visible after {attempts} attempt(s)")
            else:
                detail = f": {last_error}" if last_error else ""
                print(f"[yellow]! GET /episodes still empty after {attempts} attempt(s){detail}[/yellow]")
                print("  Hint: background ingestion may be failing; check the memory service logs.")
        except MemoryClientError as exc:
            print(f"[red]✗ POST /messages failed: {format_error(exc)}[/red]")
            raise typer.Exit(code=1) from exc
        finally:
            try:
                client.delete_group(group_id)
                print("[green]✓[/green] DELETE /group: cleaned up")
            except MemoryClientError as exc:
                print(f"[yellow]! DELETE /group failed: {format_error(exc)}[/yellow]")
