from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import typer
from rich import print

from graphmem.client import MemoryClient
from graphmem.config import GraphmemConfig, read_config_file, write_config_file
from graphmem.group_ids import normalize_endpoint
from graphmem.runtime import Runtime
from graphmem.types import ConversationTurn


def endpoint_or_exit(cfg: GraphmemConfig) -> str:
    endpoint = normalize_endpoint(cfg.endpoint)
    if not endpoint:
        print("[red]Memory endpoint is not set or invalid. Set GRAPHMEM_ENDPOINT or 'endpoint'.[/red]")
        raise typer.Exit(code=1)
    return endpoint


def trusted_or_exit(cfg: GraphmemConfig) -> None:
    if not cfg.workspace_trusted:
        print("[yellow]Memory integration requires a trusted workspace.[/yellow]")
        raise typer.Exit(code=1)


def client_for(runtime: Runtime) -> MemoryClient:
    cfg = runtime.config()
    trusted_or_exit(cfg)
    return MemoryClient(endpoint_or_exit(cfg), timeout_ms=cfg.timeout_ms)


def load_turns_or_exit(path: Path) -> list[ConversationTurn]:
    try:
        raw: Any = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        print(f"[red]Cannot read transcript {path}: {exc}[/red]")
        raise typer.Exit(code=1) from exc
    if isinstance(raw, dict):
        raw = raw.get("turns")
    if not isinstance(raw, list):
        print("[red]Transcript must be a list of turns or an object with 'turns'.[/red]")
        raise typer.Exit(code=1)
    turns: list[ConversationTurn] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            print(f"[red]Turn {index} is not an object.[/red]")
            raise typer.Exit(code=1)
        try:
            turns.append(ConversationTurn.from_payload(item))
        except ValueError as exc:
            print(f"[red]Turn {index}: {exc}[/red]")
            raise typer.Exit(code=1) from exc
    return turns


def format_error(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def read_config_or_exit(path: Path | None = None) -> dict[str, Any]:
    try:
        return read_config_file(path)
    except ValueError as exc:
        print(f"[red]Invalid config file: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def write_config_or_exit(data: dict[str, Any], path: Path | None = None) -> Path:
    try:
        return write_config_file(data, path)
    except OSError as exc:
        print(f"[red]Failed to write config: {exc}[/red]")
        raise typer.Exit(code=1) from exc
