from __future__ import annotations

import logging
from pathlib import Path

import typer

from . import __version__
from .commands.connection_cmds import (
    check_connection_cmd,
    consent_cmd,
    disable_cmd,
    enable_cmd,
    status_cmd,
)
from .commands.memory_cmds import delete_group_cmd, episodes_cmd, ingest_cmd, recall_cmd
from .config import load_config
from .runtime import Runtime

app = typer.Typer(help="graphmem: deliver chat turns to a knowledge-graph memory service")

_state: dict[str, Path | None] = {"config": None, "consent": None}


def _runtime() -> Runtime:
    return Runtime(config_path=_state["config"], consent_path=_state["consent"])


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@app.callback()
def main(
    config: Path = typer.Option(None, "--config", help="Path to config JSON"),
    consent_file: Path = typer.Option(None, "--consent-file", help="Path to consent records"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version"
    ),
) -> None:
    _state["config"] = config
    _state["consent"] = consent_file
    level = "DEBUG" if verbose else (load_config(config).log_level or "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


@app.command()
def status(
    session: str = typer.Option(None, "--session", help="Also show this session's group id"),
) -> None:
    """Show configuration, consent and derived group ids."""

    status_cmd(_runtime(), session_id=session)


@app.command()
def consent(
    revoke: bool = typer.Option(False, "--revoke", help="Revoke consent for this workspace"),
) -> None:
    """Allow sending chat text to the configured endpoint for this workspace."""

    consent_cmd(_runtime(), revoke=revoke)


@app.command()
def enable(
    endpoint: str = typer.Option(None, "--endpoint", help="Memory service URL"),
) -> None:
    """Enable memory delivery in the config file."""

    enable_cmd(_runtime(), endpoint=endpoint)


@app.command()
def disable() -> None:
    """Disable memory delivery in the config file."""

    disable_cmd(_runtime())


@app.command("test-connection")
def test_connection(
    smoke: bool = typer.Option(False, "--smoke", help="Also write and delete a temporary group"),
) -> None:
    """Check that the memory service is reachable."""

    check_connection_cmd(_runtime(), smoke=smoke)


@app.command()
def ingest(
    transcript: Path = typer.Argument(..., help="JSON file with a list of turns"),
    session: str = typer.Option(..., "--session", help="Conversation session id"),
    timeout: float = typer.Option(60.0, help="Seconds to wait for delivery"),
) -> None:
    """Deliver a conversation transcript to memory."""

    ingest_cmd(_runtime(), transcript=transcript, session_id=session, timeout_s=timeout)


@app.command()
def recall(
    query: str = typer.Argument(..., help="Search query"),
    session: str = typer.Option(None, "--session", help="Include this session's scope"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """Recall facts relevant to a query."""

    recall_cmd(_runtime(), query=query, session_id=session, as_json=as_json)


@app.command()
def episodes(
    group_id: str = typer.Argument(..., help="Memory group id"),
    last_n: int = typer.Option(10, "--last-n", help="Number of episodes"),
) -> None:
    """Show recent episodes for a group."""

    episodes_cmd(_runtime(), group_id=group_id, last_n=last_n)


@app.command("delete-group")
def delete_group(
    group_id: str = typer.Argument(..., help="Memory group id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete a memory group."""

    delete_group_cmd(_runtime(), group_id=group_id, yes=yes)


if __name__ == "__main__":
    app()
