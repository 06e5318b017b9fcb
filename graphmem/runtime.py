from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path

from .config import (
    ConsentStore,
    GraphmemConfig,
    IngestionSettings,
    RecallSettings,
    load_config,
    resolve_ingestion_config,
    resolve_recall_config,
)
from .git_info import detect_git_metadata, detect_remote_url
from .group_ids import workspace_scope_key
from .recall import RecallAggregator
from .scheduler import DeliveryScheduler
from .timers import Timers
from .types import GitMetadata, WorkspaceContext


def workspace_folders(cfg: GraphmemConfig, cwd: str | None = None) -> list[str]:
    if cfg.workspace_folders:
        return list(cfg.workspace_folders)
    return [str(Path(cwd or os.getcwd()).resolve())]


def build_workspace_context(cfg: GraphmemConfig, cwd: str | None = None) -> WorkspaceContext:
    folders = workspace_folders(cfg, cwd)
    remote = detect_remote_url(folders[0]) if folders else None
    return WorkspaceContext(
        workspace_key=workspace_scope_key(folders, remote),
        folder_basenames=tuple(Path(folder).name for folder in folders if Path(folder).name),
        owner=cfg.owner,
        user_scope_key=cfg.user_scope_key,
    )


class Runtime:
    """Re-reads configuration and consent on every access so edits apply live."""

    def __init__(
        self,
        *,
        config_path: Path | None = None,
        consent_path: Path | None = None,
        cwd: str | None = None,
    ) -> None:
        self.config_path = config_path
        self.consent = ConsentStore(consent_path)
        self.cwd = cwd or os.getcwd()

    def config(self) -> GraphmemConfig:
        return load_config(self.config_path)

    def context(self) -> WorkspaceContext:
        return build_workspace_context(self.config(), self.cwd)

    def ingestion_settings(self) -> IngestionSettings | None:
        cfg = self.config()
        context = build_workspace_context(cfg, self.cwd)
        return resolve_ingestion_config(cfg, self.consent.get(context.workspace_key))

    def recall_settings(self) -> RecallSettings | None:
        cfg = self.config()
        context = build_workspace_context(cfg, self.cwd)
        return resolve_recall_config(cfg, self.consent.get(context.workspace_key))

    def git_metadata(self) -> GitMetadata | None:
        return detect_git_metadata(self.cwd)

    def build_scheduler(
        self,
        *,
        timers: Timers | None = None,
        client_factory: Callable | None = None,
    ) -> DeliveryScheduler:
        return DeliveryScheduler(
            self.ingestion_settings,
            self.context,
            client_factory=client_factory,
            timers=timers,
            git_metadata_provider=self.git_metadata,
        )

    def build_recall(self, *, client_factory: Callable | None = None) -> RecallAggregator:
        return RecallAggregator(self.recall_settings, self.context, client_factory=client_factory)
