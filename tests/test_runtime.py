from __future__ import annotations

import json
from pathlib import Path

import pytest

from graphmem import runtime as runtime_module
from graphmem.config import GraphmemConfig
from graphmem.runtime import Runtime, build_workspace_context


def test_workspace_context_uses_configured_folders(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(runtime_module, "detect_remote_url", lambda cwd: None)
    cfg = GraphmemConfig(
        workspace_folders=["/work/web", "/work/api"],
        owner="octocat",
        user_scope_key="github_login:octocat",
    )

    context = build_workspace_context(cfg, "/elsewhere")

    assert context.workspace_key == "/work/api|/work/web"
    assert context.folder_basenames == ("web", "api")
    assert context.owner == "octocat"
    assert context.user_scope_key == "github_login:octocat"


def test_workspace_context_prefers_git_remote(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(runtime_module, "detect_remote_url", lambda cwd: "https://example.com/r.git")

    context = build_workspace_context(GraphmemConfig(), "/some/checkout")

    assert context.workspace_key == "git_remote:https://example.com/r.git"
    assert context.folder_basenames == ("checkout",)


def test_runtime_settings_follow_config_and_consent(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setattr(runtime_module, "detect_remote_url", lambda cwd: None)
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps({"enabled": True, "endpoint": "http://localhost:8000", "recall_max_facts": 3})
    )
    runtime = Runtime(config_path=config_path, consent_path=tmp_path / "consent.json", cwd=str(tmp_path))

    assert runtime.ingestion_settings() is None
    runtime.consent.grant(runtime.context().workspace_key, "http://localhost:8000")

    ingestion = runtime.ingestion_settings()
    recall = runtime.recall_settings()
    assert ingestion is not None and ingestion.endpoint == "http://localhost:8000"
    assert recall is not None and recall.max_facts == 3

    config_path.write_text(json.dumps({"enabled": False, "endpoint": "http://localhost:8000"}))
    assert runtime.ingestion_settings() is None
