from __future__ import annotations

import os
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _isolate_graphmem_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in list(os.environ):
        if name.startswith("GRAPHMEM_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("GRAPHMEM_CONFIG", str(tmp_path / "config" / "config.json"))
    monkeypatch.setenv("GRAPHMEM_CONSENT", str(tmp_path / "config" / "consent.json"))
