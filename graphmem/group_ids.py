from __future__ import annotations

import hashlib
import re
from collections.abc import Iterable
from typing import Literal
from urllib.parse import urlparse

from .types import Scope

GroupIdStrategy = Literal["raw", "hashed"]

GROUP_ID_PREFIX = "graphmem"
MAX_RAW_KEY_CHARS = 128
NO_WORKSPACE_KEY = "<no-workspace>"

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9_-]")


def normalize_endpoint(raw: str | None) -> str | None:
    if not isinstance(raw, str):
        return None
    trimmed = raw.strip().rstrip("/")
    if not trimmed:
        return None
    parsed = urlparse(trimmed)
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        return None
    return trimmed


def compute_group_id(scope: Scope, strategy: GroupIdStrategy, key: str) -> str:
    if strategy == "hashed":
        digest = hashlib.sha256(f"{scope}:{key}".encode()).hexdigest()[:32]
        return f"{GROUP_ID_PREFIX}_{scope}_{digest}"
    safe = _UNSAFE_CHARS_RE.sub("_", key)[:MAX_RAW_KEY_CHARS]
    return f"{GROUP_ID_PREFIX}_{scope}_{safe}"


def session_scope_key(session_id: str) -> str:
    return f"{GROUP_ID_PREFIX}_session:{session_id}"


def compute_workspace_key(folders: Iterable[str]) -> str:
    cleaned = sorted({folder.strip().rstrip("/") for folder in folders if folder.strip()})
    if not cleaned:
        return NO_WORKSPACE_KEY
    return "|".join(cleaned)


def workspace_scope_key(folders: Iterable[str], remote_url: str | None = None) -> str:
    """Prefer the git remote so clones of one repository share a workspace group."""

    if remote_url:
        return f"git_remote:{remote_url.strip()}"
    return compute_workspace_key(folders)
