from __future__ import annotations

import datetime as dt
import hashlib
import json
import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .group_ids import GroupIdStrategy, normalize_endpoint

DEFAULT_CONFIG_PATH = Path("~/.config/graphmem/config.json").expanduser()
DEFAULT_CONSENT_PATH = Path("~/.config/graphmem/consent.json").expanduser()

INGESTION_SCOPES = {"session", "workspace", "both", "all"}
RECALL_SCOPES = {"session", "workspace", "both", "all"}
GROUP_ID_STRATEGIES = {"raw", "hashed"}
CONSENT_VERSION = 1

CONFIG_ENV_OVERRIDES = {
    "enabled": "GRAPHMEM_ENABLED",
    "endpoint": "GRAPHMEM_ENDPOINT",
    "timeout_ms": "GRAPHMEM_TIMEOUT_MS",
    "max_batch_size": "GRAPHMEM_MAX_BATCH_SIZE",
    "max_queue_size": "GRAPHMEM_MAX_QUEUE_SIZE",
    "max_message_chars": "GRAPHMEM_MAX_MESSAGE_CHARS",
    "scopes": "GRAPHMEM_SCOPES",
    "group_id_strategy": "GRAPHMEM_GROUP_ID_STRATEGY",
    "include_system_messages": "GRAPHMEM_INCLUDE_SYSTEM_MESSAGES",
    "include_git_metadata": "GRAPHMEM_INCLUDE_GIT_METADATA",
    "workspace_trusted": "GRAPHMEM_WORKSPACE_TRUSTED",
    "workspace_folders": "GRAPHMEM_WORKSPACE_FOLDERS",
    "owner": "GRAPHMEM_OWNER",
    "user_scope_key": "GRAPHMEM_USER_SCOPE_KEY",
    "recall_enabled": "GRAPHMEM_RECALL_ENABLED",
    "recall_timeout_ms": "GRAPHMEM_RECALL_TIMEOUT_MS",
    "recall_max_facts": "GRAPHMEM_RECALL_MAX_FACTS",
    "recall_scopes": "GRAPHMEM_RECALL_SCOPES",
    "log_level": "GRAPHMEM_LOG_LEVEL",
}

_INT_KEYS = {
    "timeout_ms",
    "max_batch_size",
    "max_queue_size",
    "max_message_chars",
    "recall_timeout_ms",
    "recall_max_facts",
}
_BOOL_KEYS = {
    "enabled",
    "include_system_messages",
    "include_git_metadata",
    "workspace_trusted",
    "recall_enabled",
}
_LIST_KEYS = {"workspace_folders"}
_CHOICE_KEYS = {
    "scopes": INGESTION_SCOPES,
    "recall_scopes": RECALL_SCOPES,
    "group_id_strategy": GROUP_ID_STRATEGIES,
}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("GRAPHMEM_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def get_consent_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("GRAPHMEM_CONSENT", DEFAULT_CONSENT_PATH))
    return candidate.expanduser()


_JSONC_TOKEN_RE = re.compile(r'"(?:\\.|[^"\\])*"|//[^\n]*|/\*.*?\*/', re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r'"(?:\\.|[^"\\])*"|,(\s*[}\]])', re.DOTALL)


def _strip_jsonc(raw: str) -> str:
    def _comment(match: re.Match[str]) -> str:
        token = match.group(0)
        return token if token.startswith('"') else ""

    def _comma(match: re.Match[str]) -> str:
        if match.group(1) is None:
            return match.group(0)
        return match.group(1)

    return _TRAILING_COMMA_RE.sub(_comma, _JSONC_TOKEN_RE.sub(_comment, raw))


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(_strip_jsonc(raw))
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def write_config_file(data: dict[str, Any], path: Path | None = None) -> Path:
    config_path = get_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n")
    return config_path


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class GraphmemConfig:
    enabled: bool = False
    endpoint: str | None = None
    timeout_ms: int = 5000
    max_batch_size: int = 20
    max_queue_size: int = 200
    max_message_chars: int = 4000
    scopes: str = "both"
    group_id_strategy: str = "hashed"
    include_system_messages: bool = False
    include_git_metadata: bool = False
    workspace_trusted: bool = True
    workspace_folders: list[str] = field(default_factory=list)
    owner: str | None = None
    # Stable identity for the user scope; recall skips that scope without it.
    user_scope_key: str | None = None
    recall_enabled: bool = True
    recall_timeout_ms: int = 2000
    recall_max_facts: int = 10
    recall_scopes: str = "both"
    log_level: str = "WARNING"


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    if value.lower() in {"1", "true", "yes", "on"}:
        return True
    if value.lower() in {"0", "false", "off", "no"}:
        return False
    return default


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _coerce_bool(value: object, default: bool, *, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return _parse_bool(value, default)
    warnings.warn(f"Invalid bool for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def _coerce_str_list(value: object, *, key: str) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, list):
        items: list[str] = []
        for item in value:
            if isinstance(item, str) and item.strip():
                items.append(item.strip())
        return items
    if isinstance(value, str):
        return [p.strip() for p in value.split(os.pathsep) if p.strip()]
    warnings.warn(f"Invalid list for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return None


def _coerce_choice(value: object, default: str, *, key: str, choices: set[str]) -> str:
    if value is None:
        return default
    if isinstance(value, str) and value.strip().lower() in choices:
        return value.strip().lower()
    warnings.warn(f"Invalid value for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def _apply_value(cfg: GraphmemConfig, key: str, value: object) -> None:
    current = getattr(cfg, key)
    if key in _INT_KEYS:
        setattr(cfg, key, _parse_int(value, current, key=key))
    elif key in _BOOL_KEYS:
        setattr(cfg, key, _coerce_bool(value, current, key=key))
    elif key in _LIST_KEYS:
        parsed = _coerce_str_list(value, key=key)
        if parsed is not None:
            setattr(cfg, key, parsed)
    elif key in _CHOICE_KEYS:
        setattr(cfg, key, _coerce_choice(value, current, key=key, choices=_CHOICE_KEYS[key]))
    elif value is None:
        setattr(cfg, key, None)
    elif isinstance(value, str):
        setattr(cfg, key, value.strip() or None)
    else:
        warnings.warn(f"Invalid string for {key}: {value!r}", RuntimeWarning, stacklevel=2)


def _apply_dict(cfg: GraphmemConfig, data: dict[str, Any]) -> GraphmemConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        _apply_value(cfg, key, value)
    return cfg


def _apply_env(cfg: GraphmemConfig) -> GraphmemConfig:
    for key, value in get_env_overrides().items():
        _apply_value(cfg, key, value)
    return cfg


def load_config(path: Path | None = None) -> GraphmemConfig:
    cfg = GraphmemConfig()
    config_path = get_config_path(path)
    if config_path.exists():
        try:
            data = read_config_file(config_path)
        except ValueError:
            warnings.warn(f"Ignoring invalid config file {config_path}", RuntimeWarning, stacklevel=2)
            data = {}
        cfg = _apply_dict(cfg, data)
    cfg = _apply_env(cfg)
    return cfg


@dataclass(frozen=True)
class ConsentRecord:
    endpoint: str
    consented_at: str
    version: int = CONSENT_VERSION

    def to_payload(self) -> dict[str, Any]:
        return {"version": self.version, "endpoint": self.endpoint, "consented_at": self.consented_at}

    @classmethod
    def from_payload(cls, value: object) -> ConsentRecord | None:
        if not isinstance(value, dict):
            return None
        if value.get("version") != CONSENT_VERSION:
            return None
        endpoint = value.get("endpoint")
        consented_at = value.get("consented_at")
        if not isinstance(endpoint, str) or not isinstance(consented_at, str):
            return None
        return cls(endpoint=endpoint, consented_at=consented_at)


class ConsentStore:
    """Per-workspace consent records, keyed by a digest of the workspace key."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = get_consent_path(path)

    @staticmethod
    def _record_key(workspace_key: str) -> str:
        return hashlib.sha256(workspace_key.encode()).hexdigest()[:32]

    def _read_all(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text() or "{}")
        except json.JSONDecodeError:
            warnings.warn(f"Ignoring invalid consent file {self.path}", RuntimeWarning, stacklevel=2)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n")

    def get(self, workspace_key: str) -> ConsentRecord | None:
        return ConsentRecord.from_payload(self._read_all().get(self._record_key(workspace_key)))

    def grant(self, workspace_key: str, endpoint: str) -> ConsentRecord:
        record = ConsentRecord(
            endpoint=endpoint,
            consented_at=dt.datetime.now(dt.UTC).isoformat(),
        )
        data = self._read_all()
        data[self._record_key(workspace_key)] = record.to_payload()
        self._write_all(data)
        return record

    def revoke(self, workspace_key: str) -> bool:
        data = self._read_all()
        if data.pop(self._record_key(workspace_key), None) is None:
            return False
        self._write_all(data)
        return True


@dataclass(frozen=True)
class IngestionSettings:
    endpoint: str
    timeout_ms: int
    max_batch_size: int
    max_queue_size: int
    max_message_chars: int
    scopes: str
    group_id_strategy: GroupIdStrategy
    include_system_messages: bool
    include_git_metadata: bool

    def fingerprint(self) -> tuple[object, ...]:
        # Settings that change group ids or message shape invalidate queued state.
        return (
            self.endpoint,
            self.scopes,
            self.group_id_strategy,
            self.max_batch_size,
            self.max_queue_size,
            self.include_system_messages,
            self.include_git_metadata,
        )


@dataclass(frozen=True)
class RecallSettings:
    endpoint: str
    timeout_ms: int
    max_facts: int
    scopes: str
    group_id_strategy: GroupIdStrategy


def consented_endpoint(cfg: GraphmemConfig, consent: ConsentRecord | None) -> str | None:
    """Endpoint usable for network calls, or ``None`` when any gate is closed."""

    if not cfg.enabled or not cfg.workspace_trusted:
        return None
    endpoint = normalize_endpoint(cfg.endpoint)
    if not endpoint:
        return None
    if consent is None or consent.endpoint != endpoint:
        return None
    return endpoint


def resolve_ingestion_config(
    cfg: GraphmemConfig, consent: ConsentRecord | None
) -> IngestionSettings | None:
    endpoint = consented_endpoint(cfg, consent)
    if endpoint is None:
        return None
    return IngestionSettings(
        endpoint=endpoint,
        timeout_ms=max(1, cfg.timeout_ms),
        max_batch_size=max(1, cfg.max_batch_size),
        max_queue_size=max(1, cfg.max_queue_size),
        max_message_chars=max(0, cfg.max_message_chars),
        scopes=cfg.scopes,
        group_id_strategy="raw" if cfg.group_id_strategy == "raw" else "hashed",
        include_system_messages=cfg.include_system_messages,
        include_git_metadata=cfg.include_git_metadata,
    )


def resolve_recall_config(
    cfg: GraphmemConfig, consent: ConsentRecord | None
) -> RecallSettings | None:
    if not cfg.recall_enabled:
        return None
    endpoint = consented_endpoint(cfg, consent)
    if endpoint is None:
        return None
    return RecallSettings(
        endpoint=endpoint,
        timeout_ms=max(1, cfg.recall_timeout_ms),
        max_facts=max(0, cfg.recall_max_facts),
        scopes=cfg.recall_scopes,
        group_id_strategy="raw" if cfg.group_id_strategy == "raw" else "hashed",
    )
