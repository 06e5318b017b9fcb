from __future__ import annotations

import contextlib
import logging
from collections.abc import Callable, Sequence
from typing import Protocol

from .client import MemoryClient
from .config import RecallSettings
from .group_ids import compute_group_id, session_scope_key
from .types import Fact, RecalledFact, Scope, WorkspaceContext

logger = logging.getLogger(__name__)


class SearchClient(Protocol):
    def search(self, query: str, group_ids: Sequence[str], max_facts: int) -> list[Fact]: ...


def _default_client_factory(settings: RecallSettings) -> SearchClient:
    return MemoryClient(settings.endpoint, timeout_ms=settings.timeout_ms)


class RecallAggregator:
    """Fans a query out over the enabled scopes and merges the facts.

    Scopes are searched in priority order (session, workspace, user) with the
    remaining budget as the limit. Facts are de-duplicated by uuid, or by text
    when the service gives none. A failing scope is logged and skipped.
    """

    def __init__(
        self,
        settings_provider: Callable[[], RecallSettings | None],
        context_provider: Callable[[], WorkspaceContext],
        *,
        client_factory: Callable[[RecallSettings], SearchClient] | None = None,
    ) -> None:
        self._settings_provider = settings_provider
        self._context_provider = context_provider
        self._client_factory = client_factory or _default_client_factory

    def recall_facts(self, query: str, session_id: str | None = None) -> list[RecalledFact]:
        query = query.strip()
        if not query:
            return []
        try:
            settings = self._settings_provider()
            if settings is None or settings.max_facts <= 0:
                return []
            context = self._context_provider()
            client = self._client_factory(settings)
        except Exception as exc:
            logger.exception("memory recall setup failed", exc_info=exc)
            return []

        try:
            return self._collect(client, settings, context, query, session_id)
        finally:
            close = getattr(client, "close", None)
            if callable(close):
                with contextlib.suppress(Exception):
                    close()

    def _scope_groups(
        self, settings: RecallSettings, context: WorkspaceContext, session_id: str | None
    ) -> list[tuple[Scope, str]]:
        strategy = settings.group_id_strategy
        groups: list[tuple[Scope, str]] = []
        if settings.scopes in {"session", "both", "all"} and session_id:
            groups.append(
                ("session", compute_group_id("session", strategy, session_scope_key(session_id)))
            )
        if settings.scopes in {"workspace", "both", "all"}:
            groups.append(
                ("workspace", compute_group_id("workspace", strategy, context.workspace_key))
            )
        if settings.scopes == "all" and context.user_scope_key:
            groups.append(("user", compute_group_id("user", strategy, context.user_scope_key)))
        return groups

    def _collect(
        self,
        client: SearchClient,
        settings: RecallSettings,
        context: WorkspaceContext,
        query: str,
        session_id: str | None,
    ) -> list[RecalledFact]:
        results: list[RecalledFact] = []
        seen: set[str] = set()

        for scope, group_id in self._scope_groups(settings, context, session_id):
            remaining = settings.max_facts - len(results)
            if remaining <= 0:
                break
            try:
                facts = client.search(query, [group_id], remaining)
            except Exception as exc:
                logger.debug("memory recall failed for %s scope: %s", scope, exc)
                continue
            for fact in facts:
                key = fact.dedup_key
                if not key or key in seen:
                    continue
                seen.add(key)
                results.append(RecalledFact(scope=scope, fact=fact))
                if len(results) >= settings.max_facts:
                    break

        logger.debug("memory recall produced %s fact(s)", len(results))
        return results


def format_recalled_facts(facts: Sequence[RecalledFact]) -> str:
    if not facts:
        return ""
    lines = ["Relevant memory facts:"]
    for item in facts:
        lines.append(f"- [{item.scope}] {item.fact.fact}")
    return "\n".join(lines)
