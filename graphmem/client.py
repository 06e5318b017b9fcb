from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any
from urllib.parse import quote

import httpx

from .types import AddMessagesResult, Fact, Message, Scope

logger = logging.getLogger(__name__)


class MemoryClientError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class MemoryClient:
    """Thin client for the Graphiti-style memory service REST API.

    Any transport error, timeout, non-2xx status or undecodable body raises
    ``MemoryClientError``; callers decide whether to retry.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        timeout_ms: int = 5000,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.timeout_ms = timeout_ms
        self._owns_http = http_client is None
        self._http = http_client or httpx.Client(timeout=max(timeout_ms, 1) / 1000.0)

    def __enter__(self) -> MemoryClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def healthcheck(self) -> dict[str, Any]:
        return self._expect_dict(self._request("GET", "/healthcheck"))

    def openapi(self) -> dict[str, Any]:
        return self._expect_dict(self._request("GET", "/openapi.json"))

    def add_messages(self, group_id: str, messages: Sequence[Message]) -> AddMessagesResult:
        payload = self._expect_dict(
            self._request(
                "POST",
                "/messages",
                body={
                    "group_id": group_id,
                    "messages": [message.to_payload() for message in messages],
                },
            )
        )
        return AddMessagesResult(
            success=bool(payload.get("success")),
            message=str(payload.get("message") or ""),
        )

    def search(self, query: str, group_ids: Sequence[str], max_facts: int) -> list[Fact]:
        payload = self._expect_dict(
            self._request(
                "POST",
                "/search",
                body={"query": query, "group_ids": list(group_ids), "max_facts": max_facts},
            )
        )
        facts = payload.get("facts") or []
        if not isinstance(facts, list):
            raise MemoryClientError("unexpected search response: facts is not a list")
        return [Fact.from_payload(item) for item in facts if isinstance(item, dict)]

    def get_episodes(self, group_id: str, last_n: int) -> list[dict[str, Any]]:
        payload = self._request(
            "GET",
            f"/episodes/{quote(group_id, safe='')}",
            params={"last_n": last_n},
        )
        if not isinstance(payload, list):
            raise MemoryClientError("unexpected episodes response: expected a list")
        return [item for item in payload if isinstance(item, dict)]

    def delete_group(self, group_id: str) -> AddMessagesResult:
        payload = self._expect_dict(
            self._request("DELETE", f"/group/{quote(group_id, safe='')}")
        )
        return AddMessagesResult(
            success=bool(payload.get("success")),
            message=str(payload.get("message") or ""),
        )

    def resolve_group_id(self, scope: Scope, key: str) -> str:
        payload = self._expect_dict(
            self._request("POST", "/groups/resolve", body={"scope": scope, "key": key})
        )
        group_id = payload.get("group_id")
        if not isinstance(group_id, str) or not group_id:
            raise MemoryClientError("unexpected resolve response: missing group_id")
        return group_id

    def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self.endpoint}{path}"
        logger.debug("memory service request %s %s", method, path)
        try:
            response = self._http.request(
                method,
                url,
                json=body,
                params=params,
                headers={"Accept": "application/json"},
                timeout=max(self.timeout_ms, 1) / 1000.0,
            )
        except httpx.TimeoutException as exc:
            raise MemoryClientError(f"{method} {path} timed out after {self.timeout_ms}ms") from exc
        except httpx.HTTPError as exc:
            raise MemoryClientError(f"{method} {path} failed: {exc}") from exc
        if not response.is_success:
            snippet = response.text[:240].strip()
            raise MemoryClientError(
                f"{method} {path} returned {response.status_code}"
                + (f": {snippet}" if snippet else ""),
                status=response.status_code,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise MemoryClientError(
                f"{method} {path} returned non-JSON body", status=response.status_code
            ) from exc

    @staticmethod
    def _expect_dict(payload: Any) -> dict[str, Any]:
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise MemoryClientError(f"unexpected response type: {type(payload).__name__}")
        return payload
