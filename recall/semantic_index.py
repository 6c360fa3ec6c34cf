"""
Client for the optional semantic (vector) index.

The index is an Upstash Vector style REST service that embeds the text it
is given. The client is enabled only when both an endpoint URL and a token
are configured; when disabled every call is a no-op that returns an empty
or false result.

Writes are best-effort and never raise. Queries raise ExternalUnavailable
when the service cannot be reached or answers with garbage, so callers can
fall back to the structured store.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import structlog

from .db.errors import ExternalUnavailable

logger = structlog.get_logger(__name__)

VECTOR_TYPES = ("session", "memory", "message_chunk")

DEFAULT_CONTEXT_TOP_K = 5
DEFAULT_MEMORY_TOP_K = 10
DEFAULT_SESSION_TOP_K = 5


def session_vector_id(session_id: str) -> str:
    return f"session:{session_id}"


def memory_vector_id(memory_id: int) -> str:
    return f"memory:{memory_id}"


@dataclass
class VectorMatch:
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


class SemanticIndexClient:
    def __init__(
        self,
        url: str = "",
        token: str = "",
        timeout_sec: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = (url or "").strip().rstrip("/")
        self._token = (token or "").strip()
        self._timeout_sec = max(1.0, float(timeout_sec))
        self._transport = transport

    @classmethod
    def from_settings(cls, settings) -> "SemanticIndexClient":
        return cls(
            url=settings.vector_url,
            token=settings.vector_token,
            timeout_sec=settings.vector_timeout_sec,
        )

    @property
    def enabled(self) -> bool:
        return bool(self._url and self._token)

    async def _post_json(self, endpoint: str, payload: Any) -> Any:
        """POST to the index and return the `result` member of the reply.

        Raises ExternalUnavailable with a short machine-readable reason.
        """
        if not self.enabled:
            raise ExternalUnavailable("semantic index is not configured", reason="config_missing")

        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {self._token}",
        }
        try:
            timeout = httpx.Timeout(self._timeout_sec)
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self._url}/{endpoint.lstrip('/')}", json=payload, headers=headers
                )
                response.raise_for_status()
                parsed = response.json()
        except httpx.HTTPStatusError as exc:
            raise ExternalUnavailable(
                f"semantic index returned HTTP {exc.response.status_code}",
                reason="http_status",
            ) from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise ExternalUnavailable(
                f"semantic index request failed: {exc}", reason="request_failed"
            ) from exc
        except ValueError as exc:
            raise ExternalUnavailable(
                "semantic index returned invalid JSON", reason="response_invalid"
            ) from exc

        if isinstance(parsed, dict) and parsed.get("error"):
            raise ExternalUnavailable(
                f"semantic index error: {parsed['error']}", reason="service_error"
            )
        if isinstance(parsed, dict) and "result" in parsed:
            return parsed["result"]
        return parsed

    async def _upsert(self, vector_id: str, data: str, metadata: Dict[str, Any]) -> bool:
        if not self.enabled:
            return False
        try:
            await self._post_json(
                "/upsert-data", [{"id": vector_id, "data": data, "metadata": metadata}]
            )
        except ExternalUnavailable as exc:
            logger.warning(
                "semantic_upsert_failed", vector_id=vector_id, reason=exc.reason, error=str(exc)
            )
            return False
        logger.debug("semantic_upsert_ok", vector_id=vector_id)
        return True

    async def upsert_session_summary(
        self, session_id: str, title: str, summary: str, date: str
    ) -> bool:
        """Embed a session summary under `session:<id>`. Returns False on any failure."""
        return await self._upsert(
            session_vector_id(session_id),
            summary,
            {
                "type": "session",
                "sessionId": session_id,
                "sessionTitle": title,
                "date": date,
            },
        )

    async def upsert_memory(self, memory_id: int, fact: str, category: str) -> bool:
        """Embed a fact under `memory:<id>`. Returns False on any failure."""
        return await self._upsert(
            memory_vector_id(memory_id),
            fact,
            {"type": "memory", "fact": fact, "category": category},
        )

    async def delete_vector(self, vector_id: str) -> bool:
        if not self.enabled:
            return False
        try:
            await self._post_json("/delete", [vector_id])
        except ExternalUnavailable as exc:
            logger.warning(
                "semantic_delete_failed", vector_id=vector_id, reason=exc.reason, error=str(exc)
            )
            return False
        return True

    async def query_relevant_context(
        self,
        query: str,
        top_k: int = DEFAULT_CONTEXT_TOP_K,
        type_filter: Optional[str] = None,
    ) -> List[VectorMatch]:
        """
        Ranked matches for `query`, best first, at most `top_k`.

        Returns [] when the client is disabled.

        Raises:
            ExternalUnavailable: the service failed or answered in an
                                 unexpected shape
        """
        if not self.enabled or top_k <= 0:
            return []
        if type_filter is not None and type_filter not in VECTOR_TYPES:
            raise ValueError(f"Unknown vector type filter '{type_filter}'")

        payload: Dict[str, Any] = {
            "data": query,
            "topK": int(top_k),
            "includeMetadata": True,
        }
        if type_filter:
            payload["filter"] = f"type = '{type_filter}'"

        result = await self._post_json("/query-data", payload)
        if not isinstance(result, list):
            raise ExternalUnavailable(
                "semantic index query returned a non-list result", reason="response_invalid"
            )

        matches: List[VectorMatch] = []
        for item in result:
            if not isinstance(item, dict) or "id" not in item:
                continue
            try:
                score = float(item.get("score") or 0.0)
            except (TypeError, ValueError):
                score = 0.0
            metadata = item.get("metadata")
            matches.append(
                VectorMatch(
                    id=str(item["id"]),
                    score=score,
                    metadata=metadata if isinstance(metadata, dict) else {},
                )
            )
        matches.sort(key=lambda match: match.score, reverse=True)
        return matches[:top_k]

    async def query_relevant_memories(
        self, query: str, top_k: int = DEFAULT_MEMORY_TOP_K
    ) -> List[VectorMatch]:
        return await self.query_relevant_context(query, top_k, "memory")

    async def query_relevant_sessions(
        self, query: str, top_k: int = DEFAULT_SESSION_TOP_K
    ) -> List[VectorMatch]:
        return await self.query_relevant_context(query, top_k, "session")
