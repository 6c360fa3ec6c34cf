"""
OpenAI-compatible chat completion client.

`stream()` returns a CompletionStream with two channels: iterating it yields
text tokens in emission order, and `await stream.result()` returns the
aggregated Completion (text, tool calls, finish reason). Callers that only
want the result may skip the iteration.
"""

import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import httpx
import structlog

from .db.errors import CompletionError

logger = structlog.get_logger(__name__)

DEFAULT_MAX_TOKENS = 4096
SUMMARY_MAX_TOKENS = 1024
_ERROR_BODY_CHARS = 500


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Optional[Dict[str, Any]]
    raw_arguments: str = ""


@dataclass
class Completion:
    text: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    finish_reason: Optional[str] = None


class CompletionStream:
    """Token channel plus terminal result for one completion request."""

    def __init__(self, events: AsyncIterator[Union[str, Completion]]):
        self._events = events
        self._result: Optional[Completion] = None

    def __aiter__(self):
        return self._tokens()

    async def _tokens(self):
        async for event in self._events:
            if isinstance(event, Completion):
                self._result = event
            else:
                yield event

    async def result(self) -> Completion:
        if self._result is None:
            async for _ in self._tokens():
                pass
        if self._result is None:
            raise CompletionError("completion stream ended without a result")
        return self._result


def _parse_arguments(raw: str) -> Optional[Dict[str, Any]]:
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def to_wire_messages(system: str, history: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Expand the loop's history into chat/completions messages.

    A `tool` turn carrying several results becomes one `tool` message per
    result, each tagged with its tool_call_id.
    """
    messages: List[Dict[str, Any]] = []
    if system:
        messages.append({"role": "system", "content": system})
    for turn in history:
        if turn.get("role") == "tool" and "results" in turn:
            for result in turn["results"]:
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": result["tool_call_id"],
                        "content": result["content"],
                    }
                )
        else:
            messages.append(turn)
    return messages


class CompletionClient:
    def __init__(
        self,
        api_base: str,
        model: str,
        api_key: str = "",
        max_tokens: int = DEFAULT_MAX_TOKENS,
        timeout_sec: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_base = (api_base or "").strip().rstrip("/")
        self.model = (model or "").strip()
        self.api_key = (api_key or "").strip()
        self.max_tokens = max(1, int(max_tokens))
        self.timeout_sec = timeout_sec
        self._transport = transport

    @classmethod
    def from_settings(cls, settings) -> "CompletionClient":
        return cls(
            api_base=settings.llm_api_base,
            model=settings.llm_model,
            api_key=settings.llm_api_key,
            max_tokens=settings.llm_max_tokens,
            timeout_sec=settings.llm_timeout_sec,
        )

    def _require_config(self) -> None:
        if not self.api_base or not self.model:
            raise CompletionError(
                "Completion service is not configured. Set LLM_API_BASE and LLM_MODEL."
            )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_sec, connect=10.0),
            transport=self._transport,
        )

    def stream(
        self,
        system: str,
        history: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> CompletionStream:
        self._require_config()
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": to_wire_messages(system, history),
            "max_tokens": self.max_tokens,
            "stream": True,
        }
        if tools:
            payload["tools"] = tools
        return CompletionStream(self._stream_events(payload))

    async def _stream_events(self, payload: Dict[str, Any]):
        url = f"{self.api_base}/chat/completions"
        text_parts: List[str] = []
        accumulated: Dict[int, Dict[str, str]] = {}
        finish_reason: Optional[str] = None

        try:
            async with self._client() as client:
                async with client.stream("POST", url, json=payload, headers=self._headers()) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        raise CompletionError(
                            f"Completion service returned HTTP {resp.status_code}: "
                            f"{body[:_ERROR_BODY_CHARS]}"
                        )

                    async for line in resp.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data_str = line[5:].strip()
                        if data_str == "[DONE]":
                            break
                        try:
                            chunk = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue
                        if not isinstance(chunk, dict):
                            continue

                        choices = chunk.get("choices") or [{}]
                        choice = choices[0]
                        delta = choice.get("delta") or {}

                        for tc in delta.get("tool_calls") or []:
                            idx = tc.get("index", 0)
                            entry = accumulated.setdefault(
                                idx, {"id": "", "name": "", "arguments": ""}
                            )
                            if tc.get("id"):
                                entry["id"] = tc["id"]
                            func = tc.get("function") or {}
                            if func.get("name"):
                                entry["name"] = func["name"]
                            if func.get("arguments"):
                                entry["arguments"] += func["arguments"]

                        content = delta.get("content")
                        if content:
                            text_parts.append(content)
                            yield content

                        if choice.get("finish_reason"):
                            finish_reason = choice["finish_reason"]
        except httpx.HTTPError as exc:
            raise CompletionError(f"Completion request failed: {exc}") from exc

        tool_calls = [
            ToolCall(
                id=entry["id"] or f"call_{idx}",
                name=entry["name"],
                arguments=_parse_arguments(entry["arguments"]),
                raw_arguments=entry["arguments"],
            )
            for idx, entry in sorted(accumulated.items())
        ]
        logger.debug(
            "completion_stream_finished",
            model=self.model,
            chars=sum(len(part) for part in text_parts),
            tool_calls=[call.name for call in tool_calls],
            finish_reason=finish_reason,
        )
        yield Completion(text="".join(text_parts), tool_calls=tool_calls, finish_reason=finish_reason)

    async def complete(
        self, system: str, user_text: str, max_tokens: int = SUMMARY_MAX_TOKENS
    ) -> str:
        """Single non-streaming exchange without tools; returns the reply text."""
        self._require_config()
        payload = {
            "model": self.model,
            "messages": to_wire_messages(system, [{"role": "user", "content": user_text}]),
            "max_tokens": max_tokens,
        }
        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{self.api_base}/chat/completions", json=payload, headers=self._headers()
                )
        except httpx.HTTPError as exc:
            raise CompletionError(f"Completion request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise CompletionError(
                f"Completion service returned HTTP {resp.status_code}: "
                f"{resp.text[:_ERROR_BODY_CHARS]}"
            )
        try:
            data = resp.json()
            content = data["choices"][0]["message"].get("content")
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as exc:
            raise CompletionError("Completion service returned an unexpected payload") from exc
        return content or ""
