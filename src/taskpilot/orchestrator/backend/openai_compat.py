"""Streaming backend for OpenAI-compatible chat completion APIs."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx

from taskpilot.config import ModelSettings
from taskpilot.orchestrator.backend.base import (
    ReasoningEvent,
    StreamEvent,
    TextEvent,
    UsageEvent,
)
from taskpilot.orchestrator.errors import ContextWindowExceededError, ProviderStreamError
from taskpilot.orchestrator.failure_classifier import classify_stream_error
from taskpilot.orchestrator.models import (
    HistoryMessage,
    ImagePart,
    ModelInfo,
    TextPart,
)
from taskpilot.orchestrator.usage import TokenUsage

logger = logging.getLogger(__name__)

_SSE_DATA_PREFIX = "data:"
_SSE_DONE = "[DONE]"


def to_chat_messages(
    system_prompt: str,
    messages: Sequence[HistoryMessage],
) -> list[dict[str, Any]]:
    """Map conversation history to the chat completions message format."""

    payload: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for message in messages:
        parts: list[dict[str, Any]] = []
        for part in message.content:
            if isinstance(part, TextPart):
                parts.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                parts.append({"type": "image_url", "image_url": {"url": part.source}})
        if not parts:
            continue
        if all(item["type"] == "text" for item in parts):
            content: Any = "\n\n".join(item["text"] for item in parts)
        else:
            content = parts
        payload.append({"role": message.role.value, "content": content})
    return payload


def usage_event_from_payload(usage: dict[str, Any]) -> UsageEvent:
    prompt_tokens = int(usage.get("prompt_tokens") or 0)
    details = usage.get("prompt_tokens_details") or {}
    cached = int(details.get("cached_tokens") or 0)
    cost = usage.get("cost")
    return UsageEvent(
        input_tokens=max(prompt_tokens - cached, 0),
        output_tokens=int(usage.get("completion_tokens") or 0),
        cache_read_tokens=cached or None,
        total_cost=float(cost) if cost is not None else None,
    )


def events_from_chunk(chunk: dict[str, Any]) -> list[StreamEvent]:
    """Translate one SSE chunk into stream events."""

    events: list[StreamEvent] = []
    for choice in chunk.get("choices") or []:
        delta = choice.get("delta") or {}
        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if reasoning:
            events.append(ReasoningEvent(reasoning=str(reasoning)))
        content = delta.get("content")
        if content:
            events.append(TextEvent(text=str(content)))
    usage = chunk.get("usage")
    if usage:
        events.append(usage_event_from_payload(usage))
    return events


class OpenAICompatibleBackend:
    """`httpx.AsyncClient` streaming client for `/chat/completions`."""

    def __init__(
        self,
        settings: ModelSettings,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.request_timeout_seconds, connect=10.0),
        )
        self._last_request_id: str | None = None

    def create_message(
        self,
        system_prompt: str,
        messages: Sequence[HistoryMessage],
    ) -> AsyncIterator[StreamEvent]:
        body = {
            "model": self._settings.model_id,
            "messages": to_chat_messages(system_prompt, messages),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        return self._stream(body)

    async def _stream(self, body: dict[str, Any]) -> AsyncIterator[StreamEvent]:
        url = f"{self._settings.api_base_url.rstrip('/')}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self._settings.api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with self._client.stream("POST", url, json=body, headers=headers) as response:
                self._last_request_id = response.headers.get("x-request-id")
                if response.is_error:
                    await response.aread()
                    raise self._http_error(response)
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith(_SSE_DATA_PREFIX):
                        continue
                    data = line[len(_SSE_DATA_PREFIX) :].strip()
                    if data == _SSE_DONE:
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        logger.warning("Skipping malformed stream chunk: %s", data[:200])
                        continue
                    if chunk.get("error"):
                        raise ProviderStreamError(
                            str(chunk["error"]), request_id=self._last_request_id,
                        )
                    for event in events_from_chunk(chunk):
                        yield event
        except httpx.TimeoutException as exc:
            raise ProviderStreamError(
                f"Request timed out: {exc}", request_id=self._last_request_id,
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderStreamError(
                f"Network error: {exc}", request_id=self._last_request_id,
            ) from exc

    def _http_error(self, response: httpx.Response) -> Exception:
        text = response.text
        message = f"HTTP {response.status_code}: {text[:500]}"
        error = ProviderStreamError(
            message, status_code=response.status_code, request_id=self._last_request_id,
        )
        if classify_stream_error(error).is_context_window_exceeded:
            return ContextWindowExceededError(message)
        return error

    def get_model(self) -> ModelInfo:
        return ModelInfo(
            model_id=self._settings.model_id,
            provider_id=self._settings.provider_id,
            context_window=self._settings.context_window,
        )

    async def get_stream_usage(self) -> TokenUsage | None:
        return None

    def get_request_id(self) -> str | None:
        return self._last_request_id

    async def aclose(self) -> None:
        await self._client.aclose()
