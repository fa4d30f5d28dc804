"""Async AI client wrapper built around OpenAI-compatible endpoints."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Sequence, cast

from openai import AsyncOpenAI
from openai.lib.streaming.chat import ChatCompletionStreamEvent
from openai.types import FileObject
from openai.types.chat import (
    ChatCompletionMessageParam,
    ChatCompletionToolParam,
)

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    temperature: float | None = None
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


@dataclass(slots=True)
class AIStreamEvent:
    """Normalized representation of streaming deltas."""

    type: str
    content: str | None = None
    parsed: Any | None = None
    tool_name: str | None = None
    tool_index: int | None = None
    tool_arguments: str | None = None
    tool_call_id: str | None = None


class AIClient:
    """Async client providing streaming chat and file helpers.

    The underlying SDK client is created with ``max_retries=0``; callers
    decide whether a failure is worth repeating.
    """

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._models_cache: List[str] | None = None
        self._models_lock = asyncio.Lock()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream_chat(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        tools: Iterable[ChatCompletionToolParam] | None = None,
        temperature: float | None = None,
        **extra_params: Any,
    ) -> AsyncIterator[AIStreamEvent]:
        """Stream chat completions for the provided messages."""

        payload = self._build_chat_payload(
            messages=self._coerce_messages(messages),
            tools=tools,
            temperature=temperature if temperature is not None else self._settings.temperature,
            extra_params=extra_params,
        )
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        tool_ids: Dict[int, str] = {}
        async with self._client.chat.completions.stream(**payload) as stream:
            async for event in stream:
                if getattr(event, "type", None) == "chunk":
                    self._remember_tool_call_ids(event, tool_ids)
                    continue
                normalized = self._normalize_stream_event(event, tool_ids)
                if normalized is not None:
                    yield normalized

    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Return a list of supported model identifiers."""

        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)

        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)

            response = await self._client.models.list()
            models = [item.id for item in response.data if getattr(item, "id", None)]
            self._models_cache = models
            return list(models)

    async def upload_file(
        self,
        data: bytes,
        *,
        filename: str,
        mime_type: str,
        purpose: str = "user_data",
    ) -> FileObject:
        """Upload raw bytes to the provider's file store."""

        LOGGER.debug("Uploading %s (%s, %d bytes)", filename, mime_type, len(data))
        return await self._client.files.create(file=(filename, data, mime_type), purpose=cast(Any, purpose))

    async def retrieve_file(self, file_id: str) -> FileObject:
        """Fetch the current provider-side status of an uploaded file."""

        return await self._client.files.retrieve(file_id)

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=headers,
        )

    @staticmethod
    def _coerce_messages(
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam]
    ) -> List[ChatCompletionMessageParam]:
        normalized = [cast(ChatCompletionMessageParam, dict(message)) for message in messages]
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _build_chat_payload(
        self,
        *,
        messages: Sequence[ChatCompletionMessageParam],
        tools: Iterable[ChatCompletionToolParam] | None,
        temperature: float | None,
        extra_params: Mapping[str, Any],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": list(messages),
        }
        if tools:
            payload["tools"] = list(tools)
        if temperature is not None:
            payload["temperature"] = temperature
        if extra_params:
            payload.update(extra_params)
        return payload

    @staticmethod
    def _remember_tool_call_ids(event: Any, tool_ids: Dict[int, str]) -> None:
        # Call ids only appear on the raw chunk that opens each tool call.
        chunk = getattr(event, "chunk", None)
        for choice in getattr(chunk, "choices", None) or ():
            delta = getattr(choice, "delta", None)
            for call in getattr(delta, "tool_calls", None) or ():
                call_id = getattr(call, "id", None)
                index = getattr(call, "index", None)
                if call_id and index is not None:
                    tool_ids.setdefault(int(index), str(call_id))

    def _normalize_stream_event(
        self,
        event: ChatCompletionStreamEvent[Any],
        tool_ids: Mapping[int, str] | None = None,
    ) -> AIStreamEvent | None:
        event_type = getattr(event, "type", None)
        if event_type is None:
            return None

        if event_type == "content.delta":
            delta_text = getattr(event, "delta", None)
            if delta_text:
                return AIStreamEvent(type=event_type, content=str(delta_text))
            return None
        if event_type == "content.done":
            return AIStreamEvent(type=event_type, content=getattr(event, "content", None))
        if event_type == "refusal.done":
            return AIStreamEvent(type=event_type, content=getattr(event, "refusal", None))
        if event_type == "tool_calls.function.arguments.done":
            index = getattr(event, "index", None)
            known_id = (tool_ids or {}).get(index) if index is not None else None
            return AIStreamEvent(
                type=event_type,
                tool_name=getattr(event, "name", None),
                tool_index=index,
                tool_arguments=getattr(event, "arguments", None),
                parsed=getattr(event, "parsed_arguments", None),
                tool_call_id=getattr(event, "id", None)
                or getattr(event, "tool_call_id", None)
                or known_id,
            )
        return None

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is not None:
            await close()


__all__ = ["AIClient", "AIStreamEvent", "ClientSettings"]
