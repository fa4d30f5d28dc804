"""Generative-text provider capability and its OpenAI-backed implementation."""

from __future__ import annotations

import contextlib
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Protocol, Sequence, cast, runtime_checkable

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAIError
from openai.types.chat import ChatCompletionToolParam

from ..chat.message_model import AttachmentState, PendingAttachment, RemoteFile
from .client import AIClient, AIStreamEvent
from .errors import (
    ChatError,
    ProviderUnavailable,
    SessionCreationFailed,
    StreamError,
    UploadFailed,
)
from .orchestration.model_types import (
    HistoryTurn,
    MessagePart,
    ProviderChunk,
    SessionConfig,
    ToolCallRequest,
    ToolCallResult,
    ToolSpec,
)

LOGGER = logging.getLogger(__name__)

_TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    APIConnectionError,
    APITimeoutError,
    httpx.TransportError,
)
_FILE_STATES: Dict[str, AttachmentState] = {
    "uploaded": AttachmentState.PENDING,
    "processed": AttachmentState.ACTIVE,
    "error": AttachmentState.FAILED,
}


@dataclass(slots=True)
class SessionHandle:
    """Opaque reference to a provider conversation.

    Callers should treat the fields as private; only the provider that
    created the handle reads them.
    """

    config: SessionConfig
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    history: List[Dict[str, Any]] = field(default_factory=list)
    tools: List[ChatCompletionToolParam] = field(default_factory=list)


@runtime_checkable
class GenerativeSession(Protocol):
    """Narrow capability interface every concrete provider implements."""

    async def create_session(self, config: SessionConfig) -> SessionHandle:
        """Create a fresh session for ``config``."""

    def send_stream(self, handle: SessionHandle, parts: Sequence[MessagePart]) -> AsyncIterator[ProviderChunk]:
        """Send ``parts`` as a user turn and stream the response chunks."""

    async def send_tool_results(self, handle: SessionHandle, results: Sequence[ToolCallResult]) -> str:
        """Submit tool outputs as a follow-up turn and return the reply text."""

    async def upload_file(self, attachment: PendingAttachment) -> RemoteFile:
        """Upload ``attachment`` and return the provider's view of it."""

    async def get_file_status(self, uri: str) -> AttachmentState:
        """Return the current state of a previously uploaded file."""


class OpenAIProvider:
    """:class:`GenerativeSession` implementation over the chat completions API.

    The chat completions API is stateless, so the session history lives in
    the handle and is replayed on every request.
    """

    def __init__(self, client: AIClient, *, verify_connectivity: bool = True) -> None:
        self._client = client
        self._verify_connectivity = verify_connectivity

    @property
    def client(self) -> AIClient:
        return self._client

    async def create_session(self, config: SessionConfig) -> SessionHandle:
        if self._verify_connectivity:
            try:
                await self._client.list_models()
            except _TRANSPORT_ERRORS as exc:
                raise ProviderUnavailable(f"Cannot reach provider: {exc}") from exc
            except APIStatusError as exc:
                raise SessionCreationFailed(
                    f"Provider rejected the session request: {exc}",
                    details={"status_code": exc.status_code},
                ) from exc
            except OpenAIError as exc:
                raise SessionCreationFailed(str(exc)) from exc

        handle = SessionHandle(config=config)
        if config.system_instruction:
            handle.history.append({"role": "system", "content": config.system_instruction})
        handle.history.extend(_history_message(turn) for turn in config.history)
        handle.tools = [tool_declaration(spec) for spec in config.tools]
        LOGGER.debug(
            "Created session %s (history=%d, tools=%d)",
            handle.session_id,
            len(config.history),
            len(handle.tools),
        )
        return handle

    async def send_stream(self, handle: SessionHandle, parts: Sequence[MessagePart]) -> AsyncIterator[ProviderChunk]:
        if not parts:
            raise ValueError("At least one message part is required")
        handle.history.append({"role": "user", "content": [_content_part(part) for part in parts]})

        texts: list[str] = []
        calls: list[ToolCallRequest] = []
        completed = False
        try:
            async with contextlib.aclosing(self._open_stream(handle)) as events:
                async for event in events:
                    if event.type == "content.delta" and event.content:
                        texts.append(event.content)
                        yield ProviderChunk(text=event.content)
                    elif event.type == "tool_calls.function.arguments.done":
                        call = ToolCallRequest.from_raw(
                            call_id=event.tool_call_id,
                            name=event.tool_name,
                            raw_arguments=event.tool_arguments,
                            parsed=event.parsed,
                            index=event.tool_index if event.tool_index is not None else len(calls),
                        )
                        calls.append(call)
                        yield ProviderChunk(tool_calls=(call,))
            completed = True
        except ChatError:
            raise
        except (OpenAIError, httpx.HTTPError) as exc:
            raise StreamError(f"Streaming failed: {exc}") from exc
        finally:
            # A closed or failed stream never gets tool results, so only
            # completed turns may record tool calls in the history.
            self._record_assistant_turn(handle, "".join(texts), calls if completed else [])

    async def send_tool_results(self, handle: SessionHandle, results: Sequence[ToolCallResult]) -> str:
        for result in results:
            handle.history.append(
                {
                    "role": "tool",
                    "tool_call_id": result.call_id,
                    "content": result.serialized_output(),
                }
            )
        texts: list[str] = []
        try:
            async with contextlib.aclosing(self._open_stream(handle)) as events:
                async for event in events:
                    if event.type == "content.delta" and event.content:
                        texts.append(event.content)
                    elif event.type == "tool_calls.function.arguments.done":
                        LOGGER.warning(
                            "Ignoring nested tool call %s in session %s", event.tool_name, handle.session_id
                        )
        except (OpenAIError, httpx.HTTPError) as exc:
            raise StreamError(f"Tool follow-up failed: {exc}") from exc
        reply = "".join(texts)
        self._record_assistant_turn(handle, reply, [])
        return reply

    def _open_stream(self, handle: SessionHandle) -> AsyncGenerator[AIStreamEvent, None]:
        return cast(
            AsyncGenerator[AIStreamEvent, None],
            self._client.stream_chat(handle.history, tools=handle.tools or None),
        )

    async def upload_file(self, attachment: PendingAttachment) -> RemoteFile:
        try:
            uploaded = await self._client.upload_file(
                attachment.data,
                filename=attachment.filename,
                mime_type=attachment.mime_type,
            )
        except _TRANSPORT_ERRORS as exc:
            raise ProviderUnavailable(f"Cannot reach provider: {exc}") from exc
        except OpenAIError as exc:
            raise UploadFailed(f"Upload rejected: {exc}", details={"filename": attachment.filename}) from exc
        return RemoteFile(
            uri=uploaded.id,
            mime_type=attachment.mime_type,
            state=_file_state(getattr(uploaded, "status", None)),
            display_name=attachment.filename,
        )

    async def get_file_status(self, uri: str) -> AttachmentState:
        try:
            remote = await self._client.retrieve_file(uri)
        except _TRANSPORT_ERRORS as exc:
            raise ProviderUnavailable(f"Cannot reach provider: {exc}") from exc
        except OpenAIError as exc:
            raise UploadFailed(f"Unable to read file status: {exc}", details={"uri": uri}) from exc
        return _file_state(getattr(remote, "status", None))

    @staticmethod
    def _record_assistant_turn(handle: SessionHandle, text: str, calls: Sequence[ToolCallRequest]) -> None:
        if not text and not calls:
            return
        message: Dict[str, Any] = {"role": "assistant", "content": text or None}
        if calls:
            message["tool_calls"] = [
                {
                    "id": call.call_id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.raw_arguments or "{}"},
                }
                for call in calls
            ]
        handle.history.append(message)


def tool_declaration(spec: ToolSpec) -> ChatCompletionToolParam:
    """Return the chat completions function declaration for ``spec``."""
    function: Dict[str, Any] = {
        "name": spec.name,
        "description": spec.resolved_description(),
        "parameters": spec.resolved_parameters(),
    }
    if spec.strict:
        function["strict"] = True
    return cast(ChatCompletionToolParam, {"type": "function", "function": function})


def _file_state(status: str | None) -> AttachmentState:
    return _FILE_STATES.get((status or "").lower(), AttachmentState.PENDING)


def _content_part(part: MessagePart) -> Dict[str, Any]:
    if part.file is not None:
        return {"type": "file", "file": {"file_id": part.file.uri}}
    return {"type": "text", "text": part.text or ""}


def _history_message(turn: HistoryTurn) -> Dict[str, Any]:
    if turn.role == "assistant":
        text = "".join(part.text or "" for part in turn.parts)
        return {"role": "assistant", "content": text}
    return {"role": "user", "content": [_content_part(part) for part in turn.parts]}


__all__ = ["GenerativeSession", "OpenAIProvider", "SessionHandle", "tool_declaration"]
