"""Fakes shared by the chat orchestration tests."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Iterable, Sequence

from plenary.ai.provider import SessionHandle
from plenary.ai.orchestration.model_types import (
    MessagePart,
    ProviderChunk,
    SessionConfig,
    ToolCallRequest,
    ToolCallResult,
)
from plenary.chat.message_model import AttachmentState, PendingAttachment, RemoteFile
from plenary.services.backend import BackendMessage


class FakeProvider:
    """Scripted :class:`GenerativeSession` used across orchestration tests."""

    def __init__(
        self,
        *,
        chunks: Iterable[ProviderChunk] = (),
        tool_reply: str = "",
        upload_state: AttachmentState = AttachmentState.ACTIVE,
        statuses: Iterable[AttachmentState] = (),
        create_error: Exception | None = None,
        stream_error: Exception | None = None,
        upload_error: Exception | None = None,
    ) -> None:
        self.chunks = list(chunks)
        self.tool_reply = tool_reply
        self.upload_state = upload_state
        self.statuses = list(statuses)
        self.create_error = create_error
        self.stream_error = stream_error
        self.upload_error = upload_error
        self.sessions: list[SessionHandle] = []
        self.sent: list[tuple[SessionHandle, list[MessagePart]]] = []
        self.tool_results: list[list[ToolCallResult]] = []
        self.uploads: list[PendingAttachment] = []
        self.status_checks = 0
        self.stream_closed = False
        self.on_chunk: Callable[[int], None] | None = None

    async def create_session(self, config: SessionConfig) -> SessionHandle:
        if self.create_error is not None:
            raise self.create_error
        handle = SessionHandle(config=config, session_id=f"session-{len(self.sessions) + 1}")
        self.sessions.append(handle)
        return handle

    async def send_stream(self, handle: SessionHandle, parts: Sequence[MessagePart]) -> AsyncIterator[ProviderChunk]:
        self.sent.append((handle, list(parts)))
        try:
            # Yield to the loop once, as a network round trip would.
            await asyncio.sleep(0)
            for index, chunk in enumerate(self.chunks):
                yield chunk
                await asyncio.sleep(0)
                if self.on_chunk is not None:
                    self.on_chunk(index)
            if self.stream_error is not None:
                raise self.stream_error
        finally:
            self.stream_closed = True

    async def send_tool_results(self, handle: SessionHandle, results: Sequence[ToolCallResult]) -> str:
        self.tool_results.append(list(results))
        return self.tool_reply

    async def upload_file(self, attachment: PendingAttachment) -> RemoteFile:
        self.uploads.append(attachment)
        if self.upload_error is not None:
            raise self.upload_error
        return RemoteFile(
            uri=f"file-{len(self.uploads)}",
            mime_type=attachment.mime_type,
            state=self.upload_state,
            display_name=attachment.filename,
        )

    async def get_file_status(self, uri: str) -> AttachmentState:
        self.status_checks += 1
        if self.statuses:
            return self.statuses.pop(0)
        return AttachmentState.PENDING


@dataclass
class RecordingBackend:
    """In-memory stand-in for :class:`plenary.services.backend.BackendClient`."""

    chat_id: str = "chat-1"
    create_error: Exception | None = None
    post_error: Exception | None = None
    upload_error: Exception | None = None
    history: list[BackendMessage] = field(default_factory=list)
    history_error: Exception | None = None
    created: list[tuple[str, str | None]] = field(default_factory=list)
    posted: list[dict[str, Any]] = field(default_factory=list)
    uploaded: list[tuple[str, PendingAttachment]] = field(default_factory=list)
    closed: bool = False

    async def create_chat(self, name: str, prompt_id: str | None) -> str:
        self.created.append((name, prompt_id))
        if self.create_error is not None:
            raise self.create_error
        return self.chat_id

    async def post_message(self, chat_id: str, *, text: str, entity: str, mime_type: str = "text", file_url=None) -> None:
        self.posted.append({"chat_id": chat_id, "text": text, "entity": entity, "mime_type": mime_type})
        if self.post_error is not None:
            raise self.post_error

    async def upload_file(self, chat_id: str, attachment: PendingAttachment) -> None:
        self.uploaded.append((chat_id, attachment))
        if self.upload_error is not None:
            raise self.upload_error

    async def get_messages(self, chat_id: str) -> list[BackendMessage]:
        if self.history_error is not None:
            raise self.history_error
        return list(self.history)

    async def aclose(self) -> None:
        self.closed = True


class SleepRecorder:
    """Awaitable replacement for :func:`asyncio.sleep` that records delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def text_chunks(*texts: str) -> list[ProviderChunk]:
    return [ProviderChunk(text=text) for text in texts]


def tool_chunk(call_id: str, name: str, **arguments: Any) -> ProviderChunk:
    return ProviderChunk(tool_calls=(ToolCallRequest(call_id=call_id, name=name, arguments=arguments),))


