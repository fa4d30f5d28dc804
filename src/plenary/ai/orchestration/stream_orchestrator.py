"""Per-send state machine that turns user input into a streamed reply.

One send moves through::

    idle -> assembling -> [creating-chat] -> [uploading] -> creating-session
         -> streaming -> [tool-dispatch] -> finalizing -> idle

with ``aborted`` reachable from streaming and tool dispatch. Every failure
between chat creation and finalizing is caught at the top level and turns
the placeholder message into a failure notice; the in-flight flag is always
cleared on the way out.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Sequence

from ...chat.message_model import AttachmentRef, Message, PendingAttachment
from ...chat.transcript import Transcript
from ...services.backend import ASSISTANT_ENTITY, TEXT_MIME_TYPE, USER_ENTITY
from ...utils.logging import bind_chat_id, chat_context
from ..errors import BackendError, ChatCreationFailed, ChatError, StreamError
from .model_types import MessagePart, ProviderChunk, SessionConfig, StreamState

if TYPE_CHECKING:
    from ...services.backend import BackendClient
    from ..provider import GenerativeSession, SessionHandle
    from .attachments import AttachmentPipeline
    from .session_manager import SessionManager
    from .tool_dispatch import ToolDispatcher

LOGGER = logging.getLogger(__name__)

THINKING_MARKER = "..."
FAILURE_NOTICE = "Sorry, something went wrong. Please try again."
DEFAULT_CHAT_NAME = "New chat"
CHAT_NAME_WORDS = 5


@dataclass(slots=True)
class ChatState:
    """Observable conversation state shared with the presentation layer."""

    transcript: Transcript = field(default_factory=Transcript)
    input_text: str = ""
    attachment: PendingAttachment | None = None
    chat_id: str | None = None
    loading: bool = False


@dataclass(slots=True, frozen=True)
class SendOptions:
    """Backend and tool behaviour switches; everything is off by default."""

    create_chat: bool = False
    save_messages: bool = False
    use_tools: bool = False


def chat_name_for(text: str, attachment: PendingAttachment | None) -> str:
    """Name a new chat after the first words of its opening message."""

    words = text.split()
    if words:
        return " ".join(words[:CHAT_NAME_WORDS])
    if attachment is not None:
        return f"Chat with file {attachment.filename}"
    return DEFAULT_CHAT_NAME


class StreamOrchestrator:
    """Coordinates one send at a time against a provider session."""

    def __init__(
        self,
        provider: "GenerativeSession",
        sessions: "SessionManager",
        attachments: "AttachmentPipeline",
        tools: "ToolDispatcher",
        *,
        backend: "BackendClient | None" = None,
        options: SendOptions | None = None,
        thinking_marker: str = THINKING_MARKER,
        failure_notice: str = FAILURE_NOTICE,
        on_chat_created: Callable[[str], None] | None = None,
    ) -> None:
        self._provider = provider
        self._sessions = sessions
        self._attachments = attachments
        self._tools = tools
        self._backend = backend
        self._options = options or SendOptions()
        self._thinking_marker = thinking_marker
        self._failure_notice = failure_notice
        self._on_chat_created = on_chat_created
        self._active: StreamState | None = None

    @property
    def options(self) -> SendOptions:
        return self._options

    @property
    def in_flight(self) -> bool:
        return self._active is not None

    @property
    def active_stream(self) -> StreamState | None:
        return self._active

    async def send(
        self,
        state: ChatState,
        config: SessionConfig,
        *,
        prompt_id: str | None = None,
    ) -> str | None:
        """Send the current input and return the final assistant text.

        Returns ``None`` when the send was refused (already in flight or
        nothing to send) or failed.
        """

        if state.loading or self._active is not None:
            LOGGER.debug("Send ignored: another send is in flight")
            return None
        text = state.input_text
        attachment = state.attachment
        if not text.strip() and attachment is None:
            LOGGER.debug("Send ignored: no text or attachment")
            return None

        state.loading = True
        stream = self._assemble(state, text, attachment)
        self._active = stream
        with chat_context(state.chat_id):
            try:
                return await self._run(state, stream, text, attachment, config, prompt_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.exception("Send failed during %s: %s", stream.phase, exc)
                state.transcript.replace_content(stream.placeholder_index, self._failure_notice)
                return None
            finally:
                self._active = None
                state.loading = False
                self._enter(stream, "idle")

    def abort(self) -> bool:
        """Ask the in-flight send to stop at its next check point."""

        stream = self._active
        if stream is None:
            return False
        if not stream.cancelled:
            LOGGER.debug("Abort requested during %s", stream.phase)
        stream.cancelled = True
        return True

    def _assemble(self, state: ChatState, text: str, attachment: PendingAttachment | None) -> StreamState:
        state.input_text = ""
        state.attachment = None
        transcript = state.transcript
        if attachment is not None:
            transcript.append(
                Message(
                    role="user",
                    content="",
                    attachment=AttachmentRef(uri="", mime_type=attachment.mime_type, display_name=attachment.filename),
                )
            )
        if text.strip():
            transcript.append(Message(role="user", content=text))
        index = transcript.append(Message(role="assistant", content=self._thinking_marker))
        return StreamState(placeholder_index=index, chat_id=state.chat_id)

    async def _run(
        self,
        state: ChatState,
        stream: StreamState,
        text: str,
        attachment: PendingAttachment | None,
        config: SessionConfig,
        prompt_id: str | None,
    ) -> str | None:
        options = self._options
        if options.create_chat and not stream.chat_id:
            self._enter(stream, "creating-chat")
            stream.chat_id = await self._create_chat(text, attachment, prompt_id)
            state.chat_id = stream.chat_id
            bind_chat_id(stream.chat_id)

        parts: list[MessagePart] = []
        if attachment is not None:
            self._enter(stream, "uploading")
            remote = await self._attachments.upload(attachment, chat_id=stream.chat_id)
            parts.append(MessagePart.from_file(remote.as_ref()))

        if text.strip():
            parts.append(MessagePart.from_text(text))
            if options.save_messages and stream.chat_id:
                await self._save_message(stream.chat_id, text, USER_ENTITY)

        self._enter(stream, "creating-session")
        session = await self._sessions.ensure_session(config)

        self._enter(stream, "streaming")
        await self._consume(state, stream, session, parts)

        if options.use_tools and stream.pending_tool_calls and not stream.cancelled:
            self._enter(stream, "tool-dispatch")
            stream.buffer = await self._tools.execute(list(stream.pending_tool_calls), session)
            self._flush(state, stream)

        if stream.cancelled:
            self._enter(stream, "aborted")
            self._clear_marker(state, stream)
            return state.transcript[stream.placeholder_index].content

        self._enter(stream, "finalizing")
        self._flush(state, stream)
        reply = stream.buffer
        if options.save_messages and stream.chat_id:
            await self._save_message(stream.chat_id, reply, ASSISTANT_ENTITY)
        return reply

    async def _consume(
        self,
        state: ChatState,
        stream: StreamState,
        session: "SessionHandle",
        parts: Sequence[MessagePart],
    ) -> None:
        try:
            async with _closing(self._provider.send_stream(session, parts)) as chunks:
                async for chunk in chunks:
                    if stream.cancelled:
                        LOGGER.debug("Stream cancelled; dropping remaining chunks")
                        break
                    self._apply_chunk(state, stream, chunk)
        except ChatError:
            raise
        except Exception as exc:
            raise StreamError(f"Streaming failed: {exc}") from exc

    def _apply_chunk(self, state: ChatState, stream: StreamState, chunk: ProviderChunk) -> None:
        if chunk.tool_calls:
            for call in chunk.tool_calls:
                if not stream.collect(call):
                    LOGGER.warning("Ignoring duplicate tool call id %s", call.call_id)
            return
        if chunk.text:
            stream.buffer += chunk.text
            self._flush(state, stream)

    def _flush(self, state: ChatState, stream: StreamState) -> None:
        if stream.cancelled:
            return
        state.transcript.replace_content(stream.placeholder_index, stream.buffer)

    def _clear_marker(self, state: ChatState, stream: StreamState) -> None:
        # An abort before any flush would otherwise leave the marker as the reply.
        if state.transcript[stream.placeholder_index].content == self._thinking_marker:
            state.transcript.replace_content(stream.placeholder_index, "")

    async def _create_chat(self, text: str, attachment: PendingAttachment | None, prompt_id: str | None) -> str:
        if self._backend is None:
            raise ChatCreationFailed("Chat creation is enabled but no backend is configured")
        if not prompt_id:
            raise ChatCreationFailed("Chat creation requires a selected prompt")
        name = chat_name_for(text, attachment)
        try:
            chat_id = await self._backend.create_chat(name, prompt_id)
        except BackendError as exc:
            raise ChatCreationFailed(f"Backend refused to create chat: {exc.message}") from exc
        if not chat_id:
            raise ChatCreationFailed("Backend returned an empty chat id")
        if self._on_chat_created is not None:
            self._on_chat_created(chat_id)
        return chat_id

    async def _save_message(self, chat_id: str, text: str, entity: str) -> None:
        if self._backend is None:
            return
        try:
            await self._backend.post_message(chat_id, text=text, entity=entity, mime_type=TEXT_MIME_TYPE)
        except Exception as exc:
            LOGGER.warning("Saving %s message for chat %s failed: %s", entity, chat_id, exc)

    @staticmethod
    def _enter(stream: StreamState, phase: str) -> None:
        LOGGER.debug("Send phase %s -> %s", stream.phase, phase)
        stream.phase = phase


@contextlib.asynccontextmanager
async def _closing(iterator: AsyncIterator[Any]) -> AsyncIterator[AsyncIterator[Any]]:
    try:
        yield iterator
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


__all__ = [
    "ChatState",
    "SendOptions",
    "StreamOrchestrator",
    "chat_name_for",
    "THINKING_MARKER",
    "FAILURE_NOTICE",
]
