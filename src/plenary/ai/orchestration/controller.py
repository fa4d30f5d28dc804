"""Chat controller exposing conversation state and user actions."""

from __future__ import annotations

import asyncio
import inspect
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Sequence

from ...audio.capture import AudioDevice, CaptureController
from ...chat.message_model import AttachmentRef, Message, PendingAttachment
from ...chat.transcript import TranscriptListener
from ...services.backend import BackendClient, BackendMessage
from ...utils.logging import chat_context
from ..client import AIClient, ClientSettings
from ..prompts import Prompt, system_instruction_for
from ..provider import GenerativeSession, OpenAIProvider
from .attachments import AttachmentPipeline
from .model_types import HistoryTurn, SessionConfig, ToolSpec
from .session_manager import SessionManager
from .stream_orchestrator import FAILURE_NOTICE, THINKING_MARKER, ChatState, SendOptions, StreamOrchestrator
from .tool_dispatch import ToolDispatcher

if TYPE_CHECKING:
    from ...services.settings import Settings

LOGGER = logging.getLogger(__name__)


class ChatController:
    """Single owner of one conversation: transcript, session, chat id and recorder.

    Observable state: :attr:`messages`, :attr:`loading`, :attr:`chat_id`,
    :attr:`is_recording`, :attr:`elapsed_time`. Actions: :meth:`send_message`,
    :meth:`abort_stream`, :meth:`file_upload`, :meth:`start_recording`,
    :meth:`stop_recording`, :meth:`new_chat`, :meth:`load_old_chat`.
    """

    def __init__(
        self,
        provider: GenerativeSession,
        *,
        backend: BackendClient | None = None,
        capture: CaptureController | None = None,
        tools: Iterable[ToolSpec] = (),
        options: SendOptions | None = None,
        mirror_files: bool = False,
        prompt: Prompt | None = None,
        pipeline: AttachmentPipeline | None = None,
        thinking_marker: str = THINKING_MARKER,
        failure_notice: str = FAILURE_NOTICE,
        on_chat_created: Callable[[str], None] | None = None,
        owned_resources: Sequence[Any] = (),
    ) -> None:
        self._provider = provider
        self._backend = backend
        self._capture = capture
        self._prompt = prompt
        self._seed_history: tuple[HistoryTurn, ...] = ()
        self._state = ChatState()
        self._sessions = SessionManager(provider)
        self._dispatcher = ToolDispatcher(provider, tools)
        self._attachments = pipeline or AttachmentPipeline(
            provider,
            backend=backend,
            mirror_to_backend=mirror_files,
        )
        self._orchestrator = StreamOrchestrator(
            provider,
            self._sessions,
            self._attachments,
            self._dispatcher,
            backend=backend,
            options=options,
            thinking_marker=thinking_marker,
            failure_notice=failure_notice,
            on_chat_created=on_chat_created,
        )
        self._owned_resources = list(owned_resources)

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        *,
        audio_device: AudioDevice | None = None,
        tools: Iterable[ToolSpec] = (),
        prompt: Prompt | None = None,
        on_chat_created: Callable[[str], None] | None = None,
    ) -> "ChatController":
        """Wire a controller with OpenAI and backend clients built from ``settings``."""

        client = AIClient(
            ClientSettings(
                base_url=settings.base_url,
                api_key=settings.api_key,
                model=settings.model,
                organization=settings.organization,
                request_timeout=settings.request_timeout,
                temperature=settings.temperature,
                debug_logging=settings.debug_logging,
            )
        )
        provider = OpenAIProvider(client)
        backend = None
        if settings.backend_url:
            backend = BackendClient(
                settings.backend_url,
                auth_token=settings.auth_token,
                timeout=settings.backend_timeout,
            )
        pipeline = AttachmentPipeline(
            provider,
            backend=backend,
            mirror_to_backend=settings.save_files,
            max_bytes=settings.max_upload_bytes,
            poll_interval=settings.upload_poll_interval,
            poll_attempts=settings.upload_poll_attempts,
        )
        capture = CaptureController(audio_device) if audio_device is not None else None
        owned: list[Any] = [client]
        if backend is not None:
            owned.append(backend)
        return cls(
            provider,
            backend=backend,
            capture=capture,
            tools=tools,
            options=SendOptions(
                create_chat=settings.create_chat,
                save_messages=settings.save_messages,
                use_tools=settings.use_tools,
            ),
            prompt=prompt,
            pipeline=pipeline,
            thinking_marker=settings.thinking_marker,
            failure_notice=settings.failure_notice,
            on_chat_created=on_chat_created,
            owned_resources=owned,
        )

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------
    @property
    def messages(self) -> tuple[Message, ...]:
        return self._state.transcript.messages

    @property
    def loading(self) -> bool:
        return self._state.loading

    @property
    def chat_id(self) -> str | None:
        return self._state.chat_id

    @property
    def is_recording(self) -> bool:
        return self._capture is not None and self._capture.is_recording

    @property
    def elapsed_time(self) -> str:
        if self._capture is None:
            return "00:00"
        return self._capture.elapsed_time

    @property
    def input_text(self) -> str:
        return self._state.input_text

    @input_text.setter
    def input_text(self, value: str) -> None:
        self._state.input_text = value or ""

    @property
    def attachment(self) -> PendingAttachment | None:
        return self._state.attachment

    @property
    def prompt(self) -> Prompt | None:
        return self._prompt

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def tools(self) -> ToolDispatcher:
        return self._dispatcher

    def subscribe(self, listener: TranscriptListener) -> Callable[[], None]:
        """Be notified (coalesced) whenever the transcript changes."""

        return self._state.transcript.subscribe(listener)

    def select_prompt(self, prompt: Prompt | None) -> None:
        """Switch the system prompt; the next send uses a fresh session."""

        self._prompt = prompt

    def session_config(self) -> SessionConfig:
        declarations = self._dispatcher.declarations() if self._orchestrator.options.use_tools else ()
        return SessionConfig(
            system_instruction=system_instruction_for(self._prompt),
            tools=declarations,
            history=self._seed_history,
        )

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------
    async def send_message(self, text: str | None = None) -> str | None:
        """Send ``text`` (or the current input) plus any pending attachment."""

        if text is not None and not self._state.loading:
            self._state.input_text = text
        return await self._orchestrator.send(
            self._state,
            self.session_config(),
            prompt_id=self._prompt.id if self._prompt is not None else None,
        )

    def abort_stream(self) -> bool:
        return self._orchestrator.abort()

    def file_upload(self, source: PendingAttachment | Path | str) -> PendingAttachment:
        """Stage a file for the next send.

        Raises:
            SizeExceeded: The file is at or above the upload limit; the
                previously staged attachment is kept.
        """

        attachment = source if isinstance(source, PendingAttachment) else PendingAttachment.from_path(source)
        self._attachments.validate(attachment)
        self._state.attachment = attachment
        LOGGER.debug("Staged attachment %s (%d bytes)", attachment.filename, attachment.size_bytes)
        return attachment

    def clear_attachment(self) -> None:
        self._state.attachment = None

    async def start_recording(self) -> None:
        if self._capture is None:
            raise RuntimeError("No audio input device is configured")
        await self._capture.start()

    async def stop_recording(self) -> PendingAttachment | None:
        """Stop recording and stage the captured audio for the next send."""

        if self._capture is None:
            return None
        recording = await self._capture.stop()
        if recording is None:
            return None
        return self.file_upload(recording)

    def new_chat(self) -> bool:
        """Reset to an empty conversation; refused while a send is in flight."""

        if self._state.loading:
            LOGGER.warning("Cannot start a new chat while a response is streaming")
            return False
        self._sessions.invalidate()
        self._seed_history = ()
        self._state.transcript.clear()
        self._state.chat_id = None
        self._state.attachment = None
        self._state.input_text = ""
        return True

    async def load_old_chat(self, chat_id: str) -> bool:
        """Replace the conversation with a persisted chat and seed its history."""

        if self._state.loading:
            LOGGER.warning("Cannot load chat %s while a response is streaming", chat_id)
            return False
        if self._backend is None:
            LOGGER.warning("Cannot load chat %s: no backend configured", chat_id)
            return False

        state = self._state
        state.loading = True
        state.chat_id = chat_id
        state.transcript.clear()
        self._seed_history = ()
        self._sessions.invalidate()
        with chat_context(chat_id):
            try:
                stored = await self._backend.get_messages(chat_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.warning("Loading chat %s failed: %s", chat_id, exc)
                return False
            else:
                state.transcript.reset(_transcript_message(item) for item in stored)
                self._seed_history = tuple(
                    HistoryTurn.from_text("user" if item.is_user else "assistant", item.text) for item in stored
                )
                LOGGER.debug("Loaded chat %s with %d message(s)", chat_id, len(stored))
                return True
            finally:
                state.loading = False

    async def aclose(self) -> None:
        """Abort any stream, release the recorder and close owned clients."""

        self._orchestrator.abort()
        if self._capture is not None:
            await self._capture.aclose()
        for resource in self._owned_resources:
            close = getattr(resource, "aclose", None)
            if close is None:
                continue
            result = close()
            if inspect.isawaitable(result):
                await result
        self._owned_resources.clear()


def _transcript_message(item: BackendMessage) -> Message:
    attachment = None
    if item.file_url:
        attachment = AttachmentRef(uri=item.file_url, mime_type=item.mime_type)
    return Message(role="user" if item.is_user else "assistant", content=item.text, attachment=attachment)


__all__ = ["ChatController"]
