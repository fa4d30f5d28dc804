"""Tests for the per-send state machine."""

from __future__ import annotations

import asyncio
import logging

import pytest

from helpers import FakeProvider, RecordingBackend, SleepRecorder, text_chunks, tool_chunk
from plenary.ai.errors import BackendError, ProviderUnavailable, StreamError
from plenary.ai.orchestration.attachments import AttachmentPipeline
from plenary.ai.orchestration.model_types import SessionConfig, ToolSpec
from plenary.ai.orchestration.session_manager import SessionManager
from plenary.ai.orchestration.stream_orchestrator import (
    FAILURE_NOTICE,
    THINKING_MARKER,
    ChatState,
    SendOptions,
    StreamOrchestrator,
    chat_name_for,
)
from plenary.ai.orchestration.tool_dispatch import ToolDispatcher
from plenary.chat.message_model import AttachmentState, PendingAttachment
from plenary.utils.logging import ChatContextFilter

CONFIG = SessionConfig(system_instruction="You are a legislative assistant.")


def _build(
    provider: FakeProvider,
    *,
    backend: RecordingBackend | None = None,
    options: SendOptions | None = None,
    tools: tuple[ToolSpec, ...] = (),
) -> StreamOrchestrator:
    pipeline = AttachmentPipeline(provider, backend=backend, sleep=SleepRecorder())
    return StreamOrchestrator(
        provider,
        SessionManager(provider),
        pipeline,
        ToolDispatcher(provider, tools),
        backend=backend,
        options=options,
    )


def _contents(state: ChatState) -> list[tuple[str, str]]:
    return [(message.role, message.content) for message in state.transcript.messages]


@pytest.mark.asyncio
async def test_send_without_text_or_attachment_is_a_no_op() -> None:
    provider = FakeProvider(chunks=text_chunks("unused"))
    orchestrator = _build(provider)
    state = ChatState(input_text="   ")

    assert await orchestrator.send(state, CONFIG) is None
    assert len(state.transcript) == 0
    assert state.loading is False
    assert provider.sessions == []


@pytest.mark.asyncio
async def test_send_while_loading_is_ignored() -> None:
    provider = FakeProvider(chunks=text_chunks("unused"))
    orchestrator = _build(provider)
    state = ChatState(input_text="Hello", loading=True)

    assert await orchestrator.send(state, CONFIG) is None
    assert len(state.transcript) == 0
    assert state.input_text == "Hello"
    assert state.loading is True


@pytest.mark.asyncio
async def test_streamed_deltas_accumulate_into_placeholder() -> None:
    provider = FakeProvider(chunks=text_chunks("Bill ", "1234 ", "is pending."))
    orchestrator = _build(provider)
    state = ChatState(input_text="Status of bill 1234?")
    observed: list[tuple[bool, str]] = []
    provider.on_chunk = lambda _index: observed.append((state.loading, state.transcript[-1].content))

    reply = await orchestrator.send(state, CONFIG)

    assert reply == "Bill 1234 is pending."
    assert _contents(state) == [
        ("user", "Status of bill 1234?"),
        ("assistant", "Bill 1234 is pending."),
    ]
    assert observed == [(True, "Bill "), (True, "Bill 1234 "), (True, "Bill 1234 is pending.")]
    assert state.loading is False
    assert state.input_text == ""
    assert orchestrator.in_flight is False
    assert [part.text for part in provider.sent[0][1]] == ["Status of bill 1234?"]


@pytest.mark.asyncio
async def test_placeholder_shows_thinking_marker_until_first_chunk() -> None:
    provider = FakeProvider(chunks=text_chunks("Hi there"))
    orchestrator = _build(provider)
    state = ChatState(input_text="Hi")
    snapshots: list[list[tuple[str, str]]] = []
    state.transcript.subscribe(lambda messages: snapshots.append([(m.role, m.content) for m in messages]))

    await orchestrator.send(state, CONFIG)
    await asyncio.sleep(0)

    assert snapshots[0] == [("user", "Hi"), ("assistant", THINKING_MARKER)]
    assert snapshots[-1] == [("user", "Hi"), ("assistant", "Hi there")]


@pytest.mark.asyncio
async def test_empty_stream_clears_placeholder() -> None:
    provider = FakeProvider(chunks=())
    orchestrator = _build(provider)
    state = ChatState(input_text="Hi")

    assert await orchestrator.send(state, CONFIG) == ""
    assert _contents(state) == [("user", "Hi"), ("assistant", "")]


@pytest.mark.asyncio
async def test_tool_calls_replace_buffer_with_follow_up_text() -> None:
    def lookup_bill(number: int) -> dict:
        return {"number": number, "stage": "committee"}

    spec = ToolSpec(
        name="lookup_bill",
        handler=lookup_bill,
        parameters={"type": "object", "properties": {"number": {"type": "integer"}}, "required": ["number"]},
    )
    provider = FakeProvider(
        chunks=[*text_chunks("Let me check."), tool_chunk("call-1", "lookup_bill", number=1234)],
        tool_reply="Bill 1234 is in committee.",
    )
    orchestrator = _build(provider, options=SendOptions(use_tools=True), tools=(spec,))
    state = ChatState(input_text="Where is bill 1234?")

    reply = await orchestrator.send(state, CONFIG)

    assert reply == "Bill 1234 is in committee."
    assert state.transcript[-1].content == "Bill 1234 is in committee."
    assert len(provider.tool_results) == 1
    (result,) = provider.tool_results[0]
    assert result.call_id == "call-1"
    assert result.output == {"number": 1234, "stage": "committee"}


@pytest.mark.asyncio
async def test_duplicate_tool_call_ids_run_once() -> None:
    calls: list[int] = []
    spec = ToolSpec(name="lookup_bill", handler=lambda number: calls.append(number) or "ok")
    provider = FakeProvider(
        chunks=[tool_chunk("call-1", "lookup_bill", number=1), tool_chunk("call-1", "lookup_bill", number=1)],
        tool_reply="done",
    )
    orchestrator = _build(provider, options=SendOptions(use_tools=True), tools=(spec,))

    await orchestrator.send(ChatState(input_text="go"), CONFIG)

    assert calls == [1]
    assert len(provider.tool_results[0]) == 1


@pytest.mark.asyncio
async def test_tool_calls_are_ignored_when_tools_disabled() -> None:
    provider = FakeProvider(chunks=[*text_chunks("Plain answer"), tool_chunk("call-1", "lookup_bill")])
    orchestrator = _build(provider)
    state = ChatState(input_text="question")

    reply = await orchestrator.send(state, CONFIG)

    assert reply == "Plain answer"
    assert provider.tool_results == []


@pytest.mark.asyncio
async def test_abort_stops_applying_chunks_and_skips_persistence(backend: RecordingBackend) -> None:
    provider = FakeProvider(chunks=text_chunks("first", " second", " third"))
    orchestrator = _build(provider, backend=backend, options=SendOptions(save_messages=True))
    state = ChatState(input_text="long question", chat_id="chat-9")

    def _abort_after_first(index: int) -> None:
        if index == 0:
            assert orchestrator.abort() is True

    provider.on_chunk = _abort_after_first

    reply = await orchestrator.send(state, CONFIG)

    assert reply == "first"
    assert state.transcript[-1].content == "first"
    assert provider.stream_closed is True
    assert state.loading is False
    assert [post["entity"] for post in backend.posted] == ["user"]


@pytest.mark.asyncio
async def test_abort_before_first_chunk_clears_thinking_marker(backend: RecordingBackend) -> None:
    provider = FakeProvider(chunks=text_chunks("never shown"))
    orchestrator = _build(provider, backend=backend, options=SendOptions(save_messages=True))
    state = ChatState(input_text="question", chat_id="chat-9")

    def _abort_on_marker(messages) -> None:
        if messages and messages[-1].content == THINKING_MARKER:
            orchestrator.abort()

    state.transcript.subscribe(_abort_on_marker)

    reply = await orchestrator.send(state, CONFIG)

    assert reply == ""
    assert _contents(state) == [("user", "question"), ("assistant", "")]
    assert provider.stream_closed is True
    assert [post["entity"] for post in backend.posted] == ["user"]


@pytest.mark.asyncio
async def test_abort_without_send_returns_false() -> None:
    orchestrator = _build(FakeProvider())

    assert orchestrator.abort() is False


@pytest.mark.asyncio
async def test_stream_error_replaces_placeholder_with_failure_notice() -> None:
    provider = FakeProvider(chunks=text_chunks("partial"), stream_error=StreamError("connection reset"))
    orchestrator = _build(provider)
    state = ChatState(input_text="question")

    reply = await orchestrator.send(state, CONFIG)

    assert reply is None
    assert _contents(state) == [("user", "question"), ("assistant", FAILURE_NOTICE)]
    assert state.loading is False


@pytest.mark.asyncio
async def test_unexpected_stream_exception_is_reported_as_failure() -> None:
    provider = FakeProvider(chunks=text_chunks("partial"), stream_error=RuntimeError("boom"))
    orchestrator = _build(provider)
    state = ChatState(input_text="question")

    assert await orchestrator.send(state, CONFIG) is None
    assert state.transcript[-1].content == FAILURE_NOTICE


@pytest.mark.asyncio
async def test_session_failure_shows_failure_notice() -> None:
    provider = FakeProvider(create_error=ProviderUnavailable("offline"))
    orchestrator = _build(provider)
    state = ChatState(input_text="question")

    assert await orchestrator.send(state, CONFIG) is None
    assert state.transcript[-1].content == FAILURE_NOTICE
    assert provider.sent == []


@pytest.mark.asyncio
async def test_chat_is_created_before_first_send(backend: RecordingBackend) -> None:
    provider = FakeProvider(chunks=text_chunks("ok"))
    created: list[str] = []
    orchestrator = StreamOrchestrator(
        provider,
        SessionManager(provider),
        AttachmentPipeline(provider, sleep=SleepRecorder()),
        ToolDispatcher(provider),
        backend=backend,
        options=SendOptions(create_chat=True, save_messages=True),
        on_chat_created=created.append,
    )
    state = ChatState(input_text="Find bills about water rights filed in 2024")

    await orchestrator.send(state, CONFIG, prompt_id="prompt-7")

    assert backend.created == [("Find bills about water rights", "prompt-7")]
    assert state.chat_id == "chat-1"
    assert created == ["chat-1"]
    assert [(post["entity"], post["text"]) for post in backend.posted] == [
        ("user", "Find bills about water rights filed in 2024"),
        ("ai", "ok"),
    ]
    assert all(post["mime_type"] == "text" for post in backend.posted)


@pytest.mark.asyncio
async def test_existing_chat_id_skips_creation(backend: RecordingBackend) -> None:
    provider = FakeProvider(chunks=text_chunks("ok"))
    orchestrator = _build(provider, backend=backend, options=SendOptions(create_chat=True))
    state = ChatState(input_text="follow up", chat_id="chat-42")

    await orchestrator.send(state, CONFIG, prompt_id="prompt-7")

    assert backend.created == []
    assert state.chat_id == "chat-42"


@pytest.mark.asyncio
async def test_chat_creation_requires_prompt(backend: RecordingBackend) -> None:
    provider = FakeProvider(chunks=text_chunks("unused"))
    orchestrator = _build(provider, backend=backend, options=SendOptions(create_chat=True))
    state = ChatState(input_text="hello")

    assert await orchestrator.send(state, CONFIG) is None
    assert state.transcript[-1].content == FAILURE_NOTICE
    assert backend.created == []
    assert provider.sessions == []


@pytest.mark.asyncio
async def test_chat_creation_backend_failure_aborts_send() -> None:
    backend = RecordingBackend(create_error=BackendError("refused", status_code=500))
    provider = FakeProvider(chunks=text_chunks("unused"))
    orchestrator = _build(provider, backend=backend, options=SendOptions(create_chat=True))
    state = ChatState(input_text="hello")

    assert await orchestrator.send(state, CONFIG, prompt_id="p") is None
    assert state.transcript[-1].content == FAILURE_NOTICE
    assert state.chat_id is None
    assert provider.sent == []


@pytest.mark.asyncio
async def test_message_save_failure_does_not_abort_send() -> None:
    backend = RecordingBackend(post_error=BackendError("unavailable", status_code=503))
    provider = FakeProvider(chunks=text_chunks("answer"))
    orchestrator = _build(provider, backend=backend, options=SendOptions(save_messages=True))
    state = ChatState(input_text="question", chat_id="chat-1")

    assert await orchestrator.send(state, CONFIG) == "answer"
    assert state.transcript[-1].content == "answer"
    assert len(backend.posted) == 2


@pytest.mark.asyncio
async def test_best_effort_failures_are_logged_with_chat_id(
    backend: RecordingBackend, caplog: pytest.LogCaptureFixture
) -> None:
    backend.post_error = BackendError("unavailable", status_code=503)
    orchestrator = _build(
        FakeProvider(chunks=text_chunks("answer")),
        backend=backend,
        options=SendOptions(create_chat=True, save_messages=True),
    )
    state = ChatState(input_text="Which bills passed?")
    caplog.handler.addFilter(ChatContextFilter())

    with caplog.at_level(logging.WARNING):
        await orchestrator.send(state, CONFIG, prompt_id="prompt-1")

    warnings = [record for record in caplog.records if record.levelno == logging.WARNING]
    assert len(warnings) == 2
    assert {record.chat_id for record in warnings} == {"chat-1"}


@pytest.mark.asyncio
async def test_attachment_is_uploaded_and_sent_before_text(attachment: PendingAttachment) -> None:
    provider = FakeProvider(chunks=text_chunks("Summary"))
    orchestrator = _build(provider)
    state = ChatState(input_text="Summarise this bill", attachment=attachment)

    await orchestrator.send(state, CONFIG)

    messages = state.transcript.messages
    assert [message.role for message in messages] == ["user", "user", "assistant"]
    assert messages[0].attachment is not None
    assert messages[0].attachment.display_name == "bill.pdf"
    assert messages[1].content == "Summarise this bill"
    parts = provider.sent[0][1]
    assert parts[0].file is not None and parts[0].file.uri == "file-1"
    assert parts[1].text == "Summarise this bill"
    assert state.attachment is None


@pytest.mark.asyncio
async def test_attachment_only_send(attachment: PendingAttachment) -> None:
    provider = FakeProvider(chunks=text_chunks("Got it"))
    orchestrator = _build(provider)
    state = ChatState(attachment=attachment)

    assert await orchestrator.send(state, CONFIG) == "Got it"
    assert [part.text for part in provider.sent[0][1]] == [None]


@pytest.mark.asyncio
async def test_upload_timeout_shows_failure_notice(attachment: PendingAttachment) -> None:
    provider = FakeProvider(chunks=text_chunks("unused"), upload_state=AttachmentState.PENDING)
    orchestrator = _build(provider)
    state = ChatState(input_text="read this", attachment=attachment)

    assert await orchestrator.send(state, CONFIG) is None
    assert state.transcript[-1].content == FAILURE_NOTICE
    assert provider.status_checks == 30
    assert provider.sent == []


def test_chat_name_uses_first_five_words() -> None:
    assert chat_name_for("one two three four five six", None) == "one two three four five"


def test_chat_name_falls_back_to_attachment(attachment: PendingAttachment) -> None:
    assert chat_name_for("  ", attachment) == "Chat with file bill.pdf"


def test_chat_name_default() -> None:
    assert chat_name_for("", None) == "New chat"
