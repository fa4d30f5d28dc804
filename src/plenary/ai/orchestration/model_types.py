"""Internal data classes for the chat send cycle."""

from __future__ import annotations

import inspect
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Literal, Mapping

from ...chat.message_model import AttachmentRef

HistoryRole = Literal["user", "assistant"]


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """A callable tool that can be declared to the provider.

    Attributes:
        name: Tool identifier used in provider calls.
        handler: Sync or async callable invoked with the call arguments as kwargs.
        description: Human-readable description (taken from the handler's docstring if omitted).
        parameters: JSON Schema for the tool arguments.
        strict: Whether to request strict argument generation from the provider.
    """

    name: str
    handler: Callable[..., Any]
    description: str | None = None
    parameters: Mapping[str, Any] | None = field(default=None, compare=False)
    strict: bool = False
    schema_key: str = field(init=False, repr=False)

    def __post_init__(self) -> None:
        # Canonical JSON of the schema; mappings are unhashable.
        key = "" if self.parameters is None else json.dumps(self.parameters, sort_keys=True, default=str)
        object.__setattr__(self, "schema_key", key)

    def resolved_description(self) -> str:
        return self.description or inspect.getdoc(self.handler) or f"Tool {self.name}"

    def resolved_parameters(self) -> Dict[str, Any]:
        if self.parameters is None:
            return {"type": "object", "properties": {}}
        return dict(self.parameters)


@dataclass(slots=True, frozen=True)
class ToolCallRequest:
    """Tool call directive emitted by the provider mid-stream."""

    call_id: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)
    raw_arguments: str | None = None

    @classmethod
    def from_raw(
        cls,
        *,
        call_id: str | None,
        name: str | None,
        raw_arguments: str | None,
        parsed: Any | None = None,
        index: int = 0,
    ) -> "ToolCallRequest":
        """Build a request from streamed fields, generating an id when absent."""

        tool_name = (name or "").strip() or "unknown"
        normalized_id = (call_id or "").strip() or f"{tool_name}:{index}"
        arguments: Any = parsed
        if not isinstance(arguments, Mapping):
            arguments = _parse_arguments(raw_arguments)
        return cls(
            call_id=normalized_id,
            name=tool_name,
            arguments=dict(arguments),
            raw_arguments=raw_arguments,
        )


@dataclass(slots=True, frozen=True)
class ToolCallResult:
    """Output of a single tool call, correlated by ``call_id``."""

    call_id: str
    name: str
    output: Any
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def serialized_output(self) -> str:
        if isinstance(self.output, str):
            return self.output
        try:
            return json.dumps(self.output, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return str(self.output)


@dataclass(slots=True, frozen=True)
class MessagePart:
    """One part of an outgoing provider message: text or a file reference."""

    text: str | None = None
    file: AttachmentRef | None = None

    @classmethod
    def from_text(cls, text: str) -> "MessagePart":
        return cls(text=text)

    @classmethod
    def from_file(cls, file: AttachmentRef) -> "MessagePart":
        return cls(file=file)


@dataclass(slots=True, frozen=True)
class HistoryTurn:
    """A prior conversation turn used to seed a provider session."""

    role: HistoryRole
    parts: tuple[MessagePart, ...]

    @classmethod
    def from_text(cls, role: HistoryRole, text: str) -> "HistoryTurn":
        return cls(role=role, parts=(MessagePart.from_text(text),))


@dataclass(slots=True, frozen=True)
class SessionConfig:
    """Inputs that define a provider session; compared field by field."""

    system_instruction: str
    tools: tuple[ToolSpec, ...] = ()
    history: tuple[HistoryTurn, ...] = ()


@dataclass(slots=True, frozen=True)
class ProviderChunk:
    """One unit of a streamed response."""

    text: str = ""
    tool_calls: tuple[ToolCallRequest, ...] = ()


@dataclass(slots=True)
class StreamState:
    """Per-send mutable state threaded through the send state machine."""

    placeholder_index: int
    chat_id: str | None = None
    buffer: str = ""
    cancelled: bool = False
    pending_tool_calls: list[ToolCallRequest] = field(default_factory=list)
    phase: str = "assembling"

    def collect(self, call: ToolCallRequest) -> bool:
        """Queue ``call`` unless its id is already pending; return whether it was added."""

        if any(existing.call_id == call.call_id for existing in self.pending_tool_calls):
            return False
        self.pending_tool_calls.append(call)
        return True


def _parse_arguments(raw: str | None) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


__all__ = [
    "ToolSpec",
    "ToolCallRequest",
    "ToolCallResult",
    "MessagePart",
    "HistoryTurn",
    "SessionConfig",
    "ProviderChunk",
    "StreamState",
]
