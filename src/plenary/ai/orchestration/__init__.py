"""Chat send orchestration: sessions, attachments, tools and streaming."""

from .model_types import (
    HistoryTurn,
    MessagePart,
    ProviderChunk,
    SessionConfig,
    StreamState,
    ToolCallRequest,
    ToolCallResult,
    ToolSpec,
)

__all__ = [
    "HistoryTurn",
    "MessagePart",
    "ProviderChunk",
    "SessionConfig",
    "StreamState",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolSpec",
]
