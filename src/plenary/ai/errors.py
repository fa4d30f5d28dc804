"""Error taxonomy for the chat orchestration client.

Every failure the orchestrator can observe is expressed as a
:class:`ChatError` subclass so callers can branch on ``error_code``
without knowing which collaborator (provider SDK, backend API, tool
handler) produced it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


class ErrorCode:
    """Constants for machine-readable error codes."""

    # Attachment pipeline
    SIZE_EXCEEDED = "size_exceeded"
    UPLOAD_FAILED = "upload_failed"
    UPLOAD_TIMEOUT = "upload_timeout"

    # Session manager
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    SESSION_CREATION_FAILED = "session_creation_failed"

    # Backend persistence
    CHAT_CREATION_FAILED = "chat_creation_failed"
    BACKEND_ERROR = "backend_error"

    # Tool dispatch
    UNKNOWN_TOOL = "unknown_tool"
    INVALID_TOOL_ARGUMENTS = "invalid_tool_arguments"
    TOOL_FAILED = "tool_failed"

    # Streaming
    STREAM_ERROR = "stream_error"


@dataclass
class ChatError(Exception):
    """Base exception for all orchestration failures.

    Attributes:
        message: Human-readable error description.
        details: Additional structured information for logs and tool output.
    """

    message: str = "Chat operation failed"
    details: dict[str, Any] = field(default_factory=dict)

    error_code: ClassVar[str] = "chat_error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary suitable for JSON payloads."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


# -----------------------------------------------------------------------------
# Attachment pipeline
# -----------------------------------------------------------------------------

@dataclass
class SizeExceeded(ChatError):
    """Raised client-side when a file reaches the upload size limit."""

    message: str = "File exceeds the maximum upload size"
    error_code: ClassVar[str] = ErrorCode.SIZE_EXCEEDED


@dataclass
class UploadFailed(ChatError):
    """The provider reported a terminal failure state for an upload."""

    message: str = "The provider could not process the uploaded file"
    error_code: ClassVar[str] = ErrorCode.UPLOAD_FAILED


@dataclass
class UploadTimeout(ChatError):
    """The uploaded file did not become active within the poll budget."""

    message: str = "Timed out waiting for the uploaded file to become active"
    error_code: ClassVar[str] = ErrorCode.UPLOAD_TIMEOUT


# -----------------------------------------------------------------------------
# Session manager
# -----------------------------------------------------------------------------

@dataclass
class ProviderUnavailable(ChatError):
    """The generative-text provider cannot be reached."""

    message: str = "The generative-text provider is unavailable"
    error_code: ClassVar[str] = ErrorCode.PROVIDER_UNAVAILABLE


@dataclass
class SessionCreationFailed(ChatError):
    """The provider was reachable but refused to create a session."""

    message: str = "Unable to create a provider session"
    error_code: ClassVar[str] = ErrorCode.SESSION_CREATION_FAILED


# -----------------------------------------------------------------------------
# Backend persistence
# -----------------------------------------------------------------------------

@dataclass
class ChatCreationFailed(ChatError):
    """Chat creation was enabled for the send but did not yield an id."""

    message: str = "Unable to create a chat on the backend"
    error_code: ClassVar[str] = ErrorCode.CHAT_CREATION_FAILED


@dataclass
class BackendError(ChatError):
    """A backend persistence call failed (transport error or non-2xx)."""

    message: str = "Backend request failed"
    status_code: int | None = None
    error_code: ClassVar[str] = ErrorCode.BACKEND_ERROR


# -----------------------------------------------------------------------------
# Tool dispatch (scoped to a single call)
# -----------------------------------------------------------------------------

@dataclass
class UnknownTool(ChatError):
    """A tool call named a tool that was never declared."""

    message: str = "Tool is not declared for this session"
    error_code: ClassVar[str] = ErrorCode.UNKNOWN_TOOL


@dataclass
class InvalidToolArguments(ChatError):
    """Tool call arguments did not match the declared parameter schema."""

    message: str = "Tool arguments do not match the declared schema"
    error_code: ClassVar[str] = ErrorCode.INVALID_TOOL_ARGUMENTS


@dataclass
class ToolFailed(ChatError):
    """A tool handler raised while executing a call."""

    message: str = "Tool execution failed"
    error_code: ClassVar[str] = ErrorCode.TOOL_FAILED


# -----------------------------------------------------------------------------
# Streaming
# -----------------------------------------------------------------------------

@dataclass
class StreamError(ChatError):
    """Catch-all for provider or network failures while streaming."""

    message: str = "The response stream failed"
    error_code: ClassVar[str] = ErrorCode.STREAM_ERROR


__all__ = [
    "ErrorCode",
    "ChatError",
    "SizeExceeded",
    "UploadFailed",
    "UploadTimeout",
    "ProviderUnavailable",
    "SessionCreationFailed",
    "ChatCreationFailed",
    "BackendError",
    "UnknownTool",
    "InvalidToolArguments",
    "ToolFailed",
    "StreamError",
]
