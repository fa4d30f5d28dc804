"""Chat message and attachment data models."""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Literal, Optional


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)

ChatRole = Literal["user", "assistant"]


class AttachmentState(str, Enum):
    """Lifecycle of a file once the provider has accepted the upload."""

    PENDING = "pending"
    ACTIVE = "active"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class AttachmentRef:
    """Reference to a file shown alongside a transcript message."""

    uri: str
    mime_type: str
    display_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"uri": self.uri, "mimeType": self.mime_type, "displayName": self.display_name}


@dataclass(slots=True, frozen=True)
class PendingAttachment:
    """A local file that has not been uploaded anywhere yet."""

    data: bytes
    mime_type: str
    filename: str

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @classmethod
    def from_path(cls, path: Path | str, *, mime_type: str | None = None) -> "PendingAttachment":
        """Read ``path`` into memory, guessing the MIME type from its suffix."""

        source = Path(path).expanduser()
        guessed, _ = mimetypes.guess_type(source.name)
        return cls(
            data=source.read_bytes(),
            mime_type=mime_type or guessed or "application/octet-stream",
            filename=source.name,
        )


@dataclass(slots=True, frozen=True)
class RemoteFile:
    """Provider-side view of an uploaded attachment."""

    uri: str
    mime_type: str
    state: AttachmentState
    display_name: str = ""

    def with_state(self, state: AttachmentState) -> "RemoteFile":
        return replace(self, state=state)

    def as_ref(self) -> AttachmentRef:
        return AttachmentRef(uri=self.uri, mime_type=self.mime_type, display_name=self.display_name)


@dataclass(slots=True)
class Message:
    """Represents a row inside the visible transcript."""

    role: ChatRole
    content: str
    attachment: Optional[AttachmentRef] = None
    created_at: datetime = field(default_factory=_utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the message for persistence or display layers."""

        payload: Dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
        }
        if self.attachment is not None:
            payload["attachment"] = self.attachment.to_dict()
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload


__all__ = [
    "ChatRole",
    "AttachmentState",
    "AttachmentRef",
    "PendingAttachment",
    "RemoteFile",
    "Message",
]
