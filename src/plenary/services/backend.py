"""HTTP client for the chat persistence backend."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping

import httpx

from ..ai.errors import BackendError
from ..chat.message_model import PendingAttachment

LOGGER = logging.getLogger(__name__)

USER_ENTITY = "user"
ASSISTANT_ENTITY = "ai"
TEXT_MIME_TYPE = "text"


@dataclass(slots=True, frozen=True)
class BackendMessage:
    """A persisted message as returned by ``GET /message/{chatId}``."""

    text: str
    entity: str
    mime_type: str = TEXT_MIME_TYPE
    file_url: str | None = None

    @property
    def is_user(self) -> bool:
        return self.entity == USER_ENTITY

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "BackendMessage":
        return cls(
            text=str(payload.get("text") or ""),
            entity=str(payload.get("entity") or ASSISTANT_ENTITY),
            mime_type=str(payload.get("mimeType") or TEXT_MIME_TYPE),
            file_url=payload.get("fileUrl") or None,
        )


class BackendClient:
    """Bearer-authenticated client for chats, messages and file mirrors."""

    def __init__(
        self,
        base_url: str,
        *,
        auth_token: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required for the backend client")
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {auth_token}"} if auth_token else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def create_chat(self, name: str, prompt_id: str | None) -> str:
        """Create a chat and return its id."""

        response = await self._request("POST", "/chat", json={"name": name, "promptId": prompt_id})
        try:
            chat_id = response.json()["chat"]["id"]
        except (ValueError, KeyError, TypeError) as exc:
            raise BackendError("Chat creation response did not include chat.id") from exc
        LOGGER.debug("Created backend chat %s (%s)", chat_id, name)
        return str(chat_id)

    async def post_message(
        self,
        chat_id: str,
        *,
        text: str,
        entity: str,
        mime_type: str = TEXT_MIME_TYPE,
        file_url: str | None = None,
    ) -> None:
        payload: Dict[str, Any] = {"text": text, "entity": entity, "mimeType": mime_type}
        if file_url:
            payload["fileUrl"] = file_url
        await self._request("POST", f"/message/{chat_id}", json=payload)

    async def upload_file(self, chat_id: str, attachment: PendingAttachment) -> None:
        files = {"file": (attachment.filename, attachment.data, attachment.mime_type)}
        await self._request("POST", f"/message/{chat_id}/file", files=files)

    async def get_messages(self, chat_id: str) -> List[BackendMessage]:
        response = await self._request("GET", f"/message/{chat_id}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise BackendError("Message history response was not JSON") from exc
        items = payload.get("messages") if isinstance(payload, Mapping) else None
        return [BackendMessage.from_payload(item) for item in items or [] if isinstance(item, Mapping)]

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self._base_url}{path}"
        try:
            response = await self._client.request(method, url, headers=self._headers, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise BackendError(
                f"{method} {path} returned {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise BackendError(f"{method} {path} failed: {exc}") from exc
        return response

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = [
    "BackendClient",
    "BackendMessage",
    "USER_ENTITY",
    "ASSISTANT_ENTITY",
    "TEXT_MIME_TYPE",
]
