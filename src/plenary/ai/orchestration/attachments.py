"""Validation, provider upload and backend mirroring of user attachments."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable

from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_attempt, wait_fixed

from ...chat.message_model import AttachmentState, PendingAttachment, RemoteFile
from ..errors import SizeExceeded, UploadFailed, UploadTimeout

if TYPE_CHECKING:
    from ...services.backend import BackendClient
    from ..provider import GenerativeSession

LOGGER = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 20_000_000
POLL_INTERVAL_SECONDS = 2.0
POLL_ATTEMPTS = 30

SleepFn = Callable[[float], Awaitable[None]]


class AttachmentPipeline:
    """Turns a local file into a provider reference that is safe to send."""

    def __init__(
        self,
        provider: "GenerativeSession",
        *,
        backend: "BackendClient | None" = None,
        mirror_to_backend: bool = False,
        max_bytes: int = MAX_UPLOAD_BYTES,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        poll_attempts: int = POLL_ATTEMPTS,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._backend = backend
        self._mirror_to_backend = mirror_to_backend
        self._max_bytes = max_bytes
        self._poll_interval = poll_interval
        self._poll_attempts = max(1, poll_attempts)
        self._sleep = sleep

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    def validate(self, attachment: PendingAttachment) -> None:
        """Raise :class:`SizeExceeded` when the file is at or over the limit."""

        if attachment.size_bytes >= self._max_bytes:
            raise SizeExceeded(
                f"{attachment.filename} is {attachment.size_bytes} bytes; "
                f"files must be smaller than {self._max_bytes} bytes",
                details={"size_bytes": attachment.size_bytes, "limit": self._max_bytes},
            )

    async def upload(self, attachment: PendingAttachment, *, chat_id: str | None = None) -> RemoteFile:
        """Upload ``attachment`` and wait until the provider marks it active.

        When backend mirroring is enabled and a chat id is known, the file is
        also sent to the backend; that call runs alongside the provider upload
        and its outcome never affects the result.
        """

        self.validate(attachment)
        mirror: asyncio.Task[None] | None = None
        if self._mirror_to_backend and self._backend is not None and chat_id:
            mirror = asyncio.create_task(self._mirror(self._backend, attachment, chat_id))
        try:
            return await self._upload_to_provider(attachment)
        finally:
            if mirror is not None:
                await mirror

    async def _upload_to_provider(self, attachment: PendingAttachment) -> RemoteFile:
        remote = await self._provider.upload_file(attachment)
        LOGGER.debug("Uploaded %s as %s (state=%s)", attachment.filename, remote.uri, remote.state.value)
        if remote.state is AttachmentState.ACTIVE:
            return remote
        if remote.state is AttachmentState.FAILED:
            raise UploadFailed(details={"uri": remote.uri})
        await self._wait_until_active(remote)
        return remote.with_state(AttachmentState.ACTIVE)

    async def _wait_until_active(self, remote: RemoteFile) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._poll_attempts),
            wait=wait_fixed(self._poll_interval),
            retry=retry_if_result(lambda state: state is not AttachmentState.ACTIVE),
            sleep=self._sleep,
        )
        await self._sleep(self._poll_interval)
        try:
            await retrying(self._check_state, remote.uri)
        except RetryError as exc:
            raise UploadTimeout(
                f"{remote.display_name or remote.uri} was not active after {self._poll_attempts} checks",
                details={"uri": remote.uri, "attempts": self._poll_attempts},
            ) from exc

    async def _check_state(self, uri: str) -> AttachmentState:
        state = await self._provider.get_file_status(uri)
        if state is AttachmentState.FAILED:
            raise UploadFailed(details={"uri": uri})
        return state

    @staticmethod
    async def _mirror(backend: "BackendClient", attachment: PendingAttachment, chat_id: str) -> None:
        try:
            await backend.upload_file(chat_id, attachment)
        except Exception as exc:
            LOGGER.warning("Backend file mirror failed for chat %s: %s", chat_id, exc)


__all__ = ["AttachmentPipeline", "MAX_UPLOAD_BYTES", "POLL_INTERVAL_SECONDS", "POLL_ATTEMPTS"]
