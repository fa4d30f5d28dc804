"""Lifecycle of the provider session backing one conversation."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from ..errors import ChatError, SessionCreationFailed
from .model_types import SessionConfig

if TYPE_CHECKING:
    from ..provider import GenerativeSession, SessionHandle

LOGGER = logging.getLogger(__name__)


class SessionManager:
    """Hands out a session handle that always matches the current config.

    A handle is recreated, never mutated, whenever the system instruction,
    tool declarations or seed history change. Callers fetch the handle
    right before each send instead of caching it.
    """

    def __init__(self, provider: "GenerativeSession") -> None:
        self._provider = provider
        self._handle: "SessionHandle | None" = None
        self._config: SessionConfig | None = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> "SessionHandle | None":
        return self._handle

    async def ensure_session(self, config: SessionConfig) -> "SessionHandle":
        """Return a handle for ``config``, creating a new one when it changed.

        Raises:
            ProviderUnavailable: The provider could not be reached.
            SessionCreationFailed: The provider refused to create a session.
        """

        async with self._lock:
            if self._handle is not None and self._config == config:
                return self._handle

            reason = "initial" if self._handle is None else "config changed"
            LOGGER.debug("Creating provider session (%s)", reason)
            try:
                handle = await self._provider.create_session(config)
            except ChatError:
                raise
            except Exception as exc:
                raise SessionCreationFailed(f"Unable to create session: {exc}") from exc

            self._handle = handle
            self._config = config
            return handle

    def invalidate(self) -> None:
        """Drop the current handle so the next send creates a fresh session."""

        if self._handle is not None:
            LOGGER.debug("Invalidating provider session")
        self._handle = None
        self._config = None


__all__ = ["SessionManager"]
