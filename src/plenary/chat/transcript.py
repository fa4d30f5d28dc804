"""Visible chat transcript with coalesced change notifications."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Callable, Iterable, Sequence

from .message_model import Message

LOGGER = logging.getLogger(__name__)

TranscriptListener = Callable[[Sequence[Message]], None]


class Transcript:
    """Ordered list of messages owned by a single chat controller.

    Mutations are applied immediately; subscribers are told about them once
    per event-loop iteration so a burst of streamed tokens results in one
    redraw instead of one per delta.
    """

    def __init__(self, messages: Iterable[Message] | None = None) -> None:
        self._messages: list[Message] = list(messages or [])
        self._listeners: list[TranscriptListener] = []
        self._notify_pending = False

    def __len__(self) -> int:
        return len(self._messages)

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def subscribe(self, listener: TranscriptListener) -> Callable[[], None]:
        """Register ``listener`` and return a callable that removes it."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def append(self, message: Message) -> int:
        """Append ``message`` and return its index."""

        self._messages.append(message)
        self._schedule_notify()
        return len(self._messages) - 1

    def replace_content(self, index: int, content: str) -> None:
        """Swap the content of the message at ``index`` in place."""

        current = self._messages[index]
        if current.content == content:
            return
        self._messages[index] = replace(current, content=content)
        self._schedule_notify()

    def reset(self, messages: Iterable[Message] | None = None) -> None:
        self._messages = list(messages or [])
        self._schedule_notify()

    def clear(self) -> None:
        self.reset()

    def _schedule_notify(self) -> None:
        if not self._listeners or self._notify_pending:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._notify()
            return
        self._notify_pending = True
        loop.call_soon(self._notify)

    def _notify(self) -> None:
        self._notify_pending = False
        snapshot = self.messages
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:  # pragma: no cover - listener bugs must not break the send
                LOGGER.exception("Transcript listener failed")


__all__ = ["Transcript", "TranscriptListener"]
