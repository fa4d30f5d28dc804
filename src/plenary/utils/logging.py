"""Logging setup for the plenary chat client.

Every record that reaches the configured handlers carries a ``chat_id``
attribute: the backend chat bound with :func:`chat_context` for the task
that emitted it, or ``-`` when no chat is bound.
"""

from __future__ import annotations

import contextlib
import contextvars
import logging
import logging.handlers
import os
from pathlib import Path
from typing import Iterator

__all__ = [
    "ChatContextFilter",
    "bind_chat_id",
    "chat_context",
    "current_chat_id",
    "get_log_path",
    "setup_logging",
]

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | chat=%(chat_id)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_NO_CHAT = "-"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")

_chat_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("plenary_chat_id", default=None)
_log_path: Path | None = None


class ChatContextFilter(logging.Filter):
    """Stamps ``record.chat_id`` unless the caller passed one via ``extra``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "chat_id"):
            record.chat_id = _chat_id.get() or _NO_CHAT
        return True


def current_chat_id() -> str | None:
    return _chat_id.get()


def bind_chat_id(chat_id: str | None) -> None:
    """Rebind the chat id for the rest of the enclosing :func:`chat_context`."""

    _chat_id.set(chat_id)


@contextlib.contextmanager
def chat_context(chat_id: str | None) -> Iterator[None]:
    token = _chat_id.set(chat_id)
    try:
        yield
    finally:
        _chat_id.reset(token)


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Send root logging to ``plenary.log`` (rotated) and optionally stderr.

    Repeated calls are no-ops unless ``force`` is set.
    """

    global _log_path
    if _log_path is not None and not force:
        return _log_path

    directory = Path(log_dir or os.environ.get("PLENARY_LOG_DIR") or Path.home() / ".plenary" / "logs")
    directory = directory.expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / "plenary.log"

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())
    formatter = logging.Formatter(LOG_FORMAT, datefmt=_DATE_FORMAT)
    context = ChatContextFilter()
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(context)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    _log_path = log_path
    return log_path


def get_log_path() -> Path | None:
    return _log_path
