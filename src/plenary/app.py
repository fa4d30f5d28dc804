"""Command-line bootstrap and interactive chat loop."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import signal
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.errors import ChatError
from .ai.orchestration.controller import ChatController
from .chat.message_model import Message
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_SECRET_FIELDS = ("api_key", "auth_token")
_LOGGER = logging.getLogger(__name__)
_HELP_TEXT = """\
Type a message and press Enter to send it. Commands:
  /new            start a new chat
  /load <chat>    load a saved chat by id
  /attach <path>  attach a file to the next message
  /detach         drop the staged attachment
  /quit           exit
Press Ctrl-C while a reply is streaming to stop it.
"""


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure file and console logging for the application."""

    level = logging.DEBUG if debug else logging.WARNING
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the ``plenary`` console script."""

    args = _parse_cli_args(argv)
    debug = bool(args.debug) or _env_flag("PLENARY_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("PLENARY_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    if not settings.api_key:
        print("No API key configured; set PLENARY_API_KEY or use --set api_key=...", file=sys.stderr)
        raise SystemExit(2)

    try:
        asyncio.run(run_chat(settings))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")


async def run_chat(
    settings: Settings,
    *,
    controller: ChatController | None = None,
    stdin: TextIO | None = None,
    stdout: TextIO | None = None,
) -> None:
    """Run the interactive loop until ``/quit`` or end of input."""

    source = stdin or sys.stdin
    output = stdout or sys.stdout
    chat = controller or ChatController.from_settings(
        settings,
        on_chat_created=lambda chat_id: output.write(f"[chat {chat_id}]\n"),
    )
    view = _TerminalView(output)
    unsubscribe = chat.subscribe(view.render)
    output.write(_HELP_TEXT)
    output.flush()
    loop = asyncio.get_running_loop()
    try:
        while True:
            line = await loop.run_in_executor(None, source.readline)
            if not line:
                break
            if not await _handle_line(chat, view, line.strip(), output):
                break
    finally:
        unsubscribe()
        await chat.aclose()


async def _handle_line(chat: ChatController, view: "_TerminalView", line: str, output: TextIO) -> bool:
    if not line:
        return True
    if line.startswith("/"):
        command, _, argument = line.partition(" ")
        argument = argument.strip()
        if command == "/quit":
            return False
        if command == "/new":
            if chat.new_chat():
                view.reset()
                output.write("Started a new chat.\n")
        elif command == "/load" and argument:
            view.reset()
            if not await chat.load_old_chat(argument):
                output.write(f"Could not load chat {argument}.\n")
        elif command == "/attach" and argument:
            try:
                attachment = chat.file_upload(Path(argument).expanduser())
            except (OSError, ChatError) as exc:
                output.write(f"Cannot attach {argument}: {exc}\n")
            else:
                output.write(f"Attached {attachment.filename} ({attachment.size_bytes} bytes).\n")
        elif command == "/detach":
            chat.clear_attachment()
        else:
            output.write(_HELP_TEXT)
        output.flush()
        return True

    with _abort_on_interrupt(chat):
        await chat.send_message(line)
    output.write("\n")
    output.flush()
    return True


@contextlib.contextmanager
def _abort_on_interrupt(chat: ChatController):
    """Route SIGINT to :meth:`ChatController.abort_stream` while a send runs."""

    loop = asyncio.get_running_loop()
    installed = False
    with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
        loop.add_signal_handler(signal.SIGINT, chat.abort_stream)
        installed = True
    try:
        yield
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


class _TerminalView:
    """Print transcript changes incrementally to a text stream."""

    def __init__(self, output: TextIO) -> None:
        self._output = output
        self._count = 0
        self._printed = ""

    def reset(self) -> None:
        self._count = 0
        self._printed = ""

    def render(self, messages: Sequence[Message]) -> None:
        if len(messages) < self._count:
            self.reset()
        index = self._count
        while index < len(messages):
            message = messages[index]
            if message.role == "user":
                label = f"[file {message.attachment.display_name or message.attachment.uri}]" if message.attachment else message.content
                self._output.write(f"> {label}\n")
            else:
                self._stream(message.content)
                if index == len(messages) - 1:
                    break
                self._output.write("\n")
                self._printed = ""
            index += 1
            self._count = index
        self._output.flush()

    def _stream(self, content: str) -> None:
        # Replies grow by appending; anything else is a rewrite of the line.
        if content.startswith(self._printed):
            self._output.write(content[len(self._printed):])
        else:
            self._output.write(f"\n{content}")
        self._printed = content


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="plenary",
        description="Chat with the legislative research assistant from the terminal.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings",
        dest="settings_path",
        metavar="PATH",
        help="Override the default ~/.plenary/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings before launch (repeatable).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    optional = type(None) in get_args(annotation)
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if optional and normalized.lower() in {"none", "null"}:
        return None
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    if get_origin(annotation) is None:
        return annotation
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    return args[0] if args else annotation


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    for name in _SECRET_FIELDS:
        value = payload.get(name, "")
        if isinstance(value, str):
            payload[name] = redact_secret(value)
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("PLENARY_"))
