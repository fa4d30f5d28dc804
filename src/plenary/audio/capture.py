"""Start/stop audio recording that yields an attachment candidate."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import struct
import time
from enum import Enum
from typing import Awaitable, Callable, Dict, Protocol, runtime_checkable

from ..chat.message_model import PendingAttachment

LOGGER = logging.getLogger(__name__)

TICK_INTERVAL_SECONDS = 1.0
IDLE_ELAPSED = "00:00"

_AUDIO_EXTENSIONS: Dict[str, str] = {
    "audio/webm": "webm",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/mp4": "mp4",
    "audio/aac": "m4a",
    "audio/ogg": "ogg",
    "audio/opus": "ogg",
    "audio/flac": "flac",
    "audio/x-flac": "flac",
}


@runtime_checkable
class AudioRecorder(Protocol):
    """An acquired input device producing encoded audio chunks."""

    mime_type: str

    def start(self, on_data: Callable[[bytes], None]) -> None:
        """Begin delivering encoded chunks to ``on_data``."""

    def stop(self) -> None:
        """Stop capturing; any buffered data is delivered before returning."""

    def release(self) -> None:
        """Release the underlying input device."""


@runtime_checkable
class AudioDevice(Protocol):
    """Source of recorders; acquiring may prompt for permissions or fail."""

    async def acquire(self) -> AudioRecorder:
        """Open the default audio input."""


class CaptureState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"


def filename_for_mime(mime_type: str) -> str:
    """Return a file name whose extension matches ``mime_type``."""

    mime = (mime_type or "").lower().split(";", 1)[0].strip()
    extension = _AUDIO_EXTENSIONS.get(mime)
    if extension is None:
        subtype = mime.rsplit("/", 1)[-1] if "/" in mime else ""
        extension = subtype if subtype.isalnum() else "bin"
    return f"audio.{extension}"


def format_elapsed(seconds: float) -> str:
    """Render ``seconds`` as ``mm:ss``."""

    total = max(0, math.floor(seconds))
    return f"{total // 60:02d}:{total % 60:02d}"


def fix_wav_duration(data: bytes) -> bytes:
    """Rewrite RIFF and ``data`` chunk sizes from the real byte length.

    Streaming WAV encoders write the header before the length is known and
    leave placeholder sizes, which makes players report a zero or bogus
    duration.
    """

    if len(data) < 12 or data[:4] != b"RIFF" or data[8:12] != b"WAVE":
        return data
    patched = bytearray(data)
    struct.pack_into("<I", patched, 4, len(data) - 8)
    position = 12
    while position + 8 <= len(data):
        chunk_id = data[position:position + 4]
        if chunk_id == b"data":
            struct.pack_into("<I", patched, position + 4, len(data) - position - 8)
            return bytes(patched)
        (chunk_size,) = struct.unpack_from("<I", data, position + 4)
        position += 8 + chunk_size + (chunk_size & 1)
    LOGGER.debug("WAV payload has no data chunk; leaving sizes untouched")
    return data


DURATION_FIXERS: Dict[str, Callable[[bytes], bytes]] = {
    "audio/wav": fix_wav_duration,
    "audio/x-wav": fix_wav_duration,
}


def fix_duration(data: bytes, mime_type: str) -> bytes:
    """Apply the duration fixer registered for ``mime_type``, if any."""

    mime = (mime_type or "").lower().split(";", 1)[0].strip()
    fixer = DURATION_FIXERS.get(mime)
    if fixer is None:
        return data
    return fixer(data)


class CaptureController:
    """Owns the ``idle -> recording -> idle`` lifecycle of one recorder."""

    def __init__(
        self,
        device: AudioDevice,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        tick_interval: float = TICK_INTERVAL_SECONDS,
        on_tick: Callable[[str], None] | None = None,
    ) -> None:
        self._device = device
        self._clock = clock
        self._sleep = sleep
        self._tick_interval = tick_interval
        self._on_tick = on_tick
        self._state = CaptureState.IDLE
        self._recorder: AudioRecorder | None = None
        self._chunks: list[bytes] = []
        self._started_at: float | None = None
        self._elapsed = IDLE_ELAPSED
        self._ticker: asyncio.Task[None] | None = None

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def is_recording(self) -> bool:
        return self._state is CaptureState.RECORDING

    @property
    def elapsed_time(self) -> str:
        return self._elapsed

    async def start(self) -> None:
        """Acquire the input device and begin buffering chunks."""

        if self.is_recording:
            LOGGER.debug("Recording already in progress; ignoring start()")
            return
        recorder = await self._device.acquire()
        self._chunks = []
        try:
            recorder.start(self._on_data)
        except Exception:
            recorder.release()
            raise
        self._recorder = recorder
        self._started_at = self._clock()
        self._elapsed = IDLE_ELAPSED
        self._state = CaptureState.RECORDING
        self._ticker = asyncio.create_task(self._tick())
        LOGGER.debug("Recording started (%s)", recorder.mime_type)

    async def stop(self) -> PendingAttachment | None:
        """Finish the recording and return it as an attachment candidate.

        Returns ``None`` when nothing is being recorded.
        """

        recorder = self._recorder
        if not self.is_recording or recorder is None:
            return None
        try:
            recorder.stop()
        finally:
            recorder.release()
            self._recorder = None
            self._state = CaptureState.IDLE
            self._started_at = None
            self._elapsed = IDLE_ELAPSED
            await self._stop_ticker()

        mime_type = recorder.mime_type
        data = fix_duration(b"".join(self._chunks), mime_type)
        self._chunks = []
        LOGGER.debug("Recording stopped (%d bytes)", len(data))
        return PendingAttachment(data=data, mime_type=mime_type, filename=filename_for_mime(mime_type))

    async def aclose(self) -> None:
        """Discard any active recording and release the device."""

        if self.is_recording:
            await self.stop()

    def _on_data(self, chunk: bytes) -> None:
        if chunk:
            self._chunks.append(bytes(chunk))

    async def _tick(self) -> None:
        while True:
            await self._sleep(self._tick_interval)
            if self._started_at is None:
                return
            self._elapsed = format_elapsed(self._clock() - self._started_at)
            if self._on_tick is not None:
                self._on_tick(self._elapsed)

    async def _stop_ticker(self) -> None:
        ticker = self._ticker
        self._ticker = None
        if ticker is None or ticker.done():
            return
        ticker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await ticker


__all__ = [
    "AudioDevice",
    "AudioRecorder",
    "CaptureController",
    "CaptureState",
    "DURATION_FIXERS",
    "filename_for_mime",
    "fix_duration",
    "fix_wav_duration",
    "format_elapsed",
]
