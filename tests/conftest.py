"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from helpers import RecordingBackend, SleepRecorder
from plenary.chat.message_model import PendingAttachment


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture
def attachment() -> PendingAttachment:
    return PendingAttachment(data=b"%PDF-1.4 bill", mime_type="application/pdf", filename="bill.pdf")
