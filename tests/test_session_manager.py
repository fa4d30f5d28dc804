"""Tests for provider session reuse and recreation."""

from __future__ import annotations

import pytest

from helpers import FakeProvider
from plenary.ai.errors import ProviderUnavailable, SessionCreationFailed
from plenary.ai.orchestration.model_types import HistoryTurn, SessionConfig, ToolSpec
from plenary.ai.orchestration.session_manager import SessionManager


def _noop() -> str:
    return "ok"


@pytest.mark.asyncio
async def test_same_config_reuses_handle() -> None:
    provider = FakeProvider()
    manager = SessionManager(provider)
    config = SessionConfig(system_instruction="sys")

    first = await manager.ensure_session(config)
    second = await manager.ensure_session(SessionConfig(system_instruction="sys"))

    assert first is second
    assert len(provider.sessions) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "changed",
    [
        SessionConfig(system_instruction="other"),
        SessionConfig(system_instruction="sys", tools=(ToolSpec(name="noop", handler=_noop),)),
        SessionConfig(system_instruction="sys", history=(HistoryTurn.from_text("user", "hi"),)),
    ],
)
async def test_config_change_creates_new_handle(changed: SessionConfig) -> None:
    provider = FakeProvider()
    manager = SessionManager(provider)

    first = await manager.ensure_session(SessionConfig(system_instruction="sys"))
    second = await manager.ensure_session(changed)

    assert first is not second
    assert manager.current is second
    assert second.config == changed


@pytest.mark.asyncio
async def test_invalidate_forces_new_session() -> None:
    provider = FakeProvider()
    manager = SessionManager(provider)
    config = SessionConfig(system_instruction="sys")

    first = await manager.ensure_session(config)
    manager.invalidate()
    second = await manager.ensure_session(config)

    assert manager.current is second
    assert first is not second


@pytest.mark.asyncio
async def test_provider_errors_pass_through_and_keep_previous_handle() -> None:
    provider = FakeProvider()
    manager = SessionManager(provider)
    first = await manager.ensure_session(SessionConfig(system_instruction="sys"))
    provider.create_error = ProviderUnavailable("offline")

    with pytest.raises(ProviderUnavailable):
        await manager.ensure_session(SessionConfig(system_instruction="changed"))

    assert manager.current is first


@pytest.mark.asyncio
async def test_unexpected_errors_become_session_creation_failed() -> None:
    manager = SessionManager(FakeProvider(create_error=RuntimeError("bad config")))

    with pytest.raises(SessionCreationFailed) as excinfo:
        await manager.ensure_session(SessionConfig(system_instruction="sys"))

    assert "bad config" in excinfo.value.message


@pytest.mark.asyncio
async def test_tool_schema_change_creates_new_handle() -> None:
    provider = FakeProvider()
    manager = SessionManager(provider)
    loose = ToolSpec(name="noop", handler=_noop, parameters={"type": "object", "properties": {}})
    strict = ToolSpec(
        name="noop",
        handler=_noop,
        parameters={"type": "object", "properties": {"number": {"type": "integer"}}},
    )

    first = await manager.ensure_session(SessionConfig(system_instruction="sys", tools=(loose,)))
    same = await manager.ensure_session(
        SessionConfig(
            system_instruction="sys",
            tools=(ToolSpec(name="noop", handler=_noop, parameters={"properties": {}, "type": "object"}),),
        )
    )
    second = await manager.ensure_session(SessionConfig(system_instruction="sys", tools=(strict,)))

    assert same is first
    assert second is not first
    assert len(provider.sessions) == 2
