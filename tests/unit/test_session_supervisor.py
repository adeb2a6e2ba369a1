"""Tests for fail-fast session supervision."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.models import AuditEventType
from src.session.base import SessionError
from src.session.models import SessionState
from src.session.supervisor import SESSION_LOST_EXIT_CODE, SessionSupervisor
from tests.conftest import FakeSession


def test_disconnect_invokes_exit_hook(mock_audit_logger: MagicMock) -> None:
    exit_hook = MagicMock()
    supervisor = SessionSupervisor(FakeSession(), exit_hook=exit_hook, audit_logger=mock_audit_logger)

    supervisor.on_disconnected("NAVIGATION")

    exit_hook.assert_called_once_with(SESSION_LOST_EXIT_CODE)
    event = mock_audit_logger.log.call_args.args[0]
    assert event.event_type == AuditEventType.SESSION_DISCONNECTED
    assert event.details == {"reason": "NAVIGATION"}


@pytest.mark.asyncio
async def test_connected_state_keeps_running() -> None:
    exit_hook = MagicMock()
    supervisor = SessionSupervisor(FakeSession(), exit_hook=exit_hook)

    assert await supervisor.check_state() is True
    exit_hook.assert_not_called()


@pytest.mark.asyncio
async def test_non_connected_state_exits() -> None:
    session = FakeSession()
    session.state = SessionState.UNPAIRED
    exit_hook = MagicMock()
    supervisor = SessionSupervisor(session, exit_hook=exit_hook)

    assert await supervisor.check_state() is False
    exit_hook.assert_called_once_with(SESSION_LOST_EXIT_CODE)


@pytest.mark.asyncio
async def test_state_query_error_exits() -> None:
    session = FakeSession()
    exit_hook = MagicMock()
    supervisor = SessionSupervisor(session, exit_hook=exit_hook)

    with patch.object(session, "get_state", AsyncMock(side_effect=SessionError("timeout"))):
        assert await supervisor.check_state() is False
    exit_hook.assert_called_once()


@pytest.mark.asyncio
async def test_watch_disabled_returns_immediately() -> None:
    exit_hook = MagicMock()
    await SessionSupervisor(FakeSession(), exit_hook=exit_hook, check_interval=0).watch()
    exit_hook.assert_not_called()


@pytest.mark.asyncio
async def test_watch_stops_after_disconnect() -> None:
    session = FakeSession()
    states = iter([SessionState.CONNECTED, SessionState.CONFLICT])
    exit_hook = MagicMock()
    supervisor = SessionSupervisor(session, exit_hook=exit_hook, check_interval=0.01)

    with patch.object(session, "get_state", AsyncMock(side_effect=lambda: next(states))):
        await supervisor.watch()

    exit_hook.assert_called_once_with(SESSION_LOST_EXIT_CODE)
