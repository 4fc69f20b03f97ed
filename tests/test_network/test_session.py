"""Tests for session state and the session manager."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID

import pytest
import structlog

from bpqgate.logging import MemorySink
from bpqgate.network.connection import LocalConnection
from bpqgate.network.session import (
    CONNECT_FAILED_NOTICE,
    Session,
    SessionManager,
    SessionState,
)


def make_local() -> MagicMock:
    local = MagicMock(spec=LocalConnection)
    local.peer = "127.0.0.1:40000"
    local.notify = AsyncMock()
    local.send_line = AsyncMock()
    local.close = AsyncMock()
    local.is_closed = False
    return local


class TestSession:
    """Test cases for Session class."""

    def test_session_creation(self) -> None:
        """Test creating a new session."""
        local = make_local()
        session = Session(local)

        assert isinstance(session.id, UUID)
        assert session.local is local
        assert session.remote is None
        assert session.state == SessionState.CONNECTING
        assert session.peer == "127.0.0.1:40000"
        assert isinstance(session.created_at, datetime)
        assert session.lines_up == 0
        assert session.chars_down == 0

    def test_is_idle(self) -> None:
        """Test idle detection based on last activity."""
        session = Session(make_local())

        assert not session.is_idle(60)

        session.last_activity = datetime.now(UTC) - timedelta(seconds=61)
        assert session.is_idle(60)

        session.update_activity()
        assert not session.is_idle(60)

    def test_state_transitions(self) -> None:
        """Test the connecting, bridging, closing, closed path."""
        session = Session(make_local())

        session.set_state(SessionState.BRIDGING)
        assert session.state == SessionState.BRIDGING

        session.set_state(SessionState.CLOSING)
        assert session.state == SessionState.CLOSING

        session.set_state(SessionState.CLOSED)
        assert session.state == SessionState.CLOSED

    def test_closed_is_final(self) -> None:
        """Test a closed session never reopens."""
        session = Session(make_local())
        session.set_state(SessionState.CLOSED)

        session.set_state(SessionState.BRIDGING)

        assert session.state == SessionState.CLOSED

    def test_session_string_representation(self) -> None:
        session = Session(make_local())

        assert str(session) == f"Session({session.id}, connecting)"
        assert "peer=127.0.0.1:40000" in repr(session)


@pytest.mark.asyncio
class TestSessionManager:
    """Test cases for SessionManager."""

    async def test_connect_failure_notifies_and_closes(self, make_settings, unused_port) -> None:
        """Test an unreachable BBS ends the session straight from connecting."""
        local = make_local()
        sink = MemorySink()
        manager = SessionManager(local, make_settings(remote_port=unused_port), sink)

        session = await manager.run()

        assert session.state == SessionState.CLOSED
        assert session.remote is None
        local.notify.assert_awaited_once_with(CONNECT_FAILED_NOTICE)
        local.close.assert_awaited()
        assert "Session with node terminated." in sink.lines

    async def test_connect_failure_skips_closing_state(self, make_settings, unused_port) -> None:
        """Test a session that never reached the BBS goes from connecting to closed."""
        manager = SessionManager(make_local(), make_settings(remote_port=unused_port), MemorySink())

        with structlog.testing.capture_logs() as logs:
            await manager.run()

        transitions = [
            (entry["old_state"], entry["new_state"])
            for entry in logs
            if entry["event"] == "session_state_changed"
        ]
        assert transitions == [("connecting", "closed")]

    async def test_teardown_is_idempotent(self, make_settings) -> None:
        """Test repeated teardown closes the node link once."""
        local = make_local()
        manager = SessionManager(local, make_settings(), MemorySink())

        await manager.teardown()
        await manager.teardown()

        assert manager.state == SessionState.CLOSED
        local.close.assert_awaited_once()

    async def test_unexpected_error_stays_in_session(self, make_settings, fake_bbs) -> None:
        """Test an exception while bridging is logged and followed by teardown."""
        local = make_local()
        local.send_line.side_effect = RuntimeError("boom")
        manager = SessionManager(local, make_settings(), MemorySink())

        session = await manager.run()

        assert session.state == SessionState.CLOSED
        assert session.remote is not None
        assert session.remote.is_closed
        local.close.assert_awaited()
