"""Session lifecycle for one node connection and its BBS connection."""

import asyncio
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

import structlog

from bpqgate.config import Settings, get_settings
from bpqgate.errors import RemoteConnectError
from bpqgate.logging.sink import LogSink, StructlogSink, emit
from bpqgate.network.connection import RemoteConnection
from bpqgate.network.relay import DownlinkRelay, UplinkRelay

if TYPE_CHECKING:
    from bpqgate.network.connection import LocalConnection

logger = structlog.get_logger(__name__)

CONNECTED_NOTICE = "Connected to BBS {host}."
CONNECT_FAILED_NOTICE = "Error: unable to connect to the BBS."
IDLE_NOTICE = "Idle timeout, disconnecting from BBS..."

# Seconds teardown waits for the downlink to notice its socket is gone
DOWNLINK_JOIN_TIMEOUT = 2.0


class SessionState(str, Enum):
    """Session state enumeration."""

    CONNECTING = "connecting"  # Node accepted, BBS not yet reached
    BRIDGING = "bridging"  # Both links up, relays running
    CLOSING = "closing"  # Teardown started
    CLOSED = "closed"  # Both links released


class Session:
    """
    One node connection paired with its BBS connection.

    Both connection handles belong to the session and are released together.
    """

    def __init__(self, local: "LocalConnection") -> None:
        """
        Initialize a new session.

        Args:
            local: The accepted node connection
        """
        self.id: UUID = uuid4()
        self.local = local
        self.remote: RemoteConnection | None = None
        self.state = SessionState.CONNECTING
        self.created_at = datetime.now(UTC)
        self.last_activity = datetime.now(UTC)
        self.lines_up = 0
        self.chars_down = 0

        logger.info("session_created", session_id=str(self.id), peer=local.peer)

    @property
    def peer(self) -> str:
        return self.local.peer

    @property
    def is_closing(self) -> bool:
        """True once teardown has started."""
        return self.state in (SessionState.CLOSING, SessionState.CLOSED)

    def update_activity(self) -> None:
        """Update the last activity timestamp."""
        self.last_activity = datetime.now(UTC)

    def is_idle(self, timeout_seconds: float) -> bool:
        """
        Check if the session saw no traffic for longer than the timeout.

        Args:
            timeout_seconds: Idle limit in seconds
        """
        return datetime.now(UTC) - self.last_activity > timedelta(seconds=timeout_seconds)

    def set_state(self, state: SessionState) -> None:
        """
        Update session state. A closed session stays closed.

        Args:
            state: New session state
        """
        if self.state == SessionState.CLOSED or self.state == state:
            return
        old_state = self.state
        self.state = state
        logger.info(
            "session_state_changed",
            session_id=str(self.id),
            old_state=old_state.value,
            new_state=state.value,
        )

    def __str__(self) -> str:
        return f"Session({self.id}, {self.state.value})"

    def __repr__(self) -> str:
        return (
            f"Session(id={self.id}, peer={self.peer}, state={self.state.value}, "
            f"lines_up={self.lines_up}, chars_down={self.chars_down})"
        )


class SessionManager:
    """
    Drives one session from accept to teardown.

    Opens the BBS connection, runs the downlink as a background task and the
    uplink in the calling task, then closes both links on every exit path.
    """

    def __init__(
        self,
        local: "LocalConnection",
        settings: Settings | None = None,
        sink: LogSink | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.sink = sink if sink is not None else StructlogSink()
        self.session = Session(local)
        self._downlink_task: asyncio.Task[None] | None = None
        self._watchdog_task: asyncio.Task[None] | None = None
        self._teardown_lock = asyncio.Lock()

    @property
    def state(self) -> SessionState:
        return self.session.state

    async def run(self) -> Session:
        """
        Run the session to completion.

        Errors stay inside the session; they are logged and followed by
        teardown.

        Returns:
            The finished session
        """
        try:
            await self._bridge()
        except Exception as e:
            logger.error(
                "session_error",
                session_id=str(self.session.id),
                error=str(e),
                exc_info=True,
            )
        finally:
            await self.teardown()
        return self.session

    async def _bridge(self) -> None:
        session = self.session
        settings = self.settings

        try:
            remote = await RemoteConnection.open(
                settings.remote_host,
                settings.remote_port,
                encoding=settings.remote_encoding,
                timeout=settings.connect_timeout,
            )
        except RemoteConnectError as e:
            logger.warning(
                "remote_connect_failed",
                session_id=str(session.id),
                host=e.host,
                port=e.port,
                error=e.reason,
            )
            emit(self.sink, f"Error connecting to {e.host}:{e.port}: {e.reason}")
            await session.local.notify(CONNECT_FAILED_NOTICE)
            return

        session.remote = remote
        session.update_activity()
        session.set_state(SessionState.BRIDGING)
        emit(self.sink, f"Telnet connection established with {settings.remote_host}")
        await session.local.send_line(CONNECTED_NOTICE.format(host=settings.remote_host))

        downlink = DownlinkRelay(
            session,
            poll_interval=settings.poll_interval,
            flush_threshold=settings.flush_threshold,
            sink=self.sink,
        )
        self._downlink_task = asyncio.create_task(
            downlink.run(), name=f"downlink-{session.id}"
        )

        if settings.idle_timeout is not None:
            self._watchdog_task = asyncio.create_task(
                self._idle_watchdog(settings.idle_timeout), name=f"idle-{session.id}"
            )

        uplink = UplinkRelay(session, exit_command=settings.exit_command, sink=self.sink)
        if await uplink.run():
            emit(self.sink, "Closing Telnet connection.")

    async def _idle_watchdog(self, timeout: float) -> None:
        session = self.session
        interval = min(timeout, 1.0)
        while session.state == SessionState.BRIDGING:
            await asyncio.sleep(interval)
            if session.state == SessionState.BRIDGING and session.is_idle(timeout):
                logger.info("session_idle_timeout", session_id=str(session.id), timeout=timeout)
                emit(self.sink, f"Session idle for {timeout:g}s, closing.")
                await session.local.notify(IDLE_NOTICE)
                session.set_state(SessionState.CLOSING)
                # Remote EOF ends the downlink, which closes the node link
                if session.remote is not None:
                    await session.remote.close()
                await session.local.close()
                return

    async def shutdown(self, notice: str | None = None) -> None:
        """
        End the session from outside, optionally telling the node why.

        Args:
            notice: Status line sent to the node before closing
        """
        if notice and not self.session.local.is_closed:
            await self.session.local.notify(notice)
        await self.teardown()

    async def teardown(self) -> None:
        """Close both links and wait for the relays. Safe to call repeatedly."""
        async with self._teardown_lock:
            session = self.session
            if session.state == SessionState.CLOSED:
                return
            # A session that never reached the BBS goes straight to closed
            if session.remote is not None:
                session.set_state(SessionState.CLOSING)

            if self._watchdog_task is not None:
                self._watchdog_task.cancel()

            if session.remote is not None:
                await session.remote.close()
            await session.local.close()

            if self._downlink_task is not None:
                done, _ = await asyncio.wait({self._downlink_task}, timeout=DOWNLINK_JOIN_TIMEOUT)
                if not done:
                    logger.warning("downlink_join_timeout", session_id=str(session.id))
                    self._downlink_task.cancel()

            session.set_state(SessionState.CLOSED)
            logger.info(
                "session_closed",
                session_id=str(session.id),
                peer=session.peer,
                lines_up=session.lines_up,
                chars_down=session.chars_down,
            )
            emit(self.sink, "Session with node terminated.")
