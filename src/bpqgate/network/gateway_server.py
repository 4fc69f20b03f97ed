"""Async TCP server accepting node connections for the BPQ gateway."""

import asyncio
from typing import Any
from uuid import UUID

import structlog

from bpqgate.config import Settings, get_settings
from bpqgate.logging.sink import LogSink, StructlogSink, emit
from bpqgate.network.connection import MAX_LINE_LENGTH, LocalConnection
from bpqgate.network.session import Session, SessionManager

logger = structlog.get_logger(__name__)

SHUTDOWN_NOTICE = "Gateway shutting down..."


class GatewayServer:
    """
    Listens for node connections and bridges each one to the BBS.

    Every accepted connection gets its own SessionManager running in the
    connection's handler task, so a slow session never holds up accept.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        sink: LogSink | None = None,
    ) -> None:
        """
        Initialize the gateway server.

        Args:
            settings: Gateway settings (cached settings if None)
            sink: Receiver of status lines shared by all sessions
        """
        self._settings = settings or get_settings()
        self._sink = sink if sink is not None else StructlogSink()
        self._server: asyncio.Server | None = None
        self._sessions: dict[UUID, SessionManager] = {}
        self._running = False

        logger.info("gateway_server_initialized")

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        local = LocalConnection(
            reader,
            writer,
            encoding=self._settings.local_encoding,
            newline=self._settings.local_newline,
        )
        manager = SessionManager(local, self._settings, self._sink)
        session_id = manager.session.id
        self._sessions[session_id] = manager

        logger.info(
            "client_connected",
            session_id=str(session_id),
            peer=local.peer,
            total_sessions=len(self._sessions),
        )
        emit(self._sink, f"Node connection accepted from: {local.peer}")

        try:
            await manager.run()
        except asyncio.CancelledError:
            logger.info("client_handler_cancelled", session_id=str(session_id))
            await manager.teardown()
        finally:
            self._sessions.pop(session_id, None)
            logger.info(
                "client_disconnected",
                session_id=str(session_id),
                peer=local.peer,
                total_sessions=len(self._sessions),
            )

    async def start(self, host: str | None = None, port: int | None = None) -> None:
        """
        Start listening.

        Args:
            host: Address to bind to (defaults to settings)
            port: Port to listen on (defaults to settings, 0 picks a free port)

        Raises:
            OSError: If the port cannot be bound
        """
        if self._running:
            logger.warning("gateway_server_already_running")
            return

        host = host if host is not None else self._settings.listen_host
        port = port if port is not None else self._settings.listen_port

        logger.info("gateway_server_starting", host=host, port=port)

        try:
            self._server = await asyncio.start_server(
                self._handle_client, host=host, port=port, limit=MAX_LINE_LENGTH
            )
        except OSError as e:
            logger.error("gateway_server_start_failed", host=host, port=port, error=str(e))
            emit(self._sink, f"Server error: {e}")
            raise

        self._running = True
        logger.info("gateway_server_started", host=host, port=self.port)
        emit(self._sink, f"Server listening on port {self.port}")

    async def serve_forever(self) -> None:
        """
        Start if needed and accept connections until stopped.

        Returns once :meth:`stop` closes the listener.
        """
        if not self._running:
            await self.start()
        server = self._server
        if server is None:
            raise RuntimeError("Gateway server is not listening")

        try:
            await server.serve_forever()
        except asyncio.CancelledError:
            # Closing the listener cancels serve_forever; a cancelled caller still propagates
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            logger.info("gateway_server_serve_ended")

    async def stop(self) -> None:
        """Stop accepting and tear down every active session."""
        if not self._running:
            logger.warning("gateway_server_not_running")
            return

        logger.info("gateway_server_stopping", active_sessions=len(self._sessions))

        if self._server:
            self._server.close()

        for manager in list(self._sessions.values()):
            try:
                await manager.shutdown(SHUTDOWN_NOTICE)
            except Exception as e:
                logger.error(
                    "session_shutdown_error",
                    session_id=str(manager.session.id),
                    error=str(e),
                )

        if self._server:
            await self._server.wait_closed()
            self._server = None

        self._running = False
        self._sessions.clear()

        logger.info("gateway_server_stopped")

    @property
    def port(self) -> int | None:
        """Port actually bound, or None when not listening."""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    def get_sessions(self) -> list[Session]:
        """
        Get all active sessions.

        Returns:
            List of active Session objects
        """
        return [manager.session for manager in self._sessions.values()]

    def get_session_count(self) -> int:
        """Get the number of active sessions."""
        return len(self._sessions)

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._running

    async def __aenter__(self) -> "GatewayServer":
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
