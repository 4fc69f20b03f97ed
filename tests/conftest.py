"""Shared fixtures for all tests."""

import asyncio
import socket
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest

from bpqgate.config import Settings, get_settings
from bpqgate.logging import MemorySink
from bpqgate.network import GatewayServer

IO_TIMEOUT = 3.0


class FakeBBSClient:
    """One gateway connection as seen by the fake BBS."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.closed = asyncio.Event()

    async def readline(self, timeout: float = IO_TIMEOUT) -> bytes:
        return await asyncio.wait_for(self.reader.readline(), timeout=timeout)

    async def read_all(self, timeout: float = IO_TIMEOUT) -> bytes:
        """Read until the gateway closes its side."""
        return await asyncio.wait_for(self.reader.read(), timeout=timeout)

    async def send(self, data: bytes) -> None:
        self.writer.write(data)
        await self.writer.drain()

    async def close(self) -> None:
        if self.closed.is_set():
            return
        self.closed.set()
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionResetError, BrokenPipeError):
            pass


class FakeBBS:
    """Minimal upstream Telnet host bound to an ephemeral port."""

    def __init__(self) -> None:
        self.port = 0
        self.clients: list[FakeBBSClient] = []
        self._pending: asyncio.Queue[FakeBBSClient] = asyncio.Queue()
        self._server: asyncio.Server | None = None

    async def _on_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        client = FakeBBSClient(reader, writer)
        self.clients.append(client)
        await self._pending.put(client)
        await client.closed.wait()

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._on_client, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def accept(self, timeout: float = IO_TIMEOUT) -> FakeBBSClient:
        """Wait for the gateway to open its next connection."""
        return await asyncio.wait_for(self._pending.get(), timeout=timeout)

    async def stop(self) -> None:
        for client in self.clients:
            await client.close()
        if self._server:
            self._server.close()
            await self._server.wait_closed()


class Node:
    """Test stand-in for the packet-radio node controller."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.received = b""

    async def send_line(self, line: str) -> None:
        self.writer.write(f"{line}\r\n".encode())
        await self.writer.drain()

    async def read_until(self, expected: bytes, timeout: float = IO_TIMEOUT) -> bytes:
        """Accumulate output until ``expected`` shows up; returns everything so far."""

        async def _read() -> bytes:
            while expected not in self.received:
                chunk = await self.reader.read(1024)
                if not chunk:
                    raise ConnectionError(f"EOF before {expected!r}, got {self.received!r}")
                self.received += chunk
            return self.received

        return await asyncio.wait_for(_read(), timeout=timeout)

    async def read_to_eof(self, timeout: float = IO_TIMEOUT) -> bytes:
        """Read until the gateway closes the connection."""

        async def _read() -> bytes:
            while chunk := await self.reader.read(1024):
                self.received += chunk
            return self.received

        return await asyncio.wait_for(_read(), timeout=timeout)

    async def close(self) -> None:
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionResetError, BrokenPipeError):
            pass


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Keep cached settings from leaking between tests."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def unused_port() -> int:
    """A local port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
async def fake_bbs() -> AsyncGenerator[FakeBBS, None]:
    """A running fake BBS."""
    bbs = FakeBBS()
    await bbs.start()
    yield bbs
    await bbs.stop()


@pytest.fixture
def make_settings(fake_bbs: FakeBBS) -> Callable[..., Settings]:
    """Build settings pointing at the fake BBS with a fast poll interval."""

    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "listen_host": "127.0.0.1",
            "listen_port": 0,
            "remote_host": "127.0.0.1",
            "remote_port": fake_bbs.port,
            "connect_timeout": 2.0,
            "poll_interval": 0.01,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def sink() -> MemorySink:
    return MemorySink()


@pytest.fixture
async def gateway(
    make_settings: Callable[..., Settings], sink: MemorySink
) -> AsyncGenerator[GatewayServer, None]:
    """A started gateway bridged to the fake BBS."""
    server = GatewayServer(make_settings(), sink=sink)
    await server.start()
    yield server
    if server.is_running:
        await server.stop()


@pytest.fixture
async def connect_node():
    """Factory opening node connections to a gateway port."""
    nodes: list[Node] = []

    async def _connect(port: int) -> Node:
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        node = Node(reader, writer)
        nodes.append(node)
        return node

    yield _connect

    for node in nodes:
        await node.close()
