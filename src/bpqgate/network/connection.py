"""Stream wrappers for the local node link and the remote BBS link."""

import asyncio
import re
from datetime import UTC, datetime

import structlog

from bpqgate.errors import RemoteConnectError

logger = structlog.get_logger(__name__)

# Close errors that only mean the peer is already gone
CLOSE_ERRORS = (OSError, RuntimeError)

# Node lines end in CR, LF or CRLF
LINE_END_PATTERN = re.compile(rb"\r\n?|\n")

# Longest line accepted from a node before the read fails
MAX_LINE_LENGTH = 64 * 1024

READ_SIZE = 4096


def format_peer(writer: asyncio.StreamWriter) -> str:
    """Return ``host:port`` for the far end of a stream, or ``unknown``."""
    peername = writer.get_extra_info("peername")
    if not peername:
        return "unknown"
    return f"{peername[0]}:{peername[1]}"


async def _close_writer(writer: asyncio.StreamWriter, link: str, peer: str) -> None:
    try:
        writer.close()
        await writer.wait_closed()
    except CLOSE_ERRORS as e:
        logger.warning("connection_close_error", link=link, peer=peer, error=str(e))


class LocalConnection:
    """
    Line-mode link to the packet-radio node controller.

    Lines arrive terminated by CR, LF or CRLF in the local charset; gateway
    status lines go back with the configured newline.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        encoding: str = "utf-8",
        newline: str = "\r\n",
        max_line_length: int = MAX_LINE_LENGTH,
    ) -> None:
        """
        Initialize the local connection.

        Args:
            reader: Stream reader of the accepted socket
            writer: Stream writer of the accepted socket
            encoding: Charset of the local link
            newline: Terminator for lines sent by the gateway
            max_line_length: Longest line accepted before the read fails
        """
        self.reader = reader
        self.writer = writer
        self.encoding = encoding
        self.newline = newline
        self.max_line_length = max_line_length
        self.peer = format_peer(writer)
        self.connected_at = datetime.now(UTC)
        self._closed = False
        self._rx_buf = bytearray()
        # Last line ended in CR at a read boundary; drop a leading LF
        self._skip_lf = False

    async def readline(self) -> str | None:
        """
        Read one line from the node.

        Returns:
            The decoded line without its terminator, or None at end of stream

        Raises:
            OSError: If the socket fails
            ValueError: If a line exceeds ``max_line_length``
        """
        if self._closed:
            return None

        while True:
            if self._skip_lf and self._rx_buf:
                if self._rx_buf[:1] == b"\n":
                    del self._rx_buf[:1]
                self._skip_lf = False

            match = LINE_END_PATTERN.search(self._rx_buf)
            if match is not None:
                line = bytes(self._rx_buf[: match.start()])
                self._skip_lf = match.group() == b"\r" and match.end() == len(self._rx_buf)
                del self._rx_buf[: match.end()]
                return self._decode(line)

            if len(self._rx_buf) > self.max_line_length:
                raise ValueError(f"Line exceeds {self.max_line_length} bytes")

            chunk = await self.reader.read(READ_SIZE)
            if not chunk:
                if not self._rx_buf:
                    return None
                # Unterminated last line
                line = bytes(self._rx_buf)
                self._rx_buf.clear()
                return self._decode(line)
            self._rx_buf += chunk

    def _decode(self, data: bytes) -> str:
        return data.decode(self.encoding, errors="replace")

    async def send(self, text: str) -> None:
        """
        Write text to the node as-is.

        Raises:
            OSError: If the socket fails
        """
        if self._closed or not text:
            return
        self.writer.write(text.encode(self.encoding, errors="replace"))
        await self.writer.drain()

    async def send_line(self, text: str) -> None:
        """Write a status line followed by the local newline."""
        await self.send(f"{text}{self.newline}")

    async def notify(self, text: str) -> None:
        """Best-effort status line; a dead socket is logged, not raised."""
        try:
            await self.send_line(text)
        except OSError as e:
            logger.info("local_notify_failed", peer=self.peer, error=str(e))

    async def close(self) -> None:
        """Close the link. Closing twice is a no-op."""
        if self._closed:
            return
        self._closed = True
        logger.debug("local_connection_closing", peer=self.peer)
        await _close_writer(self.writer, "local", self.peer)

    @property
    def is_closed(self) -> bool:
        """Check if the link has been closed by the gateway or the node."""
        return self._closed or self.writer.is_closing()

    def __repr__(self) -> str:
        return f"LocalConnection(peer={self.peer}, closed={self._closed})"


class RemoteConnection:
    """
    Raw byte link to the upstream Telnet BBS.

    Writes are serialized with a lock; reads are left raw so the downlink can
    decode and scrub them.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        encoding: str = "cp437",
    ) -> None:
        self.reader = reader
        self.writer = writer
        self.encoding = encoding
        self.peer = format_peer(writer)
        self._write_lock = asyncio.Lock()
        self._closed = False

    @classmethod
    async def open(
        cls,
        host: str,
        port: int,
        encoding: str = "cp437",
        timeout: float | None = None,
    ) -> "RemoteConnection":
        """
        Connect to the BBS.

        Args:
            host: BBS hostname
            port: BBS port
            encoding: Charset of the remote link
            timeout: Seconds to wait for the TCP handshake, None to wait forever

        Returns:
            The established connection

        Raises:
            RemoteConnectError: If the connection fails or times out
        """
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=timeout
            )
        except TimeoutError:
            raise RemoteConnectError(host, port, "timed out") from None
        except OSError as e:
            raise RemoteConnectError(host, port, str(e)) from e

        logger.info("remote_connected", host=host, port=port)
        return cls(reader, writer, encoding)

    async def read(self, size: int = 4096) -> bytes:
        """Read up to ``size`` raw bytes; ``b""`` means end of stream."""
        if self._closed:
            return b""
        return await self.reader.read(size)

    async def send_line(self, text: str) -> None:
        """
        Write one line to the BBS terminated by LF.

        Raises:
            OSError: If the connection is closed or the socket fails
        """
        if self.is_closed:
            raise ConnectionResetError("Remote connection is closed")

        async with self._write_lock:
            self.writer.write(f"{text}\n".encode(self.encoding, errors="replace"))
            await self.writer.drain()

    async def close(self) -> None:
        """Close the link. Closing twice is a no-op."""
        if self._closed:
            return
        self._closed = True
        logger.debug("remote_connection_closing", peer=self.peer)
        await _close_writer(self.writer, "remote", self.peer)

    @property
    def is_closed(self) -> bool:
        """Check if the link has been closed."""
        return self._closed or self.writer.is_closing()

    def __repr__(self) -> str:
        return f"RemoteConnection(peer={self.peer}, closed={self._closed})"
