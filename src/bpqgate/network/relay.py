"""Relays moving data between the node link and the BBS link."""

import asyncio
from typing import TYPE_CHECKING

import structlog

from bpqgate.logging.sink import LogSink, emit
from bpqgate.network.protocol import TelnetTextDecoder, sanitize, split_incomplete

if TYPE_CHECKING:
    from bpqgate.network.session import Session

logger = structlog.get_logger(__name__)

DISCONNECT_NOTICE = "Disconnecting from BBS..."
REMOTE_WRITE_ERROR_NOTICE = "Error: problem communicating with the BBS."

READ_SIZE = 4096


def is_exit_command(line: str, exit_command: str) -> bool:
    """Check whether a node line is the exit command (trimmed, any case)."""
    return line.strip().casefold() == exit_command.strip().casefold()


class UplinkRelay:
    """
    Node to BBS relay.

    Reads whole lines from the node and forwards each one to the BBS with a
    newline, until the node goes away or types the exit command.
    """

    def __init__(
        self,
        session: "Session",
        exit_command: str = "exit",
        sink: LogSink | None = None,
    ) -> None:
        """
        Initialize the uplink.

        Args:
            session: Session whose links are relayed
            exit_command: Line that ends the session
            sink: Receiver of relayed lines and errors
        """
        if session.remote is None:
            raise ValueError("Session has no remote connection")
        self.session = session
        self.local = session.local
        self.remote = session.remote
        self.exit_command = exit_command
        self.sink = sink

    async def run(self) -> bool:
        """
        Relay lines until end of input.

        A failed write to the BBS is reported and the loop keeps reading; a
        dead BBS link is noticed by the downlink, which closes the node link.

        Returns:
            True if the node typed the exit command
        """
        session_id = str(self.session.id)

        while True:
            try:
                line = await self.local.readline()
            except (OSError, ValueError) as e:
                logger.info("local_read_failed", session_id=session_id, error=str(e))
                emit(self.sink, f"Error communicating with node: {e}")
                return False

            if line is None:
                logger.info("local_eof", session_id=session_id)
                return False

            self.session.update_activity()
            emit(self.sink, f"Received from node: {line}")

            if is_exit_command(line, self.exit_command):
                logger.info("exit_command_received", session_id=session_id)
                await self.local.notify(DISCONNECT_NOTICE)
                return True

            try:
                await self.remote.send_line(line)
            except OSError as e:
                logger.warning("remote_write_failed", session_id=session_id, error=str(e))
                emit(self.sink, f"Error sending to Telnet: {e}")
                await self.local.notify(REMOTE_WRITE_ERROR_NOTICE)
                continue

            self.session.lines_up += 1


class DownlinkRelay:
    """
    BBS to node relay.

    Output is forwarded as soon as the BBS pauses, not at line ends, so
    prompts without a trailing newline still show up. Text accumulates while
    reads keep returning data and is scrubbed and written out when a read
    waits longer than ``poll_interval`` or the buffer reaches
    ``flush_threshold`` characters. An escape or Telnet sequence cut off at
    the end of the buffer is carried over to the next flush.
    """

    def __init__(
        self,
        session: "Session",
        poll_interval: float = 0.05,
        flush_threshold: int = 4096,
        sink: LogSink | None = None,
    ) -> None:
        if session.remote is None:
            raise ValueError("Session has no remote connection")
        self.session = session
        self.local = session.local
        self.remote = session.remote
        self.poll_interval = poll_interval
        self.flush_threshold = flush_threshold
        self.sink = sink
        self._decoder = TelnetTextDecoder(self.remote.encoding)
        self._buffer: list[str] = []
        self._buffered = 0

    @property
    def pending(self) -> str:
        """Text received but not yet flushed."""
        return "".join(self._buffer)

    def feed(self, data: bytes) -> None:
        """Decode raw BBS bytes into the buffer."""
        text = self._decoder.decode(data)
        if text:
            self._buffer.append(text)
            self._buffered += len(text)

    def take(self, final: bool = False) -> str:
        """
        Empty the buffer and return its scrubbed contents.

        Args:
            final: Release everything, including unfinished sequences
        """
        if final:
            tail = self._decoder.flush()
            if tail:
                self._buffer.append(tail)

        raw = "".join(self._buffer)
        self._buffer.clear()
        self._buffered = 0

        if not final and len(raw) < self.flush_threshold:
            raw, held = split_incomplete(raw)
            if held:
                self._buffer.append(held)
                self._buffered = len(held)

        return sanitize(raw)

    async def flush(self, final: bool = False) -> None:
        """
        Write buffered output to the node.

        Raises:
            OSError: If the node link fails
        """
        text = self.take(final)
        if not text:
            return
        emit(self.sink, f"Received from BBS (clean): {text}")
        self.session.chars_down += len(text)
        await self.local.send(text)

    async def run(self) -> None:
        """Relay BBS output until the BBS or the node goes away, then close both."""
        session_id = str(self.session.id)

        try:
            while not self.local.is_closed:
                try:
                    data = await asyncio.wait_for(
                        self.remote.read(READ_SIZE), timeout=self.poll_interval
                    )
                except TimeoutError:
                    await self._flush_to_local()
                    continue

                if not data:
                    if self.session.is_closing:
                        # Gateway closed the BBS link; node already told why
                        logger.debug("remote_closed_by_gateway", session_id=session_id)
                        break
                    logger.info("remote_eof", session_id=session_id)
                    emit(self.sink, "BBS connection lost. Closing node connection.")
                    await self._flush_to_local(final=True)
                    break

                self.session.update_activity()
                self.feed(data)
                if self._buffered >= self.flush_threshold:
                    await self._flush_to_local()
        except OSError as e:
            logger.info("remote_read_failed", session_id=session_id, error=str(e))
            if not self.session.is_closing:
                emit(self.sink, f"Error reading from Telnet connection: {e}")
        finally:
            # Node goes back to its own prompt, same as typing the exit command
            await self.local.close()
            await self.remote.close()

    async def _flush_to_local(self, final: bool = False) -> None:
        try:
            await self.flush(final)
        except OSError as e:
            logger.info("local_write_failed", session_id=str(self.session.id), error=str(e))
            await self.local.close()
