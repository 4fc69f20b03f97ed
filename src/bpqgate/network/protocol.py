"""Telnet/ANSI scrubbing and remote text decoding for the BPQ gateway."""

import codecs
import re
from typing import Final

from telnetlib3.telopt import DO, DONT, IAC, SB, SE, WILL, WONT

# Telnet command bytes as they appear in decoded text (byte value == code point)
IAC_CHAR: Final[str] = IAC.decode("latin-1")
SB_CHAR: Final[str] = SB.decode("latin-1")
SE_CHAR: Final[str] = SE.decode("latin-1")
NEGOTIATION_CHARS: Final[str] = b"".join((WILL, WONT, DO, DONT)).decode("latin-1")

# Glyph some BBSes emit as a page-break marker; never forwarded
DISALLOWED_GLYPH: Final[str] = "♀"

ALLOWED_CONTROLS: Final[frozenset[str]] = frozenset("\n\r\t")

# ESC [ params intermediates final
ANSI_CSI_PATTERN: Final[re.Pattern[str]] = re.compile(r"\x1b\[[;0-9]*[ -/]*[@-~]")

TELNET_SUBNEGOTIATION_PATTERN: Final[re.Pattern[str]] = re.compile(
    f"{IAC_CHAR}{SB_CHAR}.*?{IAC_CHAR}{SE_CHAR}", re.DOTALL
)

TELNET_NEGOTIATION_PATTERN: Final[re.Pattern[str]] = re.compile(
    f"{IAC_CHAR}[{NEGOTIATION_CHARS}].", re.DOTALL
)

TELNET_COMMAND_PATTERN: Final[re.Pattern[str]] = re.compile(f"{IAC_CHAR}.", re.DOTALL)

# Sequence prefixes that may be completed by the next read
INCOMPLETE_TAIL_PATTERN: Final[re.Pattern[str]] = re.compile(
    f"(?:\\x1b(?:\\[[;0-9]*[ -/]*)?"
    f"|{IAC_CHAR}{SB_CHAR}(?:(?!{IAC_CHAR}{SE_CHAR}).)*"
    f"|{IAC_CHAR}[{NEGOTIATION_CHARS}])\\Z",
    re.DOTALL,
)


def strip_ansi(text: str) -> str:
    """
    Remove ANSI CSI escape sequences from text.

    Args:
        text: Text containing ANSI codes

    Returns:
        Text with all CSI sequences removed
    """
    return ANSI_CSI_PATTERN.sub("", text)


def _is_allowed(char: str) -> bool:
    if char == DISALLOWED_GLYPH or char == "\x7f":
        return False
    return ord(char) >= 32 or char in ALLOWED_CONTROLS


def sanitize(text: str) -> str:
    """
    Scrub terminal and Telnet noise from a chunk of BBS output.

    Structural sequences are removed first (ANSI CSI, Telnet subnegotiation,
    WILL/WONT/DO/DONT triplets, then any leftover IAC pair) so that the
    character filter never sees half of a multi-byte sequence. The filter
    then drops U+2640, DEL and control characters other than newline,
    carriage return and tab.

    Args:
        text: Decoded text as received from the remote host

    Returns:
        Text safe to forward to a line-mode terminal
    """
    if not text:
        return ""

    cleaned = strip_ansi(text)
    cleaned = TELNET_SUBNEGOTIATION_PATTERN.sub("", cleaned)
    cleaned = TELNET_NEGOTIATION_PATTERN.sub("", cleaned)
    cleaned = TELNET_COMMAND_PATTERN.sub("", cleaned)

    return "".join(char for char in cleaned if _is_allowed(char))


def split_incomplete(text: str) -> tuple[str, str]:
    """
    Split off an unfinished escape or Telnet sequence at the end of text.

    Returns:
        ``(ready, pending)`` where ``pending`` is the unfinished tail
    """
    match = INCOMPLETE_TAIL_PATTERN.search(text)
    if match is None:
        return text, ""
    return text[: match.start()], text[match.start() :]


class TelnetTextDecoder:
    """
    Incremental decoder for a remote Telnet byte stream.

    Data bytes are decoded with the remote charset. The IAC byte and the
    command byte that follows it are decoded as Latin-1 so they surface as
    U+00FF and friends, which is what :func:`sanitize` looks for. A legacy
    code page such as cp437 would otherwise turn them into ordinary glyphs.
    """

    def __init__(self, encoding: str) -> None:
        """
        Initialize the decoder.

        Args:
            encoding: Codec name of the remote link (e.g. ``cp437``)
        """
        self.encoding = encoding
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending_iac = False

    def decode(self, data: bytes) -> str:
        """
        Decode a chunk of raw bytes.

        An IAC that ends the chunk is held back until the next call so a
        command is never split between two flushes.
        """
        parts: list[str] = []
        start = 0
        index = 0

        if self._pending_iac and data:
            parts.append(IAC_CHAR + data[:1].decode("latin-1"))
            self._pending_iac = False
            start = index = 1

        while True:
            index = data.find(IAC, index)
            if index < 0:
                break
            if index > start:
                parts.append(self._decoder.decode(data[start:index]))
            if index + 1 >= len(data):
                self._pending_iac = True
                start = len(data)
                break
            parts.append(data[index : index + 2].decode("latin-1"))
            start = index = index + 2

        if start < len(data):
            parts.append(self._decoder.decode(data[start:]))

        return "".join(parts)

    def flush(self) -> str:
        """Return any text still held by the decoder at end of stream."""
        tail = self._decoder.decode(b"", final=True)
        if self._pending_iac:
            self._pending_iac = False
            tail += IAC_CHAR
        return tail

    def reset(self) -> None:
        """Discard decoder state."""
        self._decoder.reset()
        self._pending_iac = False
