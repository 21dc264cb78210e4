"""
Wire Protocol Definitions

This module defines the line protocol spoken over the TLS connection between
a client and the shell server.

Protocol Flow:
1. Client connects over TCP and completes a mutual-TLS handshake
2. Client sends one command per line (newline-delimited, UTF-8)
3. Server streams the command's stdout back, then a terminator line
4. Steps 2-3 repeat until the client sends "exit" or the session expires

Response Framing:
- Success: raw stdout bytes followed by an "EOF" line
- Failure: a single "Error executing command:<detail>" line, then "EOF"
- Session expired: a notice line followed by "TERMINATE" instead of "EOF"
"""

from enum import Enum
from typing import Optional


class Marker(str, Enum):
    """Sentinel lines sent from server to client."""

    EOF = "EOF"  # Normal end of a response
    TERMINATE = "TERMINATE"  # Server is ending the session


# Constants
EXIT_COMMAND = "exit"
ERROR_PREFIX = "Error executing command:"
TIMEOUT_NOTICE = "Client session duration exceeded. Disconnecting..."
CHUNK_SIZE = 64 * 1024
MAX_LINE_BYTES = 64 * 1024


def encode_line(text: str) -> bytes:
    """Encode a single protocol line for transmission."""
    return text.encode("utf-8") + b"\n"


def encode_marker(marker: Marker) -> bytes:
    return encode_line(marker.value)


def encode_error(detail: str) -> bytes:
    """Encode the inline error line reported for a failed command."""
    # A multi-line detail would be mistaken for command output
    detail = " ".join(detail.splitlines())
    return encode_line(f"{ERROR_PREFIX}{detail}")


def decode_line(data: bytes) -> str:
    """Decode a received line, dropping the terminator (LF or CRLF)."""
    text = data.decode("utf-8", errors="replace")
    if text.endswith("\n"):
        text = text[:-1]
    if text.endswith("\r"):
        text = text[:-1]
    return text


def parse_marker(line: str) -> Optional[Marker]:
    """Return the marker a received line carries, or None for output."""
    for marker in Marker:
        if line == marker.value:
            return marker
    return None


class LineTooLongError(ValueError):
    """A peer sent more than the allowed bytes without a newline."""


class LineBuffer:
    """Accumulates received bytes and splits them into complete lines.

    Bytes after the last newline are held until more data arrives. A line
    longer than ``max_bytes`` raises LineTooLongError so a peer cannot make
    the buffer grow without bound.
    """

    def __init__(self, max_bytes: Optional[int] = MAX_LINE_BYTES):
        self.max_bytes = max_bytes
        self._buffer = b""

    def feed(self, data: bytes):
        self._buffer += data
        if self.max_bytes is None:
            return
        if b"\n" not in self._buffer and len(self._buffer) > self.max_bytes:
            raise LineTooLongError(
                f"Line exceeds {self.max_bytes} bytes without a newline"
            )

    def pop_line(self) -> Optional[bytes]:
        """Return the next complete line including its newline, if any."""
        if b"\n" not in self._buffer:
            return None
        line, self._buffer = self._buffer.split(b"\n", 1)
        if self.max_bytes is not None and len(line) > self.max_bytes:
            raise LineTooLongError(f"Line exceeds {self.max_bytes} bytes")
        return line + b"\n"

    @property
    def pending(self) -> bytes:
        """Bytes received after the last complete line."""
        return self._buffer
