"""
Per-connection session handling.

A SessionHandler owns one client connection from TLS handshake to close:

    READING  -- line --------> EXECUTING -- response written --> READING
    READING  -- "exit" ------> CLOSING
    READING  -- deadline ----> CLOSING  (notice + TERMINATE written first)
    READING  -- shutdown ----> CLOSING  (nothing written)
    READING  -- EOF / error -> CLOSING

The session deadline is fixed at creation and never extended. It is only
checked while READING; a command that is already running is allowed to
finish and is bounded by its CPU quota instead.
"""

import logging
import socket
import ssl
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Tuple

from .config import ServerConfig
from .executor import CommandExecutor
from .protocol import (
    EXIT_COMMAND,
    TIMEOUT_NOTICE,
    LineBuffer,
    LineTooLongError,
    Marker,
    decode_line,
    encode_error,
    encode_line,
    encode_marker,
)
from .tls import peer_name

logger = logging.getLogger(__name__)

RECV_SIZE = 4096


class SessionState(str, Enum):
    READING = "reading"
    EXECUTING = "executing"
    CLOSING = "closing"


class _Event(str, Enum):
    LINE = "line"
    TIMEOUT = "timeout"
    SHUTDOWN = "shutdown"
    CLOSED = "closed"


@dataclass
class Session:
    """One client connection and its lifetime."""

    conn: socket.socket
    peer: str
    lifetime: float
    created_at: float = field(default_factory=time.monotonic)
    alive: bool = True

    @property
    def deadline(self) -> float:
        return self.created_at + self.lifetime

    def remaining(self) -> float:
        return self.deadline - time.monotonic()

    def expired(self) -> bool:
        return self.remaining() <= 0


class ConnectionSink:
    """Sink that writes command output straight to the connection."""

    def __init__(self, conn: socket.socket, write_timeout: float):
        self.conn = conn
        self.write_timeout = write_timeout

    def write(self, data: bytes) -> None:
        self.conn.settimeout(self.write_timeout)
        self.conn.sendall(data)


class SessionHandler:
    """Serves one client connection until it closes, expires or shuts down."""

    def __init__(
        self,
        conn: socket.socket,
        executor: CommandExecutor,
        shutdown: threading.Event,
        config: Optional[ServerConfig] = None,
        ssl_context: Optional[ssl.SSLContext] = None,
        on_close: Optional[Callable[["SessionHandler"], None]] = None,
        accepted_at: Optional[float] = None,
    ):
        """
        Args:
            conn: Accepted connection. A raw TCP socket when ssl_context is
                given (the handshake happens in run()), otherwise a socket
                that is already usable.
            executor: Runs each command line.
            shutdown: Service-wide shutdown broadcast.
            config: Timeouts and limits; defaults to ServerConfig().
            ssl_context: Server TLS context used to wrap ``conn``.
            on_close: Called once after the connection is closed.
            accepted_at: time.monotonic() when the connection was accepted;
                the session lifetime counts from here. Defaults to now.
        """
        self.config = config or ServerConfig()
        self.executor = executor
        self.shutdown = shutdown
        self.ssl_context = ssl_context
        self.on_close = on_close

        try:
            address = conn.getpeername()
            peer = f"{address[0]}:{address[1]}"
        except (OSError, IndexError, TypeError):
            peer = "unknown"
        self.session = Session(conn=conn, peer=peer, lifetime=self.config.session_lifetime)
        if accepted_at is not None:
            self.session.created_at = accepted_at

        self.state = SessionState.READING
        self.close_reason: Optional[str] = None
        self.commands_run = 0
        self._buffer = LineBuffer(self.config.max_line_bytes)
        self._closed = False

    @property
    def conn(self) -> socket.socket:
        return self.session.conn

    def run(self):
        """Handle the connection; always closes it before returning."""
        try:
            if self.ssl_context is not None and not self._handshake():
                return
            self._serve()
        except Exception as e:
            logger.error(f"Unexpected error in session {self.session.peer}: {e}", exc_info=True)
            self.close_reason = self.close_reason or "error"
        finally:
            self.close()

    def close(self):
        """Close the connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.state = SessionState.CLOSING
        self.session.alive = False
        try:
            self.conn.close()
        except OSError as e:
            logger.debug(f"Error closing connection {self.session.peer}: {e}")
        logger.info(f"Connection from {self.session.peer} closed ({self.close_reason or 'closed'})")
        if self.on_close:
            self.on_close(self)

    def _handshake(self) -> bool:
        raw = self.conn
        raw.settimeout(self.config.handshake_timeout)
        try:
            self.session.conn = self.ssl_context.wrap_socket(raw, server_side=True)
        except (ssl.SSLError, OSError) as e:
            logger.warning(f"TLS handshake with {self.session.peer} failed: {e}")
            self.close_reason = "handshake failed"
            return False
        logger.info(f"Client {peer_name(self.conn)} authenticated from {self.session.peer}")
        return True

    def _serve(self):
        sink = ConnectionSink(self.conn, self.config.write_timeout)

        while self.state != SessionState.CLOSING:
            try:
                event, line = self._next_line()
            except LineTooLongError as e:
                logger.warning(f"Closing {self.session.peer}: {e}")
                self._finish("line too long")
                return
            except OSError as e:
                logger.warning(f"Error while reading incoming message from {self.session.peer}: {e}")
                self._finish("read error")
                return

            if event == _Event.SHUTDOWN:
                self._finish("shutdown")
            elif event == _Event.TIMEOUT:
                self._handle_timeout()
            elif event == _Event.CLOSED:
                self._finish("client disconnected")
            elif line == EXIT_COMMAND:
                self._finish("exit")
            else:
                self._execute(sink, line)

    def _finish(self, reason: str):
        self.close_reason = reason
        self.state = SessionState.CLOSING

    def _next_line(self) -> Tuple[_Event, Optional[str]]:
        """Wait for the next complete line, the deadline, or shutdown."""
        while True:
            if self.shutdown.is_set():
                return _Event.SHUTDOWN, None
            if self.session.expired():
                return _Event.TIMEOUT, None

            raw = self._buffer.pop_line()
            if raw is not None:
                return _Event.LINE, decode_line(raw)

            wait = min(self.config.poll_interval, self.session.remaining())
            self.conn.settimeout(max(wait, 0.01))
            try:
                data = self.conn.recv(RECV_SIZE)
            except socket.timeout:
                continue

            if not data:
                if self._buffer.pending:
                    logger.debug(f"Discarding unterminated input from {self.session.peer}")
                return _Event.CLOSED, None
            self._buffer.feed(data)

    def _execute(self, sink: ConnectionSink, command: str):
        self.state = SessionState.EXECUTING
        self.commands_run += 1
        outcome = self.executor.execute(sink, command)

        if outcome.sink_failed:
            self._finish("write error")
            return

        if not outcome.ok:
            logger.info(f"Error executing command from {self.session.peer}: {outcome.detail}")
            report = encode_error(outcome.detail) + encode_marker(Marker.EOF)
            if outcome.needs_newline:
                # The error line must not be glued onto unterminated output
                report = b"\n" + report
            try:
                sink.write(report)
            except OSError as e:
                logger.warning(f"Error writing to {self.session.peer}: {e}")
                self._finish("write error")
                return

        self.state = SessionState.READING

    def _handle_timeout(self):
        logger.info(f"Client ({self.session.peer}) session duration exceeded")
        try:
            self.conn.settimeout(self.config.write_timeout)
            self.conn.sendall(encode_line(TIMEOUT_NOTICE) + encode_marker(Marker.TERMINATE))
        except OSError as e:
            logger.debug(f"Could not send termination notice to {self.session.peer}: {e}")
        self._finish("timeout")
