"""
TLS shell client.

Sends one command per line and prints the streamed response until the
server's terminator line:

    EOF        normal end of this response; prompt for the next command
    TERMINATE  the server ended the session; exit with EXIT_TERMINATED
"""

import logging
import socket
import ssl
from enum import Enum
from typing import Optional, TextIO

from .config import ClientConfig
from .errors import ConnectionLostError, SetupError
from .protocol import EXIT_COMMAND, LineBuffer, Marker, decode_line, encode_line, parse_marker

logger = logging.getLogger(__name__)

PROMPT = "Enter command (or 'exit' to quit): "

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_TERMINATED = 9


class ResponseEnd(str, Enum):
    """How a response finished."""

    EOF = "eof"
    TERMINATE = "terminate"
    CLOSED = "closed"  # connection ended or failed mid-response


class Client:
    """One mutual-TLS connection to a shell server."""

    def __init__(self, config: ClientConfig, ssl_context: Optional[ssl.SSLContext]):
        self.config = config
        self.ssl_context = ssl_context
        self.connection: Optional[socket.socket] = None
        # Command output lines can be arbitrarily long
        self._buffer = LineBuffer(max_bytes=None)

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def connect(self):
        """Open the connection and complete the TLS handshake."""
        address = (self.config.host, self.config.port)
        try:
            sock = socket.create_connection(address, timeout=self.config.connect_timeout)
        except OSError as e:
            raise SetupError(f"Error establishing client-server connection: {e}") from e

        if self.ssl_context is not None:
            try:
                sock = self.ssl_context.wrap_socket(sock, server_hostname=self.config.host)
            except (ssl.SSLError, OSError) as e:
                sock.close()
                raise SetupError(f"TLS handshake with {address[0]}:{address[1]} failed: {e}") from e

        # Responses may take as long as the command runs
        sock.settimeout(None)
        self.connection = sock
        logger.debug(f"Connected to {address[0]}:{address[1]}")

    def send_command(self, command: str):
        """Send one command line.

        Raises:
            ConnectionLostError: the server closed or broke the connection.
        """
        if self.connection is None:
            raise ConnectionLostError("Not connected")
        try:
            self.connection.sendall(encode_line(command))
        except OSError as e:
            raise ConnectionLostError(f"Connection to server closed: {e}") from e

    def receive_response(self, out: TextIO) -> ResponseEnd:
        """Copy response lines to ``out`` until a terminator line."""
        if self.connection is None:
            return ResponseEnd.CLOSED

        while True:
            raw = self._buffer.pop_line()
            if raw is None:
                try:
                    data = self.connection.recv(4096)
                except OSError as e:
                    logger.error(f"Error while reading response: {e}")
                    return ResponseEnd.CLOSED
                if not data:
                    return ResponseEnd.CLOSED
                self._buffer.feed(data)
                continue

            line = decode_line(raw)
            marker = parse_marker(line)
            if marker == Marker.EOF:
                return ResponseEnd.EOF
            if marker == Marker.TERMINATE:
                return ResponseEnd.TERMINATE
            out.write(line + "\n")
            out.flush()

    def close(self):
        if self.connection is not None:
            try:
                self.connection.close()
            except OSError as e:
                logger.debug(f"Error closing connection: {e}")
            self.connection = None


def run_interactive(client: Client, stdin: TextIO, stdout: TextIO) -> int:
    """Prompt for commands until exit; return the process exit code."""
    while True:
        stdout.write(PROMPT)
        stdout.flush()

        line = stdin.readline()
        # End of input behaves like typing exit
        command = decode_line(line.encode("utf-8")) if line else EXIT_COMMAND

        try:
            client.send_command(command)
        except ConnectionLostError as e:
            logger.error(str(e))
            return EXIT_ERROR

        if command == EXIT_COMMAND:
            stdout.write("Exiting...\n")
            stdout.flush()
            return EXIT_OK

        end = client.receive_response(stdout)
        if end == ResponseEnd.TERMINATE:
            return EXIT_TERMINATED
        if end == ResponseEnd.CLOSED:
            logger.error("Connection to server closed")
            return EXIT_ERROR
