"""
Shell Server

Accepts TCP connections and serves each one in its own SessionHandler
thread. Two long-lived loops do the multiplexing:

- the accept loop takes connections off the listener and pushes them onto
  a bounded handoff queue;
- the dispatch loop pulls them off the queue and starts a session thread.

The TLS handshake runs in the session thread, so a slow or hostile client
never stalls the accept loop.

Shutdown is cooperative: stop() raises a one-shot Event that both loops and
every session observe at their next poll, closes the listener, and waits a
bounded time for the loops to finish. Running commands are never killed.
"""

import logging
import queue
import socket
import ssl
import threading
import time
from typing import Optional, Set, Tuple

from .config import ServerConfig
from .errors import SetupError
from .executor import CommandExecutor
from .limiter import ResourceLimiter
from .session import SessionHandler

logger = logging.getLogger(__name__)

ACCEPT_BACKOFF_MIN = 0.01
ACCEPT_BACKOFF_MAX = 1.0


class ShellServer:
    """Mutual-TLS remote command server.

    Usage:
        server = ShellServer(config, create_server_context(config))
        server.start()
        ...
        server.stop()
    """

    def __init__(
        self,
        config: ServerConfig,
        ssl_context: Optional[ssl.SSLContext],
        executor: Optional[CommandExecutor] = None,
    ):
        """Initialize the server.

        Args:
            config: Listen address, limits and timeouts
            ssl_context: Server context from tls.create_server_context(); None
                serves plain TCP, which is only meant for tests
            executor: Command executor shared by all sessions
        """
        self.config = config
        self.ssl_context = ssl_context
        self.executor = executor or CommandExecutor(
            ResourceLimiter(cpu_seconds=config.cpu_seconds, shell=config.shell)
        )

        self.listener_socket: Optional[socket.socket] = None
        self.shutdown = threading.Event()
        self.handoff: "queue.Queue[Tuple[socket.socket, float]]" = queue.Queue(maxsize=config.handoff_size)

        self.accept_thread: Optional[threading.Thread] = None
        self.dispatch_thread: Optional[threading.Thread] = None
        self.running = False
        self._lock = threading.Lock()

        self._sessions: Set[SessionHandler] = set()
        self._sessions_lock = threading.Lock()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    @property
    def address(self) -> Tuple[str, int]:
        """Bound (host, port); useful when listening on port 0."""
        if not self.listener_socket:
            raise RuntimeError("Server is not listening")
        host, port = self.listener_socket.getsockname()[:2]
        return host, port

    @property
    def active_sessions(self) -> int:
        with self._sessions_lock:
            return len(self._sessions)

    def start(self):
        """Bind, listen and start the accept and dispatch loops."""
        with self._lock:
            if self.running:
                logger.warning("ShellServer already running")
                return
            if self.shutdown.is_set():
                raise RuntimeError("ShellServer cannot be restarted after stop()")

            try:
                self.listener_socket = socket.create_server((self.config.host, self.config.port))
            except OSError as e:
                raise SetupError(
                    f"Error while creating listener on {self.config.host}:{self.config.port}: {e}"
                ) from e
            # Allow periodic checks for shutdown
            self.listener_socket.settimeout(self.config.poll_interval)

            self.running = True
            self.accept_thread = threading.Thread(
                target=self._accept_loop, daemon=True, name="shell-accept"
            )
            self.dispatch_thread = threading.Thread(
                target=self._dispatch_loop, daemon=True, name="shell-dispatch"
            )
            self.accept_thread.start()
            self.dispatch_thread.start()

        host, port = self.address
        logger.info(f"Server is listening on: {host}:{port}")

    def stop(self) -> bool:
        """Stop accepting, signal sessions, and wait for the loops.

        Returns True if both loops finished within the grace period.
        """
        with self._lock:
            if self.shutdown.is_set():
                return True
            self.shutdown.set()
            self.running = False

        # Close listener socket to interrupt accept()
        if self.listener_socket:
            try:
                self.listener_socket.close()
            except OSError as e:
                logger.debug(f"Error closing listener socket: {e}")

        deadline = time.monotonic() + self.config.shutdown_grace
        drained = True
        for thread in (self.accept_thread, self.dispatch_thread):
            if thread is None:
                continue
            thread.join(timeout=max(deadline - time.monotonic(), 0))
            if thread.is_alive():
                drained = False

        if not drained:
            logger.warning("Connection timed out waiting for server loops to stop")

        self._close_pending()
        logger.info(f"Server stopped ({self.active_sessions} sessions still finishing)")
        return drained

    def _accept_loop(self):
        """Accept connections and hand them to the dispatch loop."""
        logger.debug("Accept loop started")
        backoff = 0.0

        while not self.shutdown.is_set():
            try:
                client_socket, address = self.listener_socket.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self.shutdown.is_set():
                    break
                # Transient; retry, backing off only while errors repeat
                backoff = min(max(backoff * 2, ACCEPT_BACKOFF_MIN), ACCEPT_BACKOFF_MAX)
                logger.warning(f"Accept error: {e} (retrying in {backoff:.2f}s)")
                self.shutdown.wait(backoff)
                continue

            backoff = 0.0
            logger.info(f"New connection established from: {address[0]}:{address[1]}")
            self._hand_off(client_socket, time.monotonic())

        logger.debug("Accept loop ended")

    def _hand_off(self, client_socket: socket.socket, accepted_at: float):
        while not self.shutdown.is_set():
            try:
                self.handoff.put((client_socket, accepted_at), timeout=self.config.poll_interval)
                return
            except queue.Full:
                continue
        client_socket.close()

    def _dispatch_loop(self):
        """Start a session thread for every handed-off connection."""
        logger.debug("Dispatch loop started")

        while not self.shutdown.is_set():
            try:
                client_socket, accepted_at = self.handoff.get(timeout=self.config.poll_interval)
            except queue.Empty:
                continue

            if self.shutdown.is_set():
                client_socket.close()
                break

            handler = SessionHandler(
                client_socket,
                self.executor,
                self.shutdown,
                config=self.config,
                ssl_context=self.ssl_context,
                on_close=self._untrack,
                accepted_at=accepted_at,
            )
            with self._sessions_lock:
                self._sessions.add(handler)
            threading.Thread(
                target=handler.run,
                daemon=True,
                name=f"shell-session-{handler.session.peer}",
            ).start()

        logger.debug("Dispatch loop ended")

    def _untrack(self, handler: SessionHandler):
        with self._sessions_lock:
            self._sessions.discard(handler)

    def _close_pending(self):
        """Close connections accepted but never handed to a session."""
        while True:
            try:
                client_socket, _ = self.handoff.get_nowait()
            except queue.Empty:
                return
            try:
                client_socket.close()
            except OSError as e:
                logger.debug(f"Error closing pending connection: {e}")
