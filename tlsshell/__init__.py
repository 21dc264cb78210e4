"""
tlsshell

Mutual-TLS remote command execution. Clients connect with a certificate
signed by the shared CA, send shell command lines, and receive each
command's stdout followed by an EOF marker line.

Usage:
    from tlsshell import ServerConfig, ShellServer, create_server_context

    config = ServerConfig()
    server = ShellServer(config, create_server_context(config))
    server.start()

    # ... clients connect and run commands ...

    server.stop()
"""

from .config import ClientConfig, ServerConfig
from .errors import ConnectionLostError, SetupError, TLSShellError
from .protocol import Marker
from .limiter import ResourceLimiter, SpawnSpec
from .executor import CommandExecutor, Outcome, OutcomeKind
from .session import Session, SessionHandler, SessionState
from .server import ShellServer
from .client import Client, ResponseEnd, run_interactive
from .tls import create_client_context, create_server_context

__all__ = [
    # Configuration
    "ClientConfig",
    "ServerConfig",
    # Errors
    "TLSShellError",
    "SetupError",
    "ConnectionLostError",
    # Protocol
    "Marker",
    # Execution
    "ResourceLimiter",
    "SpawnSpec",
    "CommandExecutor",
    "Outcome",
    "OutcomeKind",
    # Server side
    "Session",
    "SessionHandler",
    "SessionState",
    "ShellServer",
    "create_server_context",
    # Client side
    "Client",
    "ResponseEnd",
    "run_interactive",
    "create_client_context",
]
