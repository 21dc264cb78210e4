"""Exceptions raised by tlsshell."""


class TLSShellError(Exception):
    """Base class for tlsshell errors."""


class SetupError(TLSShellError):
    """Start-up could not complete (certificates, bind, connect).

    These are fatal: callers abort instead of retrying.
    """


class ConnectionLostError(TLSShellError):
    """The peer closed or broke the connection while we were using it."""
