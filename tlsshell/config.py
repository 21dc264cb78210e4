"""
Configuration for the tlsshell server and client.

Defaults match a development layout where certificates live under ./cert.
Every field can be overridden from the environment with a TLSSHELL_ prefix
(see ``from_env``); the CLI applies its flags on top of that.
"""

import logging
import os
from dataclasses import dataclass, fields
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 12345
DEFAULT_CA_FILE = "./cert/ca-cert.pem"
DEFAULT_SESSION_LIFETIME = 100.0  # seconds from connection start
DEFAULT_CPU_SECONDS = 5
DEFAULT_SHELL = "/bin/sh"

ENV_PREFIX = "TLSSHELL_"

_TRUE_VALUES = ("1", "true", "yes", "on")


def _convert(raw: str, current):
    if isinstance(current, bool):
        return raw.strip().lower() in _TRUE_VALUES
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw


def _apply_env(config, env: Optional[Mapping[str, str]]):
    env = os.environ if env is None else env
    for field in fields(config):
        key = ENV_PREFIX + field.name.upper()
        if key not in env:
            continue
        try:
            setattr(config, field.name, _convert(env[key], getattr(config, field.name)))
        except ValueError:
            logger.warning(f"Ignoring invalid value for {key}: {env[key]!r}")
    return config


@dataclass
class ServerConfig:
    """Settings for the shell server."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    cert_file: str = "./cert/server-cert.pem"
    key_file: str = "./cert/server-key.pem"
    ca_file: str = DEFAULT_CA_FILE

    session_lifetime: float = DEFAULT_SESSION_LIFETIME
    cpu_seconds: int = DEFAULT_CPU_SECONDS
    shell: str = DEFAULT_SHELL
    workdir: str = "/"

    poll_interval: float = 0.5  # how often blocked loops re-check shutdown
    handshake_timeout: float = 10.0
    write_timeout: float = 30.0
    shutdown_grace: float = 1.0
    handoff_size: int = 128
    max_line_bytes: int = 64 * 1024

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides) -> "ServerConfig":
        """Build a config from defaults, then TLSSHELL_* variables, then overrides."""
        config = _apply_env(cls(), env)
        for name, value in overrides.items():
            if value is not None:
                setattr(config, name, value)
        return config


@dataclass
class ClientConfig:
    """Settings for the interactive client."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    cert_file: str = "./cert/client-cert.pem"
    key_file: str = "./cert/client-key.pem"
    ca_file: str = DEFAULT_CA_FILE

    # Development certificates are self-signed for "localhost" at best, so
    # hostname checking is opt-in. The chain is verified either way.
    check_hostname: bool = False
    connect_timeout: float = 10.0

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides) -> "ClientConfig":
        config = _apply_env(cls(), env)
        for name, value in overrides.items():
            if value is not None:
                setattr(config, name, value)
        return config
