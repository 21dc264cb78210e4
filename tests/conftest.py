"""Shared fixtures: throw-away certificates and running servers."""

import ipaddress
import socket
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tlsshell.client import Client
from tlsshell.config import ClientConfig, ServerConfig
from tlsshell.server import ShellServer
from tlsshell.session import SessionHandler
from tlsshell.executor import CommandExecutor
from tlsshell.tls import create_client_context, create_server_context


# ============================================================================
# Certificates
# ============================================================================


def _key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _write_key(key, path: Path):
    path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )


def _write_cert(cert, path: Path):
    path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))


def _make_ca(directory: Path, name: str):
    key = _key()
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(_name(name))
        .issuer_name(_name(name))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .sign(key, hashes.SHA256())
    )
    _write_key(key, directory / f"{name}-key.pem")
    _write_cert(cert, directory / f"{name}-cert.pem")
    return key, cert


def _make_leaf(directory, name, ca_key, ca_cert, server: bool, expired: bool = False):
    key = _key()
    now = datetime.now(timezone.utc)
    if expired:
        not_before, not_after = now - timedelta(days=10), now - timedelta(days=1)
    else:
        not_before, not_after = now - timedelta(days=1), now + timedelta(days=30)

    usage = ExtendedKeyUsageOID.SERVER_AUTH if server else ExtendedKeyUsageOID.CLIENT_AUTH
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name("localhost" if server else name))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.ExtendedKeyUsage([usage]), critical=False)
    )
    if server:
        builder = builder.add_extension(
            x509.SubjectAlternativeName(
                [
                    x509.DNSName("localhost"),
                    x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
                ]
            ),
            critical=False,
        )
    cert = builder.sign(ca_key, hashes.SHA256())
    _write_key(key, directory / f"{name}-key.pem")
    _write_cert(cert, directory / f"{name}-cert.pem")


@pytest.fixture(scope="session")
def certs(tmp_path_factory):
    """A CA with server and client certs, plus a second untrusted CA."""
    directory = tmp_path_factory.mktemp("cert")
    ca_key, ca_cert = _make_ca(directory, "ca")
    _make_leaf(directory, "server", ca_key, ca_cert, server=True)
    _make_leaf(directory, "client", ca_key, ca_cert, server=False)
    _make_leaf(directory, "expired", ca_key, ca_cert, server=True, expired=True)

    rogue_key, rogue_cert = _make_ca(directory, "rogue-ca")
    _make_leaf(directory, "rogue-client", rogue_key, rogue_cert, server=False)

    def path(name):
        return str(directory / name)

    return {
        "dir": directory,
        "ca": path("ca-cert.pem"),
        "server_cert": path("server-cert.pem"),
        "server_key": path("server-key.pem"),
        "client_cert": path("client-cert.pem"),
        "client_key": path("client-key.pem"),
        "expired_cert": path("expired-cert.pem"),
        "expired_key": path("expired-key.pem"),
        "rogue_ca": path("rogue-ca-cert.pem"),
        "rogue_client_cert": path("rogue-client-cert.pem"),
        "rogue_client_key": path("rogue-client-key.pem"),
    }


# ============================================================================
# Configs and servers
# ============================================================================


@pytest.fixture
def server_config(certs):
    return ServerConfig(
        host="127.0.0.1",
        port=0,
        cert_file=certs["server_cert"],
        key_file=certs["server_key"],
        ca_file=certs["ca"],
        session_lifetime=10.0,
        cpu_seconds=2,
        poll_interval=0.05,
        handshake_timeout=5.0,
        shutdown_grace=1.0,
    )


@pytest.fixture
def client_config(certs):
    def make(server: ShellServer, **overrides) -> ClientConfig:
        host, port = server.address
        values = dict(
            host=host,
            port=port,
            cert_file=certs["client_cert"],
            key_file=certs["client_key"],
            ca_file=certs["ca"],
        )
        values.update(overrides)
        return ClientConfig(**values)

    return make


@pytest.fixture
def tls_server(server_config):
    """Start a TLS server; the config can be adjusted before the first call."""
    servers = []

    def start(**overrides):
        for name, value in overrides.items():
            setattr(server_config, name, value)
        server = ShellServer(server_config, create_server_context(server_config))
        server.start()
        servers.append(server)
        return server

    yield start

    for server in servers:
        server.stop()


@pytest.fixture
def connect(client_config):
    """Open an authenticated client to a server."""
    clients = []

    def open_client(server, **overrides):
        config = client_config(server, **overrides)
        client = Client(config, create_client_context(config))
        client.connect()
        clients.append(client)
        return client

    yield open_client

    for client in clients:
        client.close()


# ============================================================================
# Plain socket sessions
# ============================================================================


def recv_until(sock: socket.socket, terminator: bytes, timeout: float = 5.0) -> bytes:
    """Read until ``terminator`` is seen at the end or the peer closes."""
    sock.settimeout(timeout)
    data = b""
    while not data.endswith(terminator):
        chunk = sock.recv(4096)
        if not chunk:
            break
        data += chunk
    return data


def recv_all(sock: socket.socket, timeout: float = 5.0) -> bytes:
    """Read until the peer closes the connection."""
    sock.settimeout(timeout)
    data = b""
    while True:
        chunk = sock.recv(4096)
        if not chunk:
            return data
        data += chunk


@pytest.fixture
def session_pair():
    """Run a SessionHandler on one end of a socketpair.

    Returns a factory: open_session(config) -> (client_socket, handler, thread).
    """
    opened = []

    def open_session(config: ServerConfig, shutdown=None, executor=None, on_close=None, accepted_at=None):
        server_sock, client_sock = socket.socketpair()
        handler = SessionHandler(
            server_sock,
            executor or CommandExecutor(),
            shutdown or threading.Event(),
            config=config,
            on_close=on_close,
            accepted_at=accepted_at,
        )
        thread = threading.Thread(target=handler.run, daemon=True)
        thread.start()
        opened.append((client_sock, thread))
        return client_sock, handler, thread

    yield open_session

    for client_sock, thread in opened:
        client_sock.close()
        thread.join(timeout=5)
