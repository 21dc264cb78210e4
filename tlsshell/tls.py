"""
TLS context construction.

Both sides load a certificate/key pair and a CA bundle (the trust anchor).
The server requires a client certificate signed by that CA; the client
verifies the server's certificate against the same CA.
"""

import logging
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from cryptography import x509

from .config import ClientConfig, ServerConfig
from .errors import SetupError

logger = logging.getLogger(__name__)


@dataclass
class CertificateInfo:
    """Identity details of a PEM certificate, for start-up logging."""

    subject: str
    issuer: str
    not_after: datetime

    @property
    def expired(self) -> bool:
        return self.not_after <= datetime.now(timezone.utc)


def describe_certificate(cert_file: str) -> CertificateInfo:
    """Read the first certificate in a PEM file."""
    try:
        data = Path(cert_file).read_bytes()
        cert = x509.load_pem_x509_certificate(data)
    except (OSError, ValueError) as e:
        raise SetupError(f"Error loading certificate {cert_file}: {e}") from e

    return CertificateInfo(
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        not_after=cert.not_valid_after_utc,
    )


def _load_material(context: ssl.SSLContext, cert_file: str, key_file: str, ca_file: str):
    try:
        context.load_cert_chain(certfile=cert_file, keyfile=key_file)
    except (OSError, ssl.SSLError) as e:
        raise SetupError(f"Error while loading certificate and key: {e}") from e

    try:
        context.load_verify_locations(cafile=ca_file)
    except (OSError, ssl.SSLError) as e:
        raise SetupError(f"Error loading CA certificate: {e}") from e


def create_server_context(config: ServerConfig) -> ssl.SSLContext:
    """Build the server-side context: present our cert, require the client's."""
    info = describe_certificate(config.cert_file)
    if info.expired:
        raise SetupError(
            f"Server certificate {config.cert_file} expired on {info.not_after.isoformat()}"
        )
    logger.info(f"Server certificate: {info.subject} (valid until {info.not_after.isoformat()})")

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    _load_material(context, config.cert_file, config.key_file, config.ca_file)
    context.verify_mode = ssl.CERT_REQUIRED
    return context


def create_client_context(config: ClientConfig) -> ssl.SSLContext:
    """Build the client-side context: present our cert, verify the server's."""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    _load_material(context, config.cert_file, config.key_file, config.ca_file)
    # check_hostname must be cleared before verify_mode may be changed
    context.check_hostname = config.check_hostname
    context.verify_mode = ssl.CERT_REQUIRED
    return context


def peer_name(conn) -> str:
    """Common name of the peer certificate, or "unknown"."""
    try:
        cert = conn.getpeercert()
    except (ValueError, OSError):
        return "unknown"
    if not cert:
        return "unknown"
    for rdn in cert.get("subject", ()):
        for key, value in rdn:
            if key == "commonName":
                return value
    return "unknown"
