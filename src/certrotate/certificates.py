"""Certificate parsing helpers shared by expiry checks and acquisition."""
from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol, cast

from cryptography import x509
from cryptography.hazmat.primitives import serialization


class PublicKeyProtocol(Protocol):
    """Protocol covering public keys exposing ``public_bytes``."""

    def public_bytes(
        self,
        *,
        encoding: serialization.Encoding,
        format: serialization.PublicFormat,
    ) -> bytes:
        """Return the public key bytes in the requested encoding/format."""


class PrivateKeyProtocol(Protocol):
    """Protocol for private keys that can provide a matching public key."""

    def public_key(self) -> PublicKeyProtocol:
        """Return the associated public key object."""


def parse_certificate(data: bytes) -> x509.Certificate:
    """Parse the leaf certificate from PEM (first block) or DER *data*."""
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def load_certificate(path: Path) -> x509.Certificate:
    """Read and parse the certificate stored at *path*."""
    return parse_certificate(path.read_bytes())


def parse_private_key(data: bytes) -> PrivateKeyProtocol:
    """Parse an unencrypted PEM private key."""
    private_key = serialization.load_pem_private_key(data, password=None)
    return cast(PrivateKeyProtocol, private_key)


def public_keys_match(cert: x509.Certificate, private_key: PrivateKeyProtocol) -> bool:
    """Return True when *private_key* belongs to *cert*."""
    cert_key = cert.public_key()
    try:
        key_public = private_key.public_key()
    except AttributeError:  # pragma: no cover - key without a public half
        return False
    cert_bytes = cert_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_bytes = key_public.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return cert_bytes == key_bytes


def not_valid_after(cert: x509.Certificate) -> datetime:
    """Return the certificate expiry as an aware UTC datetime."""
    value = getattr(cert, "not_valid_after_utc", None)
    if isinstance(value, datetime):
        return value
    return _as_utc(cert.not_valid_after)  # pragma: no cover - compatibility fallback


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


__all__ = [
    "PrivateKeyProtocol",
    "load_certificate",
    "not_valid_after",
    "parse_certificate",
    "parse_private_key",
    "public_keys_match",
]
