"""Shared fixtures for the certrotate test suite."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from certrotate.models import ServicePaths


@dataclass(frozen=True)
class IssuedPair:
    """PEM-encoded certificate and key produced for a test."""

    certificate: bytes
    private_key: bytes
    not_after: datetime


CertFactory = Callable[..., IssuedPair]


def issue_pair(
    common_name: str = "example.com",
    *,
    days_valid: float = 90,
    now: datetime | None = None,
) -> IssuedPair:
    """Create a self-signed certificate expiring *days_valid* days from *now*."""
    moment = now or datetime.now(UTC)
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    not_after = moment + timedelta(days=days_valid)
    not_before = min(moment, not_after) - timedelta(days=1)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    return IssuedPair(
        certificate=cert.public_bytes(serialization.Encoding.PEM),
        private_key=key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ),
        not_after=cert.not_valid_after_utc,
    )


@pytest.fixture
def cert_factory() -> CertFactory:
    """Return the certificate factory."""
    return issue_pair


@pytest.fixture
def service_paths(tmp_path: Path) -> ServicePaths:
    """Populate a fake service layout (state dir, config file, TLS dir)."""
    state_dir = tmp_path / "var" / "lib" / "teleport"
    (state_dir / "proc").mkdir(parents=True)
    (state_dir / "proc" / "sqlite.db").write_bytes(b"\x00state\x01")
    (state_dir / "host_uuid").write_text("0d1c-host\n", encoding="utf-8")
    config_file = tmp_path / "etc" / "teleport.yaml"
    config_file.parent.mkdir(parents=True)
    config_file.write_text("teleport:\n  nodename: old\n", encoding="utf-8")
    tls_dir = tmp_path / "etc" / "teleport" / "tls"
    tls_dir.mkdir(parents=True)
    return ServicePaths(state_dir=state_dir, config_file=config_file, tls_dir=tls_dir)
