"""Obtain fresh certificate material from the ACME client."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Protocol

from .certificates import not_valid_after, parse_certificate, parse_private_key, public_keys_match
from .config import CertbotConfig
from .models import CertificateBundle


class AcquisitionError(RuntimeError):
    """Raised when a certificate cannot be issued or the issued files are unusable."""


class CertificateAcquirer(Protocol):
    """Source of freshly issued certificates."""

    def acquire(self, domain: str) -> CertificateBundle:
        """Issue a certificate for *domain*."""

    def confirm(self, domain: str) -> bool:
        """Return True when the issuer lists a valid certificate for *domain*."""


class CertbotAcquirer:
    """Drive ``certbot`` to issue certificates into its live directory."""

    def __init__(self, config: CertbotConfig) -> None:
        """Initialise the acquirer with the certbot section of the configuration."""
        self.binary = config.binary
        self.live_dir = config.live_dir.expanduser()
        self.email = config.email
        self.authenticator = config.authenticator
        self.extra_args = list(config.extra_args)

    def issue_command(self, domain: str) -> list[str]:
        """Return the argv used to issue a certificate for *domain*."""
        cmd = [
            self.binary,
            "certonly",
            "--non-interactive",
            "--agree-tos",
            "--cert-name",
            domain,
            "-d",
            domain,
            f"--{self.authenticator}",
            "--force-renewal",
        ]
        if self.email:
            cmd.extend(["--email", self.email])
        else:
            cmd.append("--register-unsafely-without-email")
        cmd.extend(self.extra_args)
        return cmd

    def acquire(self, domain: str) -> CertificateBundle:
        """Issue a certificate for *domain* and return the validated bundle."""
        result = self._run(self.issue_command(domain))
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise AcquisitionError(
                f"certbot certonly failed for {domain} (exit {result.returncode}): {message}"
            )
        return self.load_bundle(domain)

    def load_bundle(self, domain: str, *, now: datetime | None = None) -> CertificateBundle:
        """Read and validate the issued material for *domain* from the live directory."""
        domain_dir = self.live_dir / domain
        chain_path = domain_dir / "fullchain.pem"
        key_path = domain_dir / "privkey.pem"
        try:
            full_chain = chain_path.read_bytes()
            private_key = key_path.read_bytes()
        except OSError as exc:
            raise AcquisitionError(f"Issued certificate files unreadable: {exc}") from exc

        try:
            cert = parse_certificate(full_chain)
        except ValueError as exc:
            raise AcquisitionError(f"Issued certificate {chain_path} is not valid: {exc}") from exc
        try:
            key = parse_private_key(private_key)
        except (TypeError, ValueError) as exc:
            raise AcquisitionError(f"Issued private key {key_path} is not valid: {exc}") from exc
        if not public_keys_match(cert, key):
            raise AcquisitionError(f"Private key {key_path} does not match {chain_path}.")

        not_after = not_valid_after(cert)
        moment = now or datetime.now(UTC)
        if not_after <= moment:
            raise AcquisitionError(
                f"Issued certificate for {domain} expired at {not_after.isoformat()}."
            )
        return CertificateBundle(
            full_chain=full_chain, private_key=private_key, not_after=not_after
        )

    def confirm(self, domain: str) -> bool:
        """Return True when ``certbot certificates`` lists a valid lineage for *domain*."""
        try:
            result = self._run([self.binary, "certificates", "--cert-name", domain])
        except AcquisitionError:
            return False
        if result.returncode != 0:
            return False
        return _lists_valid_certificate(result.stdout or "", domain)

    # ------------------------------------------------------------------
    def _run(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(  # noqa: S603, S607 - controlled command execution
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise AcquisitionError(f"{args[0]} not found: {exc}") from exc


def _lists_valid_certificate(output: str, domain: str) -> bool:
    in_block = False
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if line.startswith("Certificate Name:"):
            in_block = line.split(":", 1)[1].strip() == domain
            continue
        if in_block and line.startswith("Expiry Date:") and "(VALID:" in line:
            return True
    return False


__all__ = [
    "AcquisitionError",
    "CertbotAcquirer",
    "CertificateAcquirer",
]
