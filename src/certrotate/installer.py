"""Replace the service configuration with one built around a new certificate."""
from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
from collections.abc import Sequence
from pathlib import Path

from .config import ServiceConfig
from .models import CertificateBundle, ServicePaths

CERT_MODE = 0o644
KEY_MODE = 0o600


class InstallationError(RuntimeError):
    """Raised when the new certificate or configuration cannot be put in place."""


class ConfigInstaller:
    """Clear the old service state and generate a fresh configuration.

    The installer never restores anything on failure; recovery is the
    orchestrator's job and goes through the backup store.
    """

    def __init__(self, service: ServiceConfig) -> None:
        """Initialise the installer for *service*."""
        self.service = service
        self.paths = service.paths

    def clean(self, paths: ServicePaths | None = None) -> list[Path]:
        """Remove the persisted state contents and the configuration file.

        The state directory itself is kept. Returns the removed paths.
        """
        target = paths or self.paths
        removed: list[Path] = []
        try:
            if target.state_dir.is_dir():
                for child in sorted(target.state_dir.iterdir()):
                    if child.is_dir() and not child.is_symlink():
                        shutil.rmtree(child)
                    else:
                        child.unlink()
                    removed.append(child)
            if target.config_file.exists() or target.config_file.is_symlink():
                target.config_file.unlink()
                removed.append(target.config_file)
        except OSError as exc:
            raise InstallationError(f"Failed to clear previous service state: {exc}") from exc
        return removed

    def install(self, bundle: CertificateBundle, domain: str) -> list[str]:
        """Write *bundle* into the TLS directory and regenerate the configuration.

        Returns the argv of the configuration generator that was run.
        """
        try:
            self.paths.tls_dir.mkdir(parents=True, exist_ok=True)
            _write_atomic(self.paths.cert_file, bundle.full_chain, CERT_MODE)
            _write_atomic(self.paths.key_file, bundle.private_key, KEY_MODE)
        except OSError as exc:
            raise InstallationError(f"Failed to write TLS material: {exc}") from exc
        self._apply_ownership(self.paths.cert_file)
        self._apply_ownership(self.paths.key_file)

        command = self.configure_command(domain)
        try:
            result = subprocess.run(  # noqa: S603, S607 - controlled command execution
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise InstallationError(f"{command[0]} not found: {exc}") from exc
        except OSError as exc:
            raise InstallationError(f"Cannot run {command[0]}: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise InstallationError(
                f"Configuration generator failed (exit {result.returncode}): {message}"
            )
        if not self.paths.config_file.is_file():
            raise InstallationError(
                f"Configuration generator did not produce {self.paths.config_file}."
            )
        return command

    def configure_command(self, domain: str) -> list[str]:
        """Return the configuration generator argv for *domain*."""
        values = {
            "binary": self.service.binary,
            "domain": domain,
            "port": self.service.public_port,
            "cert_file": str(self.paths.cert_file),
            "key_file": str(self.paths.key_file),
            "config_file": str(self.paths.config_file),
        }
        return _render(self.service.configure_command, values)

    # ------------------------------------------------------------------
    def _apply_ownership(self, path: Path) -> None:
        owner = self.service.tls_owner
        group = self.service.tls_group
        if owner is None and group is None:
            return
        try:
            shutil.chown(path, owner, group)
        except (LookupError, OSError) as exc:
            raise InstallationError(f"Failed to adjust ownership for {path}: {exc}") from exc


def _render(template: Sequence[str], values: dict[str, object]) -> list[str]:
    return [part.format(**values) for part in template]


def _write_atomic(path: Path, payload: bytes, mode: int) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        os.fchmod(fd, mode)
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = ["CERT_MODE", "KEY_MODE", "ConfigInstaller", "InstallationError"]
