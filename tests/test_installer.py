"""Tests for the configuration installer."""
from __future__ import annotations

import shutil
import stat
import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import pytest

from certrotate.config import ServiceConfig
from certrotate.installer import ConfigInstaller, InstallationError
from certrotate.models import CertificateBundle, ServicePaths


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def _service(paths: ServicePaths, **overrides: Any) -> ServiceConfig:
    values: dict[str, Any] = {
        "state_dir": paths.state_dir,
        "config_file": paths.config_file,
        "tls_dir": paths.tls_dir,
    }
    values.update(overrides)
    return ServiceConfig(**values)


def _bundle(cert_factory: Callable[..., Any]) -> CertificateBundle:
    pair = cert_factory()
    return CertificateBundle(
        full_chain=pair.certificate,
        private_key=pair.private_key,
        not_after=pair.not_after,
    )


def test_clean_empties_state_and_removes_config(service_paths: ServicePaths) -> None:
    """Clean keeps the state directory but removes its contents and the config."""
    installer = ConfigInstaller(_service(service_paths))

    removed = installer.clean()

    assert service_paths.state_dir.is_dir()
    assert list(service_paths.state_dir.iterdir()) == []
    assert not service_paths.config_file.exists()
    assert service_paths.config_file in removed


def test_clean_tolerates_missing_paths(tmp_path: Path) -> None:
    """Missing state and config are not errors."""
    paths = ServicePaths(
        state_dir=tmp_path / "none",
        config_file=tmp_path / "none.yaml",
        tls_dir=tmp_path / "tls",
    )

    assert ConfigInstaller(_service(paths)).clean() == []


def test_configure_command_renders_placeholders(service_paths: ServicePaths) -> None:
    """The default template expands every placeholder."""
    installer = ConfigInstaller(_service(service_paths, public_port=3080))

    command = installer.configure_command("example.com")

    assert command == [
        "teleport",
        "configure",
        "--cluster-name=example.com",
        "--public-addr=example.com:3080",
        f"--cert-file={service_paths.cert_file}",
        f"--key-file={service_paths.key_file}",
        f"--output={service_paths.config_file}",
    ]


def test_install_writes_material_and_runs_generator(
    service_paths: ServicePaths,
    cert_factory: Callable[..., Any],
) -> None:
    """Install writes cert/key with tight modes and runs the generator."""
    service_paths.config_file.unlink()
    template = ("sh", "-c", "printf 'cluster: {domain}\\n' > {config_file}")
    installer = ConfigInstaller(_service(service_paths, configure_command=template))
    bundle = _bundle(cert_factory)

    installer.install(bundle, "example.com")

    assert service_paths.cert_file.read_bytes() == bundle.full_chain
    assert service_paths.key_file.read_bytes() == bundle.private_key
    assert stat.S_IMODE(service_paths.cert_file.stat().st_mode) == 0o644
    assert stat.S_IMODE(service_paths.key_file.stat().st_mode) == 0o600
    assert service_paths.config_file.read_text() == "cluster: example.com\n"


def test_install_generator_failure(
    service_paths: ServicePaths,
    monkeypatch: pytest.MonkeyPatch,
    cert_factory: Callable[..., Any],
) -> None:
    """A failing generator raises InstallationError with its output."""

    def fake_run(args: Sequence[str], **_: object) -> DummyResult:
        return DummyResult(returncode=2, stderr="invalid public address")

    monkeypatch.setattr(subprocess, "run", fake_run)
    installer = ConfigInstaller(_service(service_paths))

    with pytest.raises(InstallationError, match="invalid public address"):
        installer.install(_bundle(cert_factory), "example.com")


def test_install_requires_config_file(
    service_paths: ServicePaths,
    monkeypatch: pytest.MonkeyPatch,
    cert_factory: Callable[..., Any],
) -> None:
    """A generator that exits 0 without writing the config is a failure."""
    service_paths.config_file.unlink()
    monkeypatch.setattr(subprocess, "run", lambda args, **_: DummyResult())
    installer = ConfigInstaller(_service(service_paths))

    with pytest.raises(InstallationError, match="did not produce"):
        installer.install(_bundle(cert_factory), "example.com")


def test_install_missing_binary(
    service_paths: ServicePaths,
    cert_factory: Callable[..., Any],
) -> None:
    """A missing service binary is an installation error."""
    installer = ConfigInstaller(
        _service(service_paths, binary=str(service_paths.state_dir / "no-such-binary"))
    )

    with pytest.raises(InstallationError, match="not found"):
        installer.install(_bundle(cert_factory), "example.com")


def test_install_generator_not_executable(
    service_paths: ServicePaths,
    cert_factory: Callable[..., Any],
    tmp_path: Path,
) -> None:
    """A generator lacking the exec bit is an installation error."""
    generator = tmp_path / "generate-config"
    generator.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    generator.chmod(0o644)
    installer = ConfigInstaller(_service(service_paths, configure_command=(str(generator),)))

    with pytest.raises(InstallationError, match="Cannot run"):
        installer.install(_bundle(cert_factory), "example.com")


def test_install_ownership_os_error(
    service_paths: ServicePaths,
    monkeypatch: pytest.MonkeyPatch,
    cert_factory: Callable[..., Any],
) -> None:
    """Any OS failure while changing ownership is an installation error."""

    def fake_chown(path: Path, user: str | None = None, group: str | None = None) -> None:
        raise OSError(5, "Input/output error")

    monkeypatch.setattr(shutil, "chown", fake_chown)
    installer = ConfigInstaller(_service(service_paths, tls_owner="teleport"))

    with pytest.raises(InstallationError, match="Input/output error"):
        installer.install(_bundle(cert_factory), "example.com")
