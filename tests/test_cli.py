"""Tests for the certrotate command line interface."""
from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest
import yaml
from typer.testing import CliRunner

from certrotate import __version__
from certrotate.backups import BackupsRegistry, BackupStore
from certrotate.cli import RuntimeContext, app
from certrotate.config import load_config
from certrotate.expiry import ExpiryStatus, ExpiryVerdict
from certrotate.models import (
    RotationOutcome,
    RotationRequest,
    RotationResult,
    RotationState,
    ServicePaths,
)

CertFactory = Callable[..., Any]

runner = CliRunner()


def _extract_json(output: str) -> dict[str, object]:
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, output
    return json.loads(output[start : end + 1])


def _prepare_environment(
    tmp_path: Path,
    paths: ServicePaths,
    *,
    with_certbot: bool = True,
) -> dict[str, str]:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(parents=True, exist_ok=True)
    calls = tmp_path / "systemctl.calls"

    def _write_stub(name: str, *, content: str = "#!/bin/sh\nexit 0\n") -> Path:
        path = bin_dir / name
        path.write_text(content, encoding="utf-8")
        path.chmod(0o755)
        return path

    systemctl = _write_stub("systemctl", content=f'#!/bin/sh\necho "$@" >> {calls}\nexit 0\n')
    service_binary = _write_stub("teleport")
    certbot = _write_stub("certbot") if with_certbot else bin_dir / "certbot"

    config = {
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "require_root": False,
        "service": {
            "binary": str(service_binary),
            "state_dir": str(paths.state_dir),
            "config_file": str(paths.config_file),
            "tls_dir": str(paths.tls_dir),
        },
        "certbot": {
            "binary": str(certbot),
            "live_dir": str(tmp_path / "letsencrypt" / "live"),
        },
        "backups": {"root": str(tmp_path / "backups")},
        "systemd": {
            "systemctl_bin": str(systemctl),
            "journalctl_bin": str(bin_dir / "journalctl"),
        },
    }
    config_file = tmp_path / "config.yml"
    config_file.write_text(yaml.safe_dump(config), encoding="utf-8")
    return {"CERTROTATE_CONFIG_FILE": str(config_file)}


def _backup_store(env: dict[str, str]) -> BackupStore:
    config = load_config(env["CERTROTATE_CONFIG_FILE"], env={})
    registry = BackupsRegistry(config.backups.root, config.backups.index)
    return BackupStore(registry, config.service.paths)


@dataclass
class FakeOrchestrator:
    verdict: ExpiryVerdict
    outcome: RotationOutcome = RotationOutcome.SUCCESS
    requests: list[RotationRequest] = field(default_factory=list)

    def evaluate(self, domain: str) -> ExpiryVerdict:
        return self.verdict

    def run(self, request: RotationRequest) -> RotationResult:
        self.requests.append(request)
        if self.outcome is RotationOutcome.SUCCESS:
            return RotationResult(
                outcome=self.outcome,
                domain=request.domain,
                final_state=RotationState.VERIFIED,
            )
        return RotationResult(
            outcome=self.outcome,
            domain=request.domain,
            final_state=RotationState.ROLLED_BACK,
            failed_state=RotationState.SERVICE_STARTED,
            reason="Service did not become active within 30s.",
            error=TimeoutError("timeout"),
        )


@pytest.fixture
def fake_orchestrator(monkeypatch: pytest.MonkeyPatch) -> FakeOrchestrator:
    fake = FakeOrchestrator(
        verdict=ExpiryVerdict(status=ExpiryStatus.STILL_VALID, days_remaining=70)
    )
    monkeypatch.setattr(
        RuntimeContext,
        "orchestrator",
        lambda self, threshold_days=None: fake,
    )
    return fake


def test_version_flag() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"certrotate {__version__}" in result.stdout


def test_rotate_rejects_malformed_domain(
    tmp_path: Path, service_paths: ServicePaths, fake_orchestrator: FakeOrchestrator
) -> None:
    env = _prepare_environment(tmp_path, service_paths)
    result = runner.invoke(app, ["rotate", "not a domain", "--yes"], env=env)
    assert result.exit_code == 1
    assert fake_orchestrator.requests == []

    records = (tmp_path / "logs" / "operations.jsonl").read_text(encoding="utf-8").splitlines()
    last = json.loads(records[-1])
    assert last["command"] == "rotate"
    assert last["result"]["status"] == "error"


def test_rotate_without_domain_exits_one(
    tmp_path: Path, service_paths: ServicePaths, fake_orchestrator: FakeOrchestrator
) -> None:
    env = _prepare_environment(tmp_path, service_paths)
    result = runner.invoke(app, ["rotate"], env=env)
    assert result.exit_code == 1
    assert "Missing domain argument." in result.output
    assert fake_orchestrator.requests == []


def test_rotate_preflight_failure_skips_prompts(
    tmp_path: Path, service_paths: ServicePaths, fake_orchestrator: FakeOrchestrator
) -> None:
    env = _prepare_environment(tmp_path, service_paths, with_certbot=False)
    result = runner.invoke(app, ["rotate", "example.com"], input="y\ny\n", env=env)
    assert result.exit_code == 1
    assert "Preflight failed" in result.output
    assert "Rotate the TLS certificate" not in result.output
    assert fake_orchestrator.requests == []


def test_rotate_yes_json_reports_success(
    tmp_path: Path, service_paths: ServicePaths, fake_orchestrator: FakeOrchestrator
) -> None:
    env = _prepare_environment(tmp_path, service_paths)
    result = runner.invoke(app, ["rotate", "Example.COM", "--yes", "--json"], env=env)
    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["outcome"] == "success"
    assert payload["domain"] == "example.com"
    assert fake_orchestrator.requests == [RotationRequest("example.com")]


def test_rotate_declined_prompt_is_cancelled(
    tmp_path: Path, service_paths: ServicePaths, fake_orchestrator: FakeOrchestrator
) -> None:
    env = _prepare_environment(tmp_path, service_paths)
    result = runner.invoke(app, ["rotate", "example.com"], input="n\n", env=env)
    assert result.exit_code == 0
    assert "cancelled" in result.stdout
    assert fake_orchestrator.requests == []


def test_rotate_confirming_force_on_valid_certificate(
    tmp_path: Path, service_paths: ServicePaths, fake_orchestrator: FakeOrchestrator
) -> None:
    env = _prepare_environment(tmp_path, service_paths)
    result = runner.invoke(app, ["rotate", "example.com"], input="y\ny\n", env=env)
    assert result.exit_code == 0, result.stdout
    assert "valid for 70 more days" in result.stdout
    assert fake_orchestrator.requests == [RotationRequest("example.com", force_renewal=True)]


def test_rotate_declining_force_skips_rotation(
    tmp_path: Path, service_paths: ServicePaths, fake_orchestrator: FakeOrchestrator
) -> None:
    env = _prepare_environment(tmp_path, service_paths)
    result = runner.invoke(app, ["rotate", "example.com"], input="y\nn\n", env=env)
    assert result.exit_code == 0
    assert "cancelled" in result.stdout
    assert fake_orchestrator.requests == []


def test_rotate_rolled_back_exits_nonzero(
    tmp_path: Path, service_paths: ServicePaths, fake_orchestrator: FakeOrchestrator
) -> None:
    fake_orchestrator.outcome = RotationOutcome.ROLLED_BACK
    env = _prepare_environment(tmp_path, service_paths)
    result = runner.invoke(app, ["rotate", "example.com", "--yes"], env=env)
    assert result.exit_code == 1
    assert "ROLLED BACK" in result.stdout
    assert "service-started" in result.stdout


def test_check_json_reports_verdict(
    tmp_path: Path, service_paths: ServicePaths, cert_factory: CertFactory
) -> None:
    pair = cert_factory(days_valid=90)
    service_paths.cert_file.write_bytes(pair.certificate)
    env = _prepare_environment(tmp_path, service_paths)

    result = runner.invoke(app, ["check", "example.com", "--json"], env=env)
    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["domain"] == "example.com"
    assert payload["threshold_days"] == 30
    assert payload["status"] == "still-valid"
    assert payload["days_remaining"] in (89, 90)
    assert payload["source"] == str(service_paths.cert_file)


def test_check_threshold_override_flips_verdict(
    tmp_path: Path, service_paths: ServicePaths, cert_factory: CertFactory
) -> None:
    service_paths.cert_file.write_bytes(cert_factory(days_valid=60).certificate)
    env = _prepare_environment(tmp_path, service_paths)

    result = runner.invoke(
        app, ["check", "example.com", "--threshold-days", "90", "--json"], env=env
    )
    assert result.exit_code == 0, result.stdout
    assert _extract_json(result.stdout)["status"] == "needs-renewal"


def test_backups_list_json(tmp_path: Path, service_paths: ServicePaths) -> None:
    env = _prepare_environment(tmp_path, service_paths)
    backup = _backup_store(env).snapshot("example.com")

    result = runner.invoke(app, ["backups", "list", "--json"], env=env)
    assert result.exit_code == 0, result.stdout
    rows = _extract_json(result.stdout)["backups"]
    assert isinstance(rows, list)
    assert [row["id"] for row in rows] == [backup.id]
    assert rows[0]["status"] == "available"
    assert rows[0]["last_restored_at"] is None


def test_backups_restore_latest(tmp_path: Path, service_paths: ServicePaths) -> None:
    env = _prepare_environment(tmp_path, service_paths)
    store = _backup_store(env)
    backup = store.snapshot("example.com")
    service_paths.config_file.write_text("teleport:\n  nodename: broken\n", encoding="utf-8")

    result = runner.invoke(app, ["backups", "restore", "--yes"], env=env)
    assert result.exit_code == 0, result.stdout
    assert f"Restored backup {backup.id}." in result.stdout
    assert service_paths.config_file.read_text(encoding="utf-8") == "teleport:\n  nodename: old\n"

    calls = (tmp_path / "systemctl.calls").read_text(encoding="utf-8").splitlines()
    assert calls == [
        "stop --no-block teleport.service",
        "start --no-block teleport.service",
    ]
    entry = store.registry.find_by_id(backup.id)
    assert entry is not None
    assert entry["restore_count"] == 1


def test_backups_restore_without_backups_fails(
    tmp_path: Path, service_paths: ServicePaths
) -> None:
    env = _prepare_environment(tmp_path, service_paths)
    result = runner.invoke(app, ["backups", "restore", "--yes"], env=env)
    assert result.exit_code == 1
    assert not (tmp_path / "systemctl.calls").exists()
