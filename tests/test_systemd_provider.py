"""Tests for the systemd service controller."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence

import pytest

from certrotate.health import HealthVerifier
from certrotate.models import ServiceState
from certrotate.providers.systemd import SystemdError, SystemdServiceController


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def _capture(
    monkeypatch: pytest.MonkeyPatch,
    result: DummyResult,
) -> list[list[str]]:
    calls: list[list[str]] = []

    def fake_run(args: Sequence[str], **_: object) -> DummyResult:
        calls.append(list(args))
        return result

    monkeypatch.setattr(subprocess, "run", fake_run)
    return calls


@pytest.fixture
def controller() -> SystemdServiceController:
    """Return a controller for the teleport unit."""
    return SystemdServiceController(unit="teleport.service")


def test_stop_and_start_do_not_block(
    monkeypatch: pytest.MonkeyPatch,
    controller: SystemdServiceController,
) -> None:
    """Stop/start are issued with --no-block against the unit."""
    calls = _capture(monkeypatch, DummyResult())

    controller.stop()
    controller.start()

    assert calls == [
        ["systemctl", "stop", "--no-block", "teleport.service"],
        ["systemctl", "start", "--no-block", "teleport.service"],
    ]


def test_force_stop_sends_sigkill(
    monkeypatch: pytest.MonkeyPatch,
    controller: SystemdServiceController,
) -> None:
    """Force stop kills the unit's processes."""
    calls = _capture(monkeypatch, DummyResult())

    controller.force_stop()

    assert calls == [["systemctl", "kill", "--signal=SIGKILL", "teleport.service"]]


def test_stop_failure_raises(
    monkeypatch: pytest.MonkeyPatch,
    controller: SystemdServiceController,
) -> None:
    """Non-zero exits surface as SystemdError with stderr."""
    _capture(monkeypatch, DummyResult(returncode=1, stderr="Access denied"))

    with pytest.raises(SystemdError, match="Access denied"):
        controller.stop()


@pytest.mark.parametrize(
    ("returncode", "expected"),
    [(0, ServiceState.ACTIVE), (3, ServiceState.INACTIVE)],
)
def test_is_active_reflects_exit_status(
    monkeypatch: pytest.MonkeyPatch,
    controller: SystemdServiceController,
    returncode: int,
    expected: ServiceState,
) -> None:
    """`is-active` exit status maps onto the observed service state."""
    calls = _capture(monkeypatch, DummyResult(returncode=returncode))

    assert controller.is_active() is (returncode == 0)
    assert HealthVerifier(controller).observe() is expected
    assert calls == [["systemctl", "is-active", "--quiet", "teleport.service"]] * 2


def test_missing_systemctl_is_observed_as_unknown(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A missing systemctl binary raises, and observers report UNKNOWN."""

    def fake_run(args: Sequence[str], **_: object) -> DummyResult:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(subprocess, "run", fake_run)
    controller = SystemdServiceController(unit="teleport.service", systemctl_bin="/nope")

    with pytest.raises(SystemdError, match="not found"):
        controller.is_active()
    assert HealthVerifier(controller).observe() is ServiceState.UNKNOWN


def test_journal_returns_recent_lines(
    monkeypatch: pytest.MonkeyPatch,
    controller: SystemdServiceController,
) -> None:
    """Journal output is fetched for the unit without a pager."""
    calls = _capture(monkeypatch, DummyResult(stdout="line one\nline two\n"))

    output = controller.journal(20)

    assert output == "line one\nline two"
    assert calls == [
        ["journalctl", "--unit", "teleport.service", "--no-pager", "--lines", "20"]
    ]
