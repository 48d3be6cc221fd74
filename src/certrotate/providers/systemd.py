"""Systemd provider controlling the managed service unit."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..models import ServiceControlError


class SystemdError(ServiceControlError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdServiceController:
    """Drive a single systemd unit through ``systemctl``.

    ``stop`` and ``start`` are issued with ``--no-block``; callers observe the
    resulting state through :meth:`is_active` rather than trusting the request.
    """

    unit: str
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"

    def stop(self) -> subprocess.CompletedProcess[str]:
        """Request the unit to stop."""
        return self._systemctl("stop", "--no-block")

    def start(self) -> subprocess.CompletedProcess[str]:
        """Request the unit to start."""
        return self._systemctl("start", "--no-block")

    def force_stop(self) -> subprocess.CompletedProcess[str]:
        """Kill every process of the unit."""
        return self._systemctl("kill", "--signal=SIGKILL")

    def is_active(self) -> bool:
        """Return True when systemd reports the unit as active."""
        result = self._systemctl("is-active", "--quiet", check=False)
        return result.returncode == 0

    def journal(self, lines: int = 50) -> str:
        """Return the most recent journal lines for the unit."""
        args = ["--unit", self.unit, "--no-pager", "--lines", str(lines)]
        result = self._run_command(
            [self.journalctl_bin, *args],
            check=True,
            error_prefix=f"{self.journalctl_bin} {' '.join(args)}",
        )
        return (result.stdout or "").strip()

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        *flags: str,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command, *flags, self.unit]
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command} {self.unit}",
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["SystemdError", "SystemdServiceController"]
