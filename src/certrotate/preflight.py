"""Host checks run before a rotation is allowed to touch anything."""
from __future__ import annotations

import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .config import AppConfig
from .models import ValidationError


@dataclass(frozen=True, slots=True)
class PreflightCheck:
    """Outcome of a single preflight check."""

    name: str
    ok: bool
    message: str

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "ok": self.ok, "message": self.message}


def command_exists(command: str) -> bool:
    """Return True when *command* resolves to an executable."""
    path = Path(command)
    if path.is_absolute() or (path.parent and str(path.parent) not in {"", "."}):
        return path.exists() and os.access(path, os.X_OK)
    resolved = shutil.which(command)
    return resolved is not None and os.access(resolved, os.X_OK)


class Preflight:
    """Verify privileges and required binaries."""

    def __init__(
        self,
        config: AppConfig,
        *,
        euid: Callable[[], int] = os.geteuid,
        exists: Callable[[str], bool] = command_exists,
    ) -> None:
        """Initialise the checks from *config*."""
        self.config = config
        self._euid = euid
        self._exists = exists

    def checks(self) -> list[PreflightCheck]:
        """Evaluate every check without raising."""
        results: list[PreflightCheck] = []
        if self.config.require_root:
            is_root = self._euid() == 0
            results.append(
                PreflightCheck(
                    name="privileges",
                    ok=is_root,
                    message="Running as root." if is_root else "certrotate must run as root.",
                )
            )
        binaries = (
            ("certbot", self.config.certbot.binary),
            ("service", self.config.service.binary),
            ("systemctl", self.config.systemd.systemctl_bin),
        )
        for label, binary in binaries:
            found = self._exists(binary)
            message = (
                f"Binary '{binary}' available."
                if found
                else f"Required binary '{binary}' not found on PATH."
            )
            results.append(PreflightCheck(name=f"binary.{label}", ok=found, message=message))
        return results

    def run(self) -> list[PreflightCheck]:
        """Run all checks; raise :class:`ValidationError` listing every failure."""
        results = self.checks()
        failures = [check.message for check in results if not check.ok]
        if failures:
            raise ValidationError("Preflight failed: " + " ".join(failures))
        return results


__all__ = ["Preflight", "PreflightCheck", "command_exists"]
