"""Core data model shared by the rotation workflow."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Protocol

from .exit_codes import ExitCode

_DOMAIN_PATTERN = re.compile(r"[a-zA-Z0-9.-]+")
_MAX_DOMAIN_LENGTH = 253


class ValidationError(RuntimeError):
    """Raised when invocation input or the host environment is unusable."""


class ServiceControlError(RuntimeError):
    """Raised when the service manager rejects a requested transition."""


def validate_domain(value: str) -> str:
    """Validate and normalise a domain/FQDN."""
    normalised = value.strip().lower()
    if not normalised:
        raise ValidationError("Domain must be a non-empty string.")
    if len(normalised) > _MAX_DOMAIN_LENGTH:
        raise ValidationError(f"Domain must be {_MAX_DOMAIN_LENGTH} characters or fewer.")
    if not _DOMAIN_PATTERN.fullmatch(normalised):
        raise ValidationError("Domain may contain letters, numbers, dots, and hyphens.")
    if normalised[0] in "-." or normalised[-1] in "-.":
        raise ValidationError("Domain cannot start or end with a hyphen or dot.")
    if ".." in normalised:
        raise ValidationError("Domain cannot contain empty labels.")
    return normalised


@dataclass(frozen=True)
class RotationRequest:
    """Caller input for a single rotation attempt."""

    domain: str
    force_renewal: bool = False

    def __post_init__(self) -> None:
        """Validate the domain on construction."""
        object.__setattr__(self, "domain", validate_domain(self.domain))


@dataclass(frozen=True)
class CertificateBundle:
    """Freshly issued certificate material for a domain."""

    full_chain: bytes = field(repr=False)
    private_key: bytes = field(repr=False)
    not_after: datetime


@dataclass(frozen=True)
class ServicePaths:
    """Filesystem locations the managed service reads at startup."""

    state_dir: Path
    config_file: Path
    tls_dir: Path

    @property
    def cert_file(self) -> Path:
        """Return the installed full-chain certificate path."""
        return self.tls_dir / "fullchain.pem"

    @property
    def key_file(self) -> Path:
        """Return the installed private key path."""
        return self.tls_dir / "privkey.pem"


@dataclass(frozen=True)
class Backup:
    """Durable snapshot of the service state taken before a rotation."""

    id: str
    domain: str
    created_at: datetime
    path: Path
    state_archive: Path
    config_copy: Path
    algorithm: str
    checksum: str
    tls_archive: Path | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "domain": self.domain,
            "created_at": self.created_at.isoformat(),
            "path": str(self.path),
            "state_archive": str(self.state_archive),
            "config_copy": str(self.config_copy),
            "tls_archive": str(self.tls_archive) if self.tls_archive else None,
            "algorithm": self.algorithm,
            "checksum": self.checksum,
        }


class ServiceState(Enum):
    """Live service state as observed through the service manager."""

    UNKNOWN = "unknown"
    ACTIVE = "active"
    INACTIVE = "inactive"
    TRANSITION_TIMEOUT = "transition-timeout"


class RotationState(Enum):
    """Named states of the rotation state machine."""

    START = "start"
    VALIDATED = "validated"
    BACKED_UP = "backed-up"
    CERT_ACQUIRED = "cert-acquired"
    SERVICE_STOPPED = "service-stopped"
    INSTALLED = "installed"
    SERVICE_STARTED = "service-started"
    VERIFIED = "verified"
    ROLLING_BACK = "rolling-back"
    ROLLED_BACK = "rolled-back"
    ROLLBACK_FAILED = "rollback-failed"
    ABORTED_BEFORE_CHANGE = "aborted-before-change"


class RotationOutcome(Enum):
    """Terminal outcomes reported to the caller."""

    SUCCESS = "success"
    ABORTED_BEFORE_CHANGE = "aborted-before-change"
    ROLLED_BACK = "rolled-back"
    ROLLBACK_FAILED = "rollback-failed"


@dataclass(frozen=True)
class RotationResult:
    """Outcome of one rotation attempt."""

    outcome: RotationOutcome
    domain: str
    final_state: RotationState
    failed_state: RotationState | None = None
    reason: str | None = None
    error: BaseException | None = None
    warnings: tuple[str, ...] = ()
    backup: Backup | None = None
    history: tuple[RotationState, ...] = ()

    @property
    def performed(self) -> bool:
        """Return False when the expiry gate declined to rotate."""
        return not (
            self.outcome is RotationOutcome.ABORTED_BEFORE_CHANGE and self.error is None
        )

    @property
    def exit_code(self) -> ExitCode:
        """Return the CLI exit code for this result."""
        if self.outcome is RotationOutcome.SUCCESS or not self.performed:
            return ExitCode.OK
        return ExitCode.FAILURE

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "outcome": self.outcome.value,
            "domain": self.domain,
            "final_state": self.final_state.value,
            "failed_state": self.failed_state.value if self.failed_state else None,
            "reason": self.reason,
            "error_type": type(self.error).__name__ if self.error is not None else None,
            "warnings": list(self.warnings),
            "backup": self.backup.to_dict() if self.backup else None,
            "history": [state.value for state in self.history],
            "performed": self.performed,
            "exit_code": int(self.exit_code),
        }


class ServiceController(Protocol):
    """Operations the rotation workflow needs from the service manager."""

    def stop(self) -> object:
        """Request the service to stop."""

    def start(self) -> object:
        """Request the service to start."""

    def force_stop(self) -> object:
        """Kill the service when a graceful stop was refused."""

    def is_active(self) -> bool:
        """Return True when the service is currently active."""


__all__ = [
    "Backup",
    "CertificateBundle",
    "RotationOutcome",
    "RotationRequest",
    "RotationResult",
    "RotationState",
    "ServiceControlError",
    "ServiceController",
    "ServicePaths",
    "ServiceState",
    "ValidationError",
    "validate_domain",
]
