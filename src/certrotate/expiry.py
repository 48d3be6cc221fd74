"""Decide whether the certificate for a domain is due for rotation."""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from .certificates import load_certificate, not_valid_after
from .models import ServicePaths


class ExpiryStatus(Enum):
    """Expiry gate decision."""

    NEEDS_RENEWAL = "needs-renewal"
    STILL_VALID = "still-valid"


@dataclass(frozen=True)
class ExpiryVerdict:
    """Result of evaluating a domain's current certificate."""

    status: ExpiryStatus
    days_remaining: int | None = None
    not_after: datetime | None = None
    source: Path | None = None

    @property
    def needs_renewal(self) -> bool:
        """Return True when rotation is due."""
        return self.status is ExpiryStatus.NEEDS_RENEWAL

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "status": self.status.value,
            "days_remaining": self.days_remaining,
            "not_after": self.not_after.isoformat() if self.not_after else None,
            "source": str(self.source) if self.source else None,
        }


class ExpiryEvaluator:
    """Read-only expiry gate.

    The installed service certificate is consulted first, then the certbot
    live directory for the domain. A missing or unreadable certificate always
    yields ``NEEDS_RENEWAL``.
    """

    def __init__(self, paths: ServicePaths, live_dir: Path) -> None:
        """Record where current certificates are looked up."""
        self._paths = paths
        self._live_dir = live_dir

    def candidates(self, domain: str) -> Sequence[Path]:
        """Return certificate paths checked for *domain*, in order."""
        return (self._paths.cert_file, self._live_dir / domain / "fullchain.pem")

    def evaluate(
        self,
        domain: str,
        threshold_days: int,
        *,
        now: datetime | None = None,
    ) -> ExpiryVerdict:
        """Return the expiry verdict for *domain* against *threshold_days*."""
        now = now or datetime.now(UTC)
        for path in self.candidates(domain):
            expiry = _read_expiry(path)
            if expiry is None:
                continue
            days_remaining = (expiry - now).days
            status = (
                ExpiryStatus.NEEDS_RENEWAL
                if days_remaining <= threshold_days
                else ExpiryStatus.STILL_VALID
            )
            return ExpiryVerdict(
                status=status,
                days_remaining=days_remaining,
                not_after=expiry,
                source=path,
            )
        return ExpiryVerdict(status=ExpiryStatus.NEEDS_RENEWAL)


def _read_expiry(path: Path) -> datetime | None:
    try:
        if not path.is_file():
            return None
        return not_valid_after(load_certificate(path))
    except (OSError, ValueError):
        return None


__all__ = ["ExpiryEvaluator", "ExpiryStatus", "ExpiryVerdict"]
