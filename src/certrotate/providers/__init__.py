"""Provider implementations for certrotate."""
from __future__ import annotations

from .systemd import SystemdError, SystemdServiceController

__all__ = [
    "SystemdError",
    "SystemdServiceController",
]
