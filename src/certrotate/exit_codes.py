"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI.

    Operator cancellation and the expiry-gate no-op both exit with ``OK``.
    """

    OK = 0
    FAILURE = 1
