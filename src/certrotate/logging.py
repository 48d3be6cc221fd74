"""Structured operation logging for certrotate.

Every command runs inside an :class:`OperationScope`. Steps are appended to a
human-readable, timestamped log (``certrotate.log``) as they happen, and a
single JSON record per command is written to ``operations.jsonl`` when the
scope closes. The human log is the primary post-mortem artefact for a
rotation attempt.

Logging must never be the reason a rotation fails: when the log directory is
unavailable or a write fails the logger disables itself and the command keeps
running.
"""
from __future__ import annotations

import getpass
import json
import os
import secrets
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType

from . import __version__

OPERATIONS_LOG_NAME = "operations.jsonl"
HUMAN_LOG_NAME = "certrotate.log"

EchoCallback = Callable[[str], None]
_STEP_LEVELS = {"error": "error", "fatal": "error", "warning": "warning"}


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    """Return a JSON-safe representation of *value*."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return str(os.getuid())


class StructuredLogger:
    """Write operation records and human-readable log lines."""

    def __init__(self, logs_dir: Path, *, echo: EchoCallback | None = None) -> None:
        """Prepare the log directory, disabling logging when it is unusable."""
        self.logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG_NAME
        self._human_log_path = self.logs_dir / HUMAN_LOG_NAME
        self.echo = echo
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def human_log_path(self) -> Path:
        """Return the path of the human-readable log."""
        return self._human_log_path

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the JSON operations log."""
        return self._operations_log_path

    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> OperationScope:
        """Return a scope recording a single command execution."""
        return OperationScope(self, command, args=args, target=target)

    def emit(self, level: str, command: str, message: str) -> None:
        """Append a timestamped line to the human log and echo it."""
        line = f"{_now_iso()} {level.upper():<7} [{command}] {message}"
        if self.echo is not None:
            self.echo(line)
        self._append(self._human_log_path, line)

    def write_record(self, record: Mapping[str, object]) -> None:
        """Append *record* as one JSON line to the operations log."""
        self._append(self._operations_log_path, json.dumps(_sanitize(record), sort_keys=False))

    def _append(self, path: Path, line: str) -> None:
        if not self._enabled:
            return
        try:
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line)
                handle.write("\n")
        except OSError:
            self._enabled = False


class OperationScope:
    """Context manager collecting steps and the result of one command."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Capture the command identity; timing starts on ``__enter__``."""
        self._logger = logger
        self.command = command
        self.operation_id = f"{datetime.now(tz=UTC):%Y%m%dT%H%M%S}-{secrets.token_hex(3)}"
        self._args = dict(args or {})
        self._target = dict(target or {})
        self._steps: list[dict[str, object]] = []
        self._result: dict[str, object] | None = None
        self._lock_wait_ms: int | None = None
        self._started_at = _now_iso()
        self._started = time.monotonic()

    def __enter__(self) -> OperationScope:
        """Start timing the operation."""
        self._started_at = _now_iso()
        self._started = time.monotonic()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> bool:
        """Flush the operation record; exceptions are never swallowed."""
        if self._result is None:
            if exc is not None:
                self.error(
                    f"Unhandled {type(exc).__name__}: {exc}",
                    errors=[str(exc) or type(exc).__name__],
                )
            else:
                self.success("Completed.")
        self._flush()
        return False

    @property
    def steps(self) -> list[dict[str, object]]:
        """Return a copy of the recorded steps."""
        return [dict(step) for step in self._steps]

    @property
    def result(self) -> dict[str, object] | None:
        """Return the recorded result, if any."""
        return dict(self._result) if self._result is not None else None

    def set_lock_wait_ms(self, value: int) -> None:
        """Record how long lock acquisition blocked the command."""
        self._lock_wait_ms = int(value)

    def add_step(
        self,
        name: str,
        *,
        status: str = "success",
        detail: str | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a step and append it to the human log immediately."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail:
            step["detail"] = detail
        if context:
            step["context"] = _sanitize(context)
        self._steps.append(step)
        level = _STEP_LEVELS.get(status, "info")
        message = f"{name}: {status}"
        if detail:
            message = f"{message} ({detail})"
        self._logger.emit(level, self.command, message)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a successful result."""
        self._set_result(
            "success",
            message,
            rc=0,
            changed=changed,
            backups=backups,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        rc: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a result that completed with warnings."""
        self._set_result(
            "warning",
            message,
            rc=rc,
            changed=changed,
            warnings=list(warnings or [message]),
            errors=list(errors or []),
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a failed result; errors default to ``[message]``."""
        self._set_result(
            "error",
            message,
            rc=rc,
            changed=changed,
            warnings=list(warnings or []),
            errors=list(errors or [message]),
            backups=backups,
            context=context,
        )

    # ------------------------------------------------------------------
    def _set_result(
        self,
        status: str,
        message: str,
        *,
        rc: int,
        changed: int,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "rc": rc,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "backups": list(backups or []),
        }
        if context:
            result["context"] = _sanitize(context)
        self._result = result
        level = {"success": "info", "warning": "warning"}.get(status, "error")
        self._logger.emit(level, self.command, f"result={status} rc={rc}: {message}")

    def _flush(self) -> None:
        duration_ms = int((time.monotonic() - self._started) * 1000)
        record: dict[str, object] = {
            "id": self.operation_id,
            "command": self.command,
            "args": self._args,
            "target": self._target,
            "started_at": self._started_at,
            "finished_at": _now_iso(),
            "duration_ms": duration_ms,
            "lock_wait_ms": self._lock_wait_ms,
            "steps": self._steps,
            "result": self._result,
            "context": {
                "certrotate_version": __version__,
                "pid": os.getpid(),
                "user": _current_user(),
            },
        }
        self._logger.write_record(record)


__all__ = ["OperationScope", "StructuredLogger"]
