"""Tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from certrotate.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.operations_log_path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_operation_writes_record_and_human_log(tmp_path: Path) -> None:
    """A scope yields one JSON record and timestamped human lines."""
    echoed: list[str] = []
    logger = StructuredLogger(tmp_path / "logs", echo=echoed.append)

    with logger.operation(
        "rotate",
        args={"force": False},
        target={"kind": "domain", "name": "example.com"},
    ) as op:
        op.set_lock_wait_ms(12)
        op.add_step("backup.snapshot", detail="20260101-000000-000000-example-com")
        op.success("Rotated.", changed=1, backups=["b1"], context={"path": tmp_path})

    (record,) = _records(logger)
    assert record["command"] == "rotate"
    assert record["args"] == {"force": False}
    assert record["target"] == {"kind": "domain", "name": "example.com"}
    assert record["lock_wait_ms"] == 12
    steps = record["steps"]
    assert isinstance(steps, list) and steps[0]["name"] == "backup.snapshot"
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "success"
    assert result["backups"] == ["b1"]
    assert result["context"] == {"path": str(tmp_path)}
    context = record["context"]
    assert isinstance(context, dict) and "certrotate_version" in context

    human = logger.human_log_path.read_text(encoding="utf-8").splitlines()
    assert any("[rotate] backup.snapshot: success" in line for line in human)
    assert any("result=success rc=0" in line for line in human)
    assert echoed == human


def test_fatal_steps_are_logged_at_error_level(tmp_path: Path) -> None:
    """Fatal step statuses surface as ERROR lines."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("rotate") as op:
        op.add_step("rollback.failed", status="fatal", detail="ROLLBACK_FAILED: gone")
        op.error("ROLLBACK_FAILED")

    human = logger.human_log_path.read_text(encoding="utf-8")
    assert "ERROR   [rotate] rollback.failed: fatal (ROLLBACK_FAILED: gone)" in human


def test_unhandled_exception_recorded_and_reraised(tmp_path: Path) -> None:
    """Exceptions escaping a scope are logged as errors and propagate."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError, match="boom"):
        with logger.operation("check"):
            raise ValueError("boom")

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert result["errors"] == ["boom"]


def test_scope_without_result_defaults_to_success(tmp_path: Path) -> None:
    """Scopes closed without an explicit result are recorded as successful."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("backups list"):
        pass

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict) and result["status"] == "success"


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo", args={"foo": "bar"}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    human_path = logger.human_log_path

    original_open = Path.open

    def fail_human(self: Path, *args: object, **kwargs: object) -> object:
        if self == human_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_human)

    with logger.operation("demo") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo-2") as op:
        op.success("done", changed=0)
