"""Typer-powered command line interface for ``certrotate``.

``certrotate rotate DOMAIN`` runs one guarded rotation. ``check`` reports the
expiry verdict without changing anything, and ``backups`` exposes the
pre-rotation snapshots for inspection and manual recovery.
"""
from __future__ import annotations

import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import BackupRegistryError, BackupsRegistry, BackupStore, RestoreError
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .locking import LockError, LockManager
from .logging import OperationScope, StructuredLogger
from .models import (
    Backup,
    RotationOutcome,
    RotationRequest,
    RotationResult,
    ServiceControlError,
    ValidationError,
    validate_domain,
)
from .orchestrator import RotationOrchestrator
from .preflight import Preflight
from .providers import SystemdServiceController

console = Console()
err_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    help="Path to an alternate certrotate configuration file.",
    exists=False,
    dir_okay=False,
    file_okay=True,
)
THRESHOLD_DAYS_OPTION = typer.Option(
    None,
    "--threshold-days",
    min=0,
    help="Renew when the certificate expires within this many days (default from config).",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON.",
)
YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Auto-confirm prompts (non-interactive mode).",
)

_OUTCOME_STYLE = {
    RotationOutcome.SUCCESS: "[green]SUCCESS[/green]",
    RotationOutcome.ABORTED_BEFORE_CHANGE: "[yellow]ABORTED BEFORE CHANGE[/yellow]",
    RotationOutcome.ROLLED_BACK: "[yellow]ROLLED BACK[/yellow]",
    RotationOutcome.ROLLBACK_FAILED: "[bold red]ROLLBACK FAILED[/bold red]",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Rotate the TLS certificate of a systemd-managed service.

        Every rotation is preceded by a snapshot of the service state and
        configuration; any failure after the service is stopped restores it.
        """
    ).strip(),
)
backups_app = typer.Typer(help="Inspect and restore pre-rotation backups.")
app.add_typer(backups_app, name="backups")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    backups: BackupStore
    controller: SystemdServiceController

    def orchestrator(self, threshold_days: int | None = None) -> RotationOrchestrator:
        """Return an orchestrator wired to this runtime."""
        return RotationOrchestrator.from_config(
            self.config,
            logger=self.logger,
            locks=self.locks,
            threshold_days=threshold_days,
        )


def _echo_log_line(line: str) -> None:
    err_console.print(line, markup=False, highlight=False)


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        err_console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.FAILURE)) from exc

    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir, echo=_echo_log_line)
    registry = BackupsRegistry(config.backups.root, config.backups.index)
    backups = BackupStore(
        registry,
        config.service.paths,
        compression=config.backups.compression,
        compression_level=config.backups.compression_level,
    )
    controller = SystemdServiceController(
        unit=config.service.unit,
        systemctl_bin=config.systemd.systemctl_bin,
        journalctl_bin=config.systemd.journalctl_bin,
    )
    runtime = RuntimeContext(
        config=config,
        locks=locks,
        logger=logger,
        backups=backups,
        controller=controller,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the certrotate version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"certrotate {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.FAILURE),
    errors: list[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    err_console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _cancelled(op: OperationScope, message: str) -> NoReturn:
    console.print("[yellow]cancelled[/yellow]")
    op.warning(message, warnings=["user-cancelled"])
    raise typer.Exit(code=int(ExitCode.OK))


def _render_result(result: RotationResult, *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=result.to_dict())
        return

    if not result.performed:
        console.print(f"[cyan]No rotation performed:[/cyan] {result.reason}")
        return

    console.print(f"{_OUTCOME_STYLE[result.outcome]} {result.domain}")
    if result.reason:
        console.print(result.reason)
    if result.failed_state is not None:
        console.print(f"Failed in state: {result.failed_state.value}")
    if result.backup is not None:
        console.print(f"Backup: {result.backup.id} ({result.backup.path})")
    for warning in result.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")


@app.command()
def rotate(
    ctx: typer.Context,
    domain: str | None = typer.Argument(
        None, help="Domain (FQDN) whose certificate is rotated.", show_default=False
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Renew even when the current certificate is not close to expiry.",
    ),
    yes: bool = YES_OPTION,
    threshold_days: int | None = THRESHOLD_DAYS_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Rotate the certificate for DOMAIN, rolling back on failure."""
    runtime = _get_runtime(ctx)
    if json_output:
        runtime.logger.echo = None

    try:
        request = RotationRequest(domain or "", force_renewal=force)
    except ValidationError as exc:
        message = (
            "Missing domain argument."
            if domain is None
            else f"Invalid domain '{domain}': {exc}"
        )
        with runtime.logger.operation(
            "rotate",
            args={"domain": domain, "force": force},
            target={"kind": "domain", "name": domain or ""},
        ) as op:
            _command_error(op, message)

    orchestrator = runtime.orchestrator(threshold_days)
    if not yes:
        with runtime.logger.operation(
            "rotate confirm",
            args={"force": force},
            target={"kind": "domain", "name": request.domain},
        ) as op:
            try:
                checks = Preflight(runtime.config).run()
            except ValidationError as exc:
                _command_error(op, str(exc))
            op.add_step("preflight", context={"checks": [check.to_dict() for check in checks]})
            if not typer.confirm(
                f"Rotate the TLS certificate for {request.domain}?",
                default=False,
            ):
                _cancelled(op, "Rotation cancelled by operator.")
            if not request.force_renewal:
                verdict = orchestrator.evaluate(request.domain)
                if not verdict.needs_renewal:
                    if not typer.confirm(
                        f"The certificate for {request.domain} is valid for "
                        f"{verdict.days_remaining} more days. Force renewal?",
                        default=False,
                    ):
                        _cancelled(op, "Forced renewal declined by operator.")
                    request = RotationRequest(request.domain, force_renewal=True)
            op.success("Rotation confirmed.", context={"force": request.force_renewal})

    result = orchestrator.run(request)
    _render_result(result, json_output=json_output)
    raise typer.Exit(code=int(result.exit_code))


@app.command()
def check(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain (FQDN) to inspect."),
    threshold_days: int | None = THRESHOLD_DAYS_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Report whether the certificate for DOMAIN is due for rotation."""
    runtime = _get_runtime(ctx)
    if json_output:
        runtime.logger.echo = None
    threshold = (
        runtime.config.expiry_threshold_days if threshold_days is None else threshold_days
    )
    with runtime.logger.operation(
        "check",
        args={"domain": domain, "threshold_days": threshold, "json": json_output},
        target={"kind": "domain", "name": domain},
    ) as op:
        try:
            normalized = validate_domain(domain)
        except ValidationError as exc:
            _command_error(op, f"Invalid domain '{domain}': {exc}")

        verdict = runtime.orchestrator(threshold).evaluate(normalized)
        payload = {"domain": normalized, "threshold_days": threshold, **verdict.to_dict()}
        if json_output:
            console.print_json(data=payload)
            op.success("Reported expiry verdict (JSON).", context=payload)
            return

        table = Table(show_header=False)
        table.add_row("Domain", normalized)
        table.add_row("Status", verdict.status.value)
        table.add_row(
            "Days remaining",
            "unknown" if verdict.days_remaining is None else str(verdict.days_remaining),
        )
        table.add_row("Threshold (days)", str(threshold))
        table.add_row("Expires", verdict.not_after.isoformat() if verdict.not_after else "-")
        table.add_row("Source", str(verdict.source) if verdict.source else "(no certificate)")
        console.print(table)
        op.success("Reported expiry verdict.", context=payload)


@backups_app.command("list")
def backups_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List pre-rotation backups, newest first."""
    runtime = _get_runtime(ctx)
    if json_output:
        runtime.logger.echo = None
    with runtime.logger.operation(
        "backups list",
        args={"json": json_output},
        target={"kind": "backup", "scope": "registry"},
    ) as op:
        try:
            entries = {
                str(entry.get("id")): entry for entry in runtime.backups.registry.list_entries()
            }
        except BackupRegistryError as exc:
            _command_error(op, f"Failed to read backup index: {exc}")

        rows: list[dict[str, object]] = []
        for backup in runtime.backups.list_backups():
            entry = entries.get(backup.id, {})
            row = backup.to_dict()
            row["status"] = entry.get("status", "unindexed")
            row["last_restored_at"] = entry.get("last_restored_at")
            rows.append(row)

        if json_output:
            console.print_json(data={"backups": rows})
            op.success("Reported backup list (JSON).")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Domain")
        table.add_column("Created At")
        table.add_column("Status")
        table.add_column("Last Restored")
        if not rows:
            table.add_row("(none)", "", "", "", "")
        for row in rows:
            table.add_row(
                str(row["id"]),
                str(row["domain"]),
                str(row["created_at"]),
                str(row["status"]),
                str(row["last_restored_at"] or ""),
            )
        console.print(table)
        op.success("Reported backup list.")


@backups_app.command("restore")
def backups_restore(
    ctx: typer.Context,
    backup_id: str | None = typer.Option(
        None,
        "--id",
        help="Backup identifier to restore (defaults to the most recent backup).",
    ),
    yes: bool = YES_OPTION,
) -> None:
    """Restore a backup: stop the service, restore state and config, start it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backups restore",
        args={"id": backup_id},
        target={"kind": "backup", "id": backup_id or "latest"},
    ) as op:
        try:
            backup: Backup | None = (
                runtime.backups.get(backup_id) if backup_id else runtime.backups.latest()
            )
        except RestoreError as exc:
            _command_error(op, str(exc))
        if backup is None:
            _command_error(op, f"No backups found under {runtime.backups.registry.root}.")

        if not yes and not typer.confirm(
            f"Restore backup {backup.id} for {backup.domain}? The service will be restarted.",
            default=False,
        ):
            _cancelled(op, "Restore cancelled by operator.")

        try:
            with runtime.locks.domain_lock(backup.domain) as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                _restore_backup(runtime, op, backup)
        except LockError as exc:
            _command_error(op, str(exc))

        console.print(f"[green]Restored backup {backup.id}.[/green]")
        op.success(f"Restored backup {backup.id}.", changed=1, backups=[backup.id])


def _restore_backup(runtime: RuntimeContext, op: OperationScope, backup: Backup) -> None:
    try:
        runtime.controller.stop()
        op.add_step("service.stop", status="requested")
    except ServiceControlError as exc:
        op.add_step("service.stop", status="warning", detail=str(exc))

    try:
        runtime.backups.restore(backup.id)
    except RestoreError as exc:
        _command_error(op, f"Restore of {backup.id} failed: {exc}")
    op.add_step("backup.restore", detail=backup.id)

    try:
        runtime.backups.mark_restored(backup)
    except BackupRegistryError as exc:
        op.add_step("backup.index", status="warning", detail=str(exc))

    try:
        runtime.controller.start()
        op.add_step("service.start", status="requested")
    except ServiceControlError as exc:
        op.add_step("service.start", status="warning", detail=str(exc))


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
