"""Rotation state machine.

One attempt walks ``START -> VALIDATED -> BACKED_UP -> CERT_ACQUIRED ->
SERVICE_STOPPED -> INSTALLED -> SERVICE_STARTED -> VERIFIED``. Failures before
the service is stopped abort without changes. Failures from the stop onwards
enter ``ROLLING_BACK`` exactly once and end in ``ROLLED_BACK`` or, when the
snapshot itself cannot be restored, ``ROLLBACK_FAILED``.
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from .acquisition import AcquisitionError, CertbotAcquirer, CertificateAcquirer
from .backups import BackupError, BackupRegistryError, BackupsRegistry, BackupStore, RestoreError
from .config import AppConfig
from .expiry import ExpiryEvaluator, ExpiryVerdict
from .health import HealthVerifier, ReachabilityWarning, ServiceTransitionTimeout
from .installer import ConfigInstaller
from .locking import LockError, LockManager
from .logging import OperationScope, StructuredLogger
from .models import (
    Backup,
    CertificateBundle,
    RotationOutcome,
    RotationRequest,
    RotationResult,
    RotationState,
    ServiceControlError,
    ServiceController,
    ServiceState,
    ValidationError,
)
from .preflight import Preflight
from .providers import SystemdServiceController

ROLLBACK_FAILED_MARKER = "ROLLBACK_FAILED"
JOURNAL_LINES = 50


@dataclass
class _Attempt:
    domain: str
    state: RotationState = RotationState.START
    history: list[RotationState] = field(default_factory=lambda: [RotationState.START])
    warnings: list[str] = field(default_factory=list)
    backup: Backup | None = None

    def advance(self, state: RotationState) -> None:
        self.state = state
        self.history.append(state)


class RotationOrchestrator:
    """Coordinate one certificate rotation for a single domain."""

    def __init__(
        self,
        *,
        evaluator: ExpiryEvaluator,
        backups: BackupStore,
        acquirer: CertificateAcquirer,
        controller: ServiceController,
        installer: ConfigInstaller,
        verifier: HealthVerifier,
        logger: StructuredLogger,
        locks: LockManager,
        threshold_days: int = 30,
        service_timeout: float = 30.0,
        preflight: Preflight | None = None,
        journal: Callable[[int], str] | None = None,
    ) -> None:
        """Wire the collaborators used by :meth:`run`."""
        self.evaluator = evaluator
        self.backups = backups
        self.acquirer = acquirer
        self.controller = controller
        self.installer = installer
        self.verifier = verifier
        self.logger = logger
        self.locks = locks
        self.threshold_days = threshold_days
        self.service_timeout = service_timeout
        self.preflight = preflight
        self.journal = journal

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        logger: StructuredLogger,
        locks: LockManager,
        threshold_days: int | None = None,
    ) -> RotationOrchestrator:
        """Build an orchestrator backed by certbot and systemd."""
        paths = config.service.paths
        controller = SystemdServiceController(
            unit=config.service.unit,
            systemctl_bin=config.systemd.systemctl_bin,
            journalctl_bin=config.systemd.journalctl_bin,
        )
        registry = BackupsRegistry(config.backups.root, config.backups.index)
        return cls(
            evaluator=ExpiryEvaluator(paths, config.certbot.live_dir),
            backups=BackupStore(
                registry,
                paths,
                compression=config.backups.compression,
                compression_level=config.backups.compression_level,
            ),
            acquirer=CertbotAcquirer(config.certbot),
            controller=controller,
            installer=ConfigInstaller(config.service),
            verifier=HealthVerifier(
                controller,
                poll_interval=config.timeouts.poll_interval,
                port=config.service.public_port,
                probe_path=config.probe.path,
                probe_timeout=config.probe.timeout,
                verify_tls=config.probe.verify_tls,
            ),
            logger=logger,
            locks=locks,
            threshold_days=(
                config.expiry_threshold_days if threshold_days is None else threshold_days
            ),
            service_timeout=config.timeouts.service,
            preflight=Preflight(config),
            journal=controller.journal,
        )

    def evaluate(self, domain: str) -> ExpiryVerdict:
        """Return the expiry verdict for *domain* using the configured threshold."""
        return self.evaluator.evaluate(domain, self.threshold_days)

    def run(self, request: RotationRequest) -> RotationResult:
        """Execute one rotation attempt for *request* and return its result."""
        attempt = _Attempt(domain=request.domain)
        with self.logger.operation(
            "rotate",
            args={"force": request.force_renewal, "threshold_days": self.threshold_days},
            target={"kind": "domain", "name": request.domain},
        ) as op:
            try:
                with self.locks.domain_lock(request.domain) as handle:
                    op.set_lock_wait_ms(handle.wait_ms)
                    op.add_step("lock.acquire", detail=str(handle.path))
                    result = self._execute(request, attempt, op)
            except LockError as exc:
                result = self._abort(attempt, op, "lock.acquire", ValidationError(str(exc)))
            self._record(op, result)
        return result

    # State transitions --------------------------------------------
    def _execute(
        self,
        request: RotationRequest,
        attempt: _Attempt,
        op: OperationScope,
    ) -> RotationResult:
        domain = request.domain

        if self.preflight is not None:
            try:
                checks = self.preflight.run()
            except ValidationError as exc:
                return self._abort(attempt, op, "preflight", exc)
            op.add_step("preflight", context={"checks": [check.to_dict() for check in checks]})
        attempt.advance(RotationState.VALIDATED)

        if request.force_renewal:
            op.add_step("expiry.evaluate", status="skipped", detail="renewal forced")
        else:
            verdict = self.evaluate(domain)
            op.add_step(
                "expiry.evaluate",
                detail=verdict.status.value,
                context=verdict.to_dict(),
            )
            if not verdict.needs_renewal:
                return self._finish(
                    attempt,
                    RotationOutcome.ABORTED_BEFORE_CHANGE,
                    RotationState.ABORTED_BEFORE_CHANGE,
                    reason=(
                        f"Certificate for {domain} is valid for {verdict.days_remaining} more "
                        f"days (threshold {self.threshold_days}); no rotation performed."
                    ),
                )

        try:
            attempt.backup = self.backups.snapshot(domain)
        except BackupError as exc:
            return self._abort(attempt, op, "backup.snapshot", exc)
        op.add_step("backup.snapshot", detail=attempt.backup.id)
        attempt.advance(RotationState.BACKED_UP)

        bundle: CertificateBundle | None
        try:
            bundle = self.acquirer.acquire(domain)
        except AcquisitionError as exc:
            return self._abort(attempt, op, "certificate.acquire", exc)
        op.add_step("certificate.acquire", detail=f"expires {bundle.not_after.isoformat()}")
        if not self.acquirer.confirm(domain):
            error = AcquisitionError(f"Issuer does not list a valid certificate for {domain}.")
            return self._abort(attempt, op, "certificate.confirm", error)
        op.add_step("certificate.confirm")
        attempt.advance(RotationState.CERT_ACQUIRED)

        failure = self._apply_change(attempt, op, bundle)
        bundle = None
        if failure is not None:
            step, error = failure
            return self._rollback(attempt, op, step, error)

        if self.verifier.probe_reachable(domain):
            op.add_step("health.probe", detail=self.verifier.probe_url(domain))
        else:
            warning = ReachabilityWarning(
                f"{self.verifier.probe_url(domain)} did not answer 200 OK after restart."
            )
            attempt.warnings.append(str(warning))
            op.add_step("health.probe", status="warning", detail=str(warning))
        attempt.advance(RotationState.VERIFIED)

        return self._finish(
            attempt,
            RotationOutcome.SUCCESS,
            RotationState.VERIFIED,
            reason=f"Certificate for {domain} rotated.",
        )

    def _apply_change(
        self,
        attempt: _Attempt,
        op: OperationScope,
        bundle: CertificateBundle,
    ) -> tuple[str, Exception] | None:
        """Stop, install and start; return the failing step and its error.

        Exceptions are returned, not raised.
        """
        step = "service.stop"
        try:
            stop_error = self._stop_service(op)
            if stop_error is not None:
                return step, stop_error
            attempt.advance(RotationState.SERVICE_STOPPED)

            step = "install"
            removed = self.installer.clean()
            op.add_step("install.clean", detail=f"removed {len(removed)} path(s)")
            command = self.installer.install(bundle, attempt.domain)
            op.add_step("install.configure", detail=" ".join(command))
            attempt.advance(RotationState.INSTALLED)

            step = "service.start"
            start_error = self._start_service(op)
            if start_error is not None:
                return step, start_error
        except Exception as exc:  # noqa: BLE001 - handed to the rollback path
            return step, exc
        attempt.advance(RotationState.SERVICE_STARTED)
        return None

    def _stop_service(self, op: OperationScope) -> Exception | None:
        try:
            self.controller.stop()
            op.add_step("service.stop", status="requested")
        except ServiceControlError as exc:
            op.add_step("service.stop", status="warning", detail=str(exc))
            try:
                self.controller.force_stop()
            except ServiceControlError as kill_exc:
                return kill_exc
            op.add_step("service.force_stop", status="requested")
        state = self.verifier.await_state(False, self.service_timeout)
        if state is not ServiceState.INACTIVE:
            return ServiceTransitionTimeout(
                f"Service did not stop within {self.service_timeout:g}s."
            )
        op.add_step("service.stopped", detail=state.value)
        return None

    def _start_service(self, op: OperationScope) -> Exception | None:
        try:
            self.controller.start()
        except ServiceControlError as exc:
            return exc
        op.add_step("service.start", status="requested")
        state = self.verifier.await_state(True, self.service_timeout)
        if state is not ServiceState.ACTIVE:
            return ServiceTransitionTimeout(
                f"Service did not become active within {self.service_timeout:g}s."
            )
        op.add_step("service.started", detail=state.value)
        return None

    # Terminal paths -----------------------------------------------
    def _abort(
        self,
        attempt: _Attempt,
        op: OperationScope,
        step: str,
        error: Exception,
    ) -> RotationResult:
        failed_state = attempt.state
        op.add_step(
            step,
            status="error",
            detail=f"{attempt.domain} in state {failed_state.value}: {error}",
        )
        return self._finish(
            attempt,
            RotationOutcome.ABORTED_BEFORE_CHANGE,
            RotationState.ABORTED_BEFORE_CHANGE,
            failed_state=failed_state,
            reason=str(error),
            error=error,
        )

    def _rollback(
        self,
        attempt: _Attempt,
        op: OperationScope,
        step: str,
        error: Exception,
    ) -> RotationResult:
        failed_state = attempt.state
        op.add_step(
            step,
            status="error",
            detail=f"{attempt.domain} in state {failed_state.value}: {error}",
            context=self._diagnostics(),
        )
        attempt.advance(RotationState.ROLLING_BACK)
        op.add_step("rollback.start", status="warning", detail=f"after {failed_state.value}")

        try:
            self.controller.stop()
            op.add_step("rollback.stop", status="requested")
        except ServiceControlError as exc:
            op.add_step("rollback.stop", status="warning", detail=str(exc))
        stopped = self.verifier.await_state(False, self.service_timeout)
        op.add_step(
            "rollback.stopped",
            status="success" if stopped is ServiceState.INACTIVE else "warning",
            detail=stopped.value,
        )

        try:
            restored = self.backups.restore_latest()
        except RestoreError as exc:
            op.add_step(
                "rollback.failed",
                status="fatal",
                detail=f"{ROLLBACK_FAILED_MARKER}: {exc}",
            )
            return self._finish(
                attempt,
                RotationOutcome.ROLLBACK_FAILED,
                RotationState.ROLLBACK_FAILED,
                failed_state=failed_state,
                reason=(
                    f"{ROLLBACK_FAILED_MARKER}: restore failed ({exc}) after "
                    f"{failed_state.value} failure ({error}); manual intervention required."
                ),
                error=exc,
            )
        op.add_step("rollback.restore", detail=restored.id)
        try:
            self.backups.mark_restored(restored)
        except BackupRegistryError as exc:
            op.add_step("rollback.index", status="warning", detail=str(exc))

        try:
            self.controller.start()
            op.add_step("rollback.start_service", status="requested")
        except ServiceControlError as exc:
            op.add_step("rollback.start_service", status="warning", detail=str(exc))

        return self._finish(
            attempt,
            RotationOutcome.ROLLED_BACK,
            RotationState.ROLLED_BACK,
            failed_state=failed_state,
            reason=(
                f"Rolled back to backup {restored.id} after "
                f"{failed_state.value} failure: {error}"
            ),
            error=error,
        )

    def _finish(
        self,
        attempt: _Attempt,
        outcome: RotationOutcome,
        final_state: RotationState,
        *,
        failed_state: RotationState | None = None,
        reason: str | None = None,
        error: BaseException | None = None,
    ) -> RotationResult:
        if attempt.state is not final_state:
            attempt.advance(final_state)
        return RotationResult(
            outcome=outcome,
            domain=attempt.domain,
            final_state=final_state,
            failed_state=failed_state,
            reason=reason,
            error=error,
            warnings=tuple(attempt.warnings),
            backup=attempt.backup,
            history=tuple(attempt.history),
        )

    def _diagnostics(self) -> dict[str, object]:
        if self.journal is None:
            return {}
        try:
            return {"journal": self.journal(JOURNAL_LINES)}
        except ServiceControlError as exc:
            return {"journal_error": str(exc)}

    def _record(self, op: OperationScope, result: RotationResult) -> None:
        context = result.to_dict()
        backups = [result.backup.id] if result.backup else None
        message = result.reason or result.outcome.value
        if result.outcome is RotationOutcome.SUCCESS:
            if result.warnings:
                op.warning(
                    message,
                    warnings=list(result.warnings),
                    changed=1,
                    backups=backups,
                    context=context,
                )
            else:
                op.success(message, changed=1, backups=backups, context=context)
        elif not result.performed:
            op.success(message, context=context)
        elif result.outcome is RotationOutcome.ROLLBACK_FAILED:
            context["marker"] = ROLLBACK_FAILED_MARKER
            op.error(message, rc=int(result.exit_code), changed=1, backups=backups, context=context)
        else:
            op.error(message, rc=int(result.exit_code), backups=backups, context=context)


__all__ = ["ROLLBACK_FAILED_MARKER", "RotationOrchestrator"]
