"""Deployment controller: detection through health checks, with automatic rollback."""

from typing import List, Optional

from fleetdeploy.orchestrator.critical import CriticalStackDetector
from fleetdeploy.orchestrator.detector import ChangeDetector
from fleetdeploy.orchestrator.executor import ParallelExecutor, ProgressCallback
from fleetdeploy.orchestrator.health import HealthClassifier
from fleetdeploy.orchestrator.models import (
    ControllerState,
    DeploymentReport,
    DeploymentRequest,
    DeploymentStatus,
    ExecutionReport,
    ExecutionStatus,
    FleetSummary,
    Operation,
    UNKNOWN_REVISION,
)
from fleetdeploy.remote.repository import RemoteRepository
from fleetdeploy.utils.errors import (
    ConfigurationError,
    DeploymentError,
    ErrorContext,
    RollbackError,
    UnsafeStateError,
    ValidationError,
    error_handler,
)
from fleetdeploy.utils.logging import LogContext, get_logger

logger = get_logger(__name__)


class DeploymentController:
    """Runs one deployment invocation as an explicit state machine.

    DETECTING -> CLEANING -> VALIDATING -> DEPLOYING -> HEALTH_CHECKING,
    then SUCCEEDED, or ROLLING_BACK -> HEALTH_CHECKING -> ROLLED_BACK.
    Any fatal error ends in FAILED.
    """

    def __init__(
        self,
        repository: RemoteRepository,
        detector: ChangeDetector,
        executor: ParallelExecutor,
        health: HealthClassifier,
        critical: Optional[CriticalStackDetector] = None
    ):
        """Initialize deployment controller.

        Args:
            repository: Remote checkout, moved to the target or previous revision
            detector: Change detector (also tears down removed stacks)
            executor: Parallel deploy/rollback executor
            health: Health classifier
            critical: Label scanner, used when a request asks to detect critical stacks
        """
        self.repository = repository
        self.detector = detector
        self.executor = executor
        self.health = health
        self.critical = critical
        self.logger = get_logger(__name__)

    def run(
        self,
        request: DeploymentRequest,
        progress_callback: Optional[ProgressCallback] = None
    ) -> DeploymentReport:
        """Run a full deployment.

        Args:
            request: Revisions, stacks and critical stacks for this invocation
            progress_callback: Optional callback for per-stack progress

        Returns:
            DeploymentReport; fatal errors are recorded on it, not raised
        """
        report = DeploymentReport(status=DeploymentStatus.FAILED, state=ControllerState.DETECTING)
        report.critical_stacks = list(dict.fromkeys(request.critical_stacks))

        with LogContext(self.logger, revision=request.target_revision):
            try:
                self._deploy(request, report, progress_callback)
            except DeploymentError as e:
                self._fail(report, e)

        self.logger.info(
            f"Deployment finished: {report.status.value} "
            f"(states: {' -> '.join(s.value for s in report.state_history)})"
        )
        return report

    def _enter(self, report: DeploymentReport, state: ControllerState) -> None:
        report.state = state
        report.state_history.append(state)
        self.logger.info(f"State: {state.value}")

    def _fail(self, report: DeploymentReport, error: DeploymentError,
              status: DeploymentStatus = DeploymentStatus.FAILED) -> None:
        error_handler.log_error(error)
        report.error = error
        report.status = status
        self._enter(report, ControllerState.FAILED)

    def _deploy(self, request: DeploymentRequest, report: DeploymentReport,
                progress_callback: Optional[ProgressCallback]) -> None:
        self._enter(report, ControllerState.DETECTING)
        report.detection = self.detector.detect(
            request.previous_revision,
            request.target_revision,
            request.stacks,
            request.deleted_files,
            cleanup=False,
        )

        self._enter(report, ControllerState.CLEANING)
        report.cleanup = self.detector.cleanup_removed(report.detection)

        self._enter(report, ControllerState.VALIDATING)
        if not request.stacks:
            raise ConfigurationError(
                "No stacks to deploy",
                context=ErrorContext(operation='deploy', revision=request.target_revision),
            )
        self.repository.update_to(request.target_revision)
        report.critical_stacks = self._resolve_critical(request)

        failures = self.executor.validate(request.stacks)
        if failures:
            report.deploy = ExecutionReport(
                operation=Operation.DEPLOY,
                status=ExecutionStatus.FAILED_VALIDATION,
                validation_failures=failures,
            )
            names = ', '.join(f.stack_name for f in failures)
            self._fail(
                report,
                ValidationError(
                    f"Pre-deployment validation failed for: {names}",
                    context=ErrorContext(operation='validate', revision=request.target_revision),
                ),
                status=DeploymentStatus.FAILED_VALIDATION,
            )
            return

        self._enter(report, ControllerState.DEPLOYING)
        report.deploy = self.executor.run(
            request.stacks, Operation.DEPLOY, validate=False, progress_callback=progress_callback
        )

        self._enter(report, ControllerState.HEALTH_CHECKING)
        report.health = self.health.classify(
            request.stacks, report.critical_stacks, include_management=request.include_management
        )

        if report.deploy.is_success() and not report.health.has_failures():
            report.status = DeploymentStatus.SUCCESS
            self._enter(report, ControllerState.SUCCEEDED)
            return

        self._rollback(request, report, progress_callback)

    def _rollback(self, request: DeploymentRequest, report: DeploymentReport,
                  progress_callback: Optional[ProgressCallback]) -> None:
        self._enter(report, ControllerState.ROLLING_BACK)
        previous = request.previous_revision
        context = ErrorContext(operation='rollback', revision=previous)

        if previous == UNKNOWN_REVISION:
            raise RollbackError(
                "Deployment failed and there is no previous revision to roll back to",
                context=context,
                suggestions=['Fix the failing stacks and deploy again'],
            )

        self.repository.update_to(previous)
        discovered = self.repository.tree_stacks(previous)
        report.discovered_rollback_stacks = discovered
        if not discovered:
            raise RollbackError(f"No stacks found in revision {previous}", context=context)
        self.logger.info(f"Rolling back {len(discovered)} stacks to {previous}: {', '.join(discovered)}")

        failures = self.executor.validate(discovered)
        if failures:
            report.rollback = ExecutionReport(
                operation=Operation.ROLLBACK,
                status=ExecutionStatus.FAILED_VALIDATION,
                validation_failures=failures,
            )
            names = ', '.join(f.stack_name for f in failures)
            raise RollbackError(f"Pre-rollback validation failed for: {names}", context=context)

        report.rollback = self.executor.run(
            discovered, Operation.ROLLBACK, validate=False, progress_callback=progress_callback
        )

        critical_failed = self._critical_among(report.rollback.failed, report.critical_stacks)
        if critical_failed:
            report.unsafe_state = True
            self._fail(
                report,
                UnsafeStateError(
                    f"Critical stacks failed to roll back ({', '.join(critical_failed)}): "
                    f"unsafe state - manual intervention required",
                    context=context,
                ),
                status=DeploymentStatus.CRITICAL_FAILURE,
            )
            return

        self._enter(report, ControllerState.HEALTH_CHECKING)
        report.rollback_health = self.health.classify(
            discovered, report.critical_stacks, include_management=request.include_management
        )
        self._finish_rollback(report, report.rollback_health)

    def _finish_rollback(self, report: DeploymentReport, summary: FleetSummary) -> None:
        if summary.critical_failure_triggered:
            report.unsafe_state = True
            self._fail(
                report,
                UnsafeStateError(
                    "Critical stack unhealthy after rollback: manual intervention required",
                    context=ErrorContext(operation='rollback'),
                ),
                status=DeploymentStatus.CRITICAL_FAILURE,
            )
            return

        if report.rollback.failed or summary.failed_stacks:
            failed = sorted(set(report.rollback.failed) | set(summary.failed_stacks))
            self._fail(
                report,
                RollbackError(
                    f"Rollback left stacks failing: {', '.join(failed)}",
                    context=ErrorContext(operation='rollback'),
                ),
            )
            return

        report.status = DeploymentStatus.ROLLED_BACK
        self._enter(report, ControllerState.ROLLED_BACK)

    def _resolve_critical(self, request: DeploymentRequest) -> List[str]:
        # Labels are read from the checked-out target revision
        critical = list(dict.fromkeys(request.critical_stacks))
        if request.detect_critical and self.critical:
            for name in self.critical.detect(request.stacks):
                if name not in critical:
                    critical.append(name)
        if critical:
            self.logger.info(f"Critical stacks: {', '.join(critical)}")
        return critical

    @staticmethod
    def _critical_among(stacks: List[str], critical_stacks: List[str]) -> List[str]:
        critical = set(critical_stacks)
        return [name for name in stacks if name in critical]
