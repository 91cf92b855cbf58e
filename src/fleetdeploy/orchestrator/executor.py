"""Parallel deploy/rollback execution with per-stack result isolation."""

import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional, Tuple

from fleetdeploy.orchestrator.models import (
    ExecutionReport,
    ExecutionStatus,
    Operation,
    OperationOutcome,
    ResultSource,
    ValidationFailure,
    validate_stack_name,
)
from fleetdeploy.remote import compose
from fleetdeploy.remote.context import RemoteContext
from fleetdeploy.remote.runner import CommandResult, RemoteRunner
from fleetdeploy.utils.errors import ConfigurationError, ErrorContext, ExecutionError, error_handler
from fleetdeploy.utils.logging import get_logger

logger = get_logger(__name__)

# Progress callback type: (stack_name, status, message)
ProgressCallback = Callable[[str, ExecutionStatus, Optional[str]], None]

SlotKey = Tuple[str, str]


def failure_pattern(stack_name: str) -> re.Pattern:
    name = re.escape(stack_name)
    return re.compile(rf'❌.*{name}|CRITICAL.*{name}|Failed.*{name}|Error.*{name}')


def success_pattern(stack_name: str) -> re.Pattern:
    name = re.escape(stack_name)
    return re.compile(rf'✅.*{name}|Successfully.*{name}')


class ExecutionLedger:
    """Per-(operation, stack) log sinks and exit-code slots.

    Each worker writes only under its own key, so one stack's output can
    never overwrite or mask another's.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._logs: Dict[SlotKey, List[str]] = {}
        self._slots: Dict[SlotKey, int] = {}
        self._durations: Dict[SlotKey, float] = {}

    def log(self, operation: Operation, stack_name: str, line: str) -> None:
        with self._lock:
            self._logs.setdefault((operation.value, stack_name), []).append(line)

    def record(self, operation: Operation, stack_name: str, exit_code: int,
               duration: float = 0.0) -> None:
        with self._lock:
            self._slots[(operation.value, stack_name)] = exit_code
            self._durations[(operation.value, stack_name)] = duration

    def exit_code(self, operation: Operation, stack_name: str) -> Optional[int]:
        with self._lock:
            return self._slots.get((operation.value, stack_name))

    def lines(self, operation: Operation, stack_name: str) -> List[str]:
        with self._lock:
            return list(self._logs.get((operation.value, stack_name), []))

    def duration(self, operation: Operation, stack_name: str) -> float:
        with self._lock:
            return self._durations.get((operation.value, stack_name), 0.0)


class ParallelExecutor:
    """Validates stacks, then deploys or rolls them back concurrently."""

    def __init__(
        self,
        runner: RemoteRunner,
        context: RemoteContext,
        max_workers: int = 8,
        compose_args: str = ''
    ):
        """Initialize parallel executor.

        Args:
            runner: Remote runner (normally wrapped with connection retry)
            context: Remote context with paths, secrets and timeouts
            max_workers: Maximum number of stacks processed at once
            compose_args: Extra arguments appended to `docker compose up`
        """
        self.runner = runner
        self.context = context
        self.max_workers = max_workers
        self.compose_args = compose_args
        self.logger = get_logger(__name__)

    def validate(self, stacks: List[str]) -> List[ValidationFailure]:
        """Pre-flight checks for every stack, in order, without touching containers.

        Args:
            stacks: Stack names to validate

        Returns:
            Validation failures; empty when every stack passed

        Raises:
            ConfigurationError: If a stack is listed twice
        """
        self._check_unique(stacks, 'validate')
        failures = []
        for name in stacks:
            reason = self._validate_stack(name)
            if reason:
                self.logger.error(f"❌ Validation failed for {name}: {reason}", extra={'stack': name})
                failures.append(ValidationFailure(stack_name=name, reason=reason))
            else:
                self.logger.debug(f"Validation passed for {name}", extra={'stack': name})
        return failures

    @staticmethod
    def _check_unique(stacks: List[str], operation: str) -> None:
        seen = set()
        duplicates = sorted({name for name in stacks if name in seen or seen.add(name)})
        if duplicates:
            raise ConfigurationError(
                f"Stacks listed more than once: {', '.join(duplicates)}",
                context=ErrorContext(operation=operation),
                suggestions=['Pass each stack name once per invocation'],
            )

    def _validate_stack(self, name: str) -> Optional[str]:
        if not validate_stack_name(name):
            return f"invalid stack name {name!r}"

        presence = self.runner.execute(compose.stack_presence_script(self.context, name))
        if not presence.ok:
            return f"could not inspect stack directory: {presence.first_error()}"
        state = presence.lines()[0] if presence.lines() else ''
        if state == 'missing-dir':
            return f"stack directory {self.context.stack_dir(name)} not found"
        if state == 'missing-definition':
            return f"{self.context.definition_file} not found"

        timeouts = self.context.timeouts
        env_check = self.runner.execute(
            compose.config_services_script(self.context, name, timeouts.validation_env),
            env=self.context.secret_env,
        )
        if not env_check.ok:
            if env_check.timed_out:
                return f"environment validation timed out after {timeouts.validation_env}s"
            return f"environment validation failed: {env_check.first_error()}"

        syntax_check = self.runner.execute(
            compose.config_quiet_script(self.context, name, timeouts.validation_syntax),
            env=self.context.secret_env,
        )
        if not syntax_check.ok:
            if syntax_check.timed_out:
                return f"syntax validation timed out after {timeouts.validation_syntax}s"
            return f"syntax validation failed: {syntax_check.first_error()}"

        return None

    def run(
        self,
        stacks: List[str],
        operation: Operation,
        validate: bool = True,
        progress_callback: Optional[ProgressCallback] = None
    ) -> ExecutionReport:
        """Run an operation on every stack in parallel and partition the outcomes.

        Args:
            stacks: Stack names to process
            operation: Deploy or rollback
            validate: Run pre-flight validation first
            progress_callback: Optional callback for progress updates

        Returns:
            ExecutionReport

        Raises:
            ConfigurationError: If no stacks were given or a stack is listed twice
            ExecutionError: If no stack produced a result
        """
        if not stacks:
            raise ConfigurationError(
                f"No stacks given to {operation.value}",
                context=ErrorContext(operation=operation.value),
            )
        self._check_unique(stacks, operation.value)

        if validate:
            failures = self.validate(stacks)
            if failures:
                return ExecutionReport(
                    operation=operation,
                    status=ExecutionStatus.FAILED_VALIDATION,
                    validation_failures=failures,
                )

        ledger = ExecutionLedger()
        self.logger.info(
            f"Starting parallel {operation.value} of {len(stacks)} stacks",
            extra={'operation': operation.value},
        )

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            future_to_stack = {}
            for name in stacks:
                if progress_callback:
                    progress_callback(name, ExecutionStatus.IN_PROGRESS, None)
                future = executor.submit(self._run_stack, ledger, name, operation)
                future_to_stack[future] = name

            for future in as_completed(future_to_stack):
                name = future_to_stack[future]
                try:
                    future.result()
                except Exception as e:
                    # The worker died before recording its slot
                    error = error_handler.handle_exception(
                        e, ErrorContext(stack_name=name, operation=operation.value)
                    )
                    error_handler.log_error(error)
                    ledger.log(operation, name, f"❌ Unexpected error for {name}: {error.message}")

                if progress_callback:
                    exit_code = ledger.exit_code(operation, name)
                    status = ExecutionStatus.SUCCESS if exit_code == 0 else ExecutionStatus.FAILED
                    progress_callback(name, status, None if exit_code == 0 else 'failed')

        return self._collect(ledger, stacks, operation)

    def deploy_management(self, progress_callback: Optional[ProgressCallback] = None) -> ExecutionReport:
        """Pull and start the stack-management UI stack.

        It lives outside the git checkout, so it is deployed without
        pre-flight validation and never rolled back.

        Raises:
            ConfigurationError: If no management stack is configured
        """
        if not self.context.management_root:
            raise ConfigurationError(
                "No management stack configured",
                context=ErrorContext(operation=Operation.DEPLOY.value),
                suggestions=['Set compose.management_root in the configuration file'],
            )
        context, name = self.context.management_stack()
        executor = ParallelExecutor(self.runner, context, max_workers=1, compose_args=self.compose_args)
        return executor.run([name], Operation.DEPLOY, validate=False,
                            progress_callback=progress_callback)

    def _run_stack(self, ledger: ExecutionLedger, name: str, operation: Operation) -> None:
        start = time.monotonic()
        timeouts = self.context.timeouts

        if operation == Operation.DEPLOY:
            self._log(ledger, operation, name, f"🚀 Deploying {name}...")
        else:
            self._log(ledger, operation, name, f"🔄 Rolling back {name}...")

        self._log(ledger, operation, name, f"  Pulling images for {name}...")
        pull = self.runner.execute(
            compose.pull_script(self.context, name, timeouts.image_pull),
            env=self.context.secret_env,
        )
        self._capture(ledger, operation, name, pull)
        if not pull.ok:
            detail = (f"timed out after {timeouts.image_pull}s" if pull.timed_out
                      else "timeout or error")
            self._log(ledger, operation, name,
                      f"❌ Failed to pull images for {name} during {operation.value} ({detail})")
            ledger.record(operation, name, pull.exit_code, time.monotonic() - start)
            return

        self._log(ledger, operation, name, f"  Starting services for {name}...")
        up = self.runner.execute(
            compose.up_script(self.context, name, timeouts.service_startup, self.compose_args),
            env=self.context.secret_env,
        )
        self._capture(ledger, operation, name, up)
        if not up.ok:
            detail = (f"timed out after {timeouts.service_startup}s" if up.timed_out
                      else "timeout or error")
            self._log(ledger, operation, name,
                      f"❌ Failed to start services for {name} during {operation.value} ({detail})")
            ledger.record(operation, name, up.exit_code, time.monotonic() - start)
            return

        duration = time.monotonic() - start
        if operation == Operation.DEPLOY:
            self._log(ledger, operation, name, f"✅ {name} deployed successfully ({duration:.1f}s)")
        else:
            self._log(ledger, operation, name, f"✅ {name} rolled back successfully ({duration:.1f}s)")
        ledger.record(operation, name, 0, duration)

    def _log(self, ledger: ExecutionLedger, operation: Operation, name: str, line: str) -> None:
        ledger.log(operation, name, line)
        self.logger.info(line, extra={'stack': name, 'operation': operation.value})

    def _capture(self, ledger: ExecutionLedger, operation: Operation, name: str,
                 result: CommandResult) -> None:
        for stream in (result.stdout, result.stderr):
            for line in stream.splitlines():
                if line.strip():
                    ledger.log(operation, name, f"    {line.rstrip()}")

    def _collect(self, ledger: ExecutionLedger, stacks: List[str], operation: Operation) -> ExecutionReport:
        outcomes: Dict[str, OperationOutcome] = {}
        missing: List[str] = []

        for name in stacks:
            lines = ledger.lines(operation, name)
            exit_code = ledger.exit_code(operation, name)
            if exit_code is not None:
                outcomes[name] = OperationOutcome(
                    stack_name=name,
                    operation=operation,
                    exit_code=exit_code,
                    log_lines=lines,
                    duration=ledger.duration(operation, name),
                )
                continue

            missing.append(name)
            diagnostic = self._diagnose(name, lines)
            self.logger.warning(
                f"⚠️ No result recorded for {name}; treating as failed ({diagnostic})",
                extra={'stack': name, 'operation': operation.value},
            )
            outcomes[name] = OperationOutcome(
                stack_name=name,
                operation=operation,
                exit_code=1,
                log_lines=lines,
                result_source=ResultSource.LOG_FALLBACK,
                diagnostic=diagnostic,
            )

        if len(missing) == len(stacks):
            raise ExecutionError(
                f"No stack produced a {operation.value} result",
                context=ErrorContext(operation=operation.value,
                                     additional_info={'stacks': list(stacks)}),
            )

        report = ExecutionReport(
            operation=operation,
            status=ExecutionStatus.SUCCESS,
            outcomes=outcomes,
            missing_results=missing,
        )
        if report.failed:
            report.status = ExecutionStatus.FAILED
            self.logger.error(
                f"{operation.value} failed for {len(report.failed)}/{len(stacks)} stacks: "
                f"{', '.join(report.failed)}"
            )
        else:
            self.logger.info(f"{operation.value} succeeded for all {len(stacks)} stacks")
        return report

    def _diagnose(self, name: str, lines: List[str]) -> str:
        """Pick a diagnostic line from a stack's log; never used as the verdict."""
        if not lines:
            return 'no log output'
        failure = failure_pattern(name)
        for line in lines:
            if failure.search(line):
                return line.strip()
        success = success_pattern(name)
        for line in lines:
            if success.search(line):
                return f"log reports success but no exit code was recorded: {line.strip()}"
        return 'log has no success or failure marker'
