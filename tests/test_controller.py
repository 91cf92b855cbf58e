"""Tests for the deployment controller state machine."""

import json
from unittest.mock import MagicMock

import pytest

from fleetdeploy.orchestrator.controller import DeploymentController
from fleetdeploy.orchestrator.models import (
    ControllerState,
    DeploymentRequest,
    DeploymentStatus,
    DetectionResult,
    ExecutionReport,
    ExecutionStatus,
    FleetSummary,
    Operation,
    OperationOutcome,
    UNKNOWN_REVISION,
    ValidationFailure,
)
from fleetdeploy.utils.errors import (
    CleanupError,
    ConfigurationError,
    DetectionError,
    ExecutionError,
    RemoteConnectionError,
    RollbackError,
    UnsafeStateError,
    ValidationError,
)

PREVIOUS = 'a' * 40
TARGET = 'b' * 40


def _execution(operation, exit_codes):
    outcomes = {
        name: OperationOutcome(stack_name=name, operation=operation, exit_code=code)
        for name, code in exit_codes.items()
    }
    failed = any(code != 0 for code in exit_codes.values())
    return ExecutionReport(
        operation=operation,
        status=ExecutionStatus.FAILED if failed else ExecutionStatus.SUCCESS,
        outcomes=outcomes,
    )


def _summary(healthy=(), failed=(), critical_failure=False):
    return FleetSummary(
        healthy_stacks=list(healthy),
        failed_stacks=list(failed),
        total_containers=len(healthy) + len(failed),
        running_containers=len(healthy),
        critical_failure_triggered=critical_failure,
    )


@pytest.fixture
def components():
    repository = MagicMock()
    repository.update_to.side_effect = lambda revision: revision
    repository.tree_stacks.return_value = ['web', 'db']

    detector = MagicMock()
    detector.detect.return_value = DetectionResult(existing=['web', 'db'])
    detector.cleanup_removed.return_value = []

    executor = MagicMock()
    executor.validate.return_value = []
    executor.run.side_effect = lambda stacks, operation, **kwargs: _execution(
        operation, {name: 0 for name in stacks}
    )

    health = MagicMock()
    health.classify.side_effect = lambda stacks, critical, **kwargs: _summary(healthy=stacks)

    return repository, detector, executor, health


@pytest.fixture
def controller(components):
    return DeploymentController(*components)


def _request(**overrides):
    values = dict(
        target_revision=TARGET,
        previous_revision=PREVIOUS,
        stacks=['web', 'db'],
        critical_stacks=['db'],
    )
    values.update(overrides)
    return DeploymentRequest(**values)


class TestHappyPath:
    def test_success(self, controller, components):
        repository, detector, executor, health = components

        report = controller.run(_request())

        assert report.status == DeploymentStatus.SUCCESS
        assert report.state == ControllerState.SUCCEEDED
        assert report.state_history == [
            ControllerState.DETECTING,
            ControllerState.CLEANING,
            ControllerState.VALIDATING,
            ControllerState.DEPLOYING,
            ControllerState.HEALTH_CHECKING,
            ControllerState.SUCCEEDED,
        ]
        detector.detect.assert_called_once_with(PREVIOUS, TARGET, ['web', 'db'], [], cleanup=False)
        repository.update_to.assert_called_once_with(TARGET)
        executor.run.assert_called_once()
        assert executor.run.call_args.args[1] == Operation.DEPLOY
        health.classify.assert_called_once_with(['web', 'db'], ['db'], include_management=False)

    def test_cleanup_runs_before_validation(self, controller, components):
        repository, detector, executor, _ = components
        order = []
        detector.cleanup_removed.side_effect = lambda result: order.append('cleanup') or []
        executor.validate.side_effect = lambda stacks: order.append('validate') or []

        controller.run(_request())

        assert order == ['cleanup', 'validate']

    def test_outputs(self, controller):
        outputs = controller.run(_request()).to_outputs()

        assert outputs['deployment_status'] == 'success'
        assert json.loads(outputs['healthy_stacks']) == ['web', 'db']
        assert outputs['success_rate'] == '100'
        assert outputs['discovered_rollback_stacks'] == '[]'
        assert outputs['critical_stacks'] == '["db"]'

    def test_management_stack_is_health_checked(self, controller, components):
        _, _, _, health = components

        controller.run(_request(include_management=True))

        assert health.classify.call_args.kwargs == {'include_management': True}


class TestCriticalLabels:
    def test_labels_read_after_target_checkout(self, components):
        repository, _, _, health = components
        order = []
        repository.update_to.side_effect = lambda revision: order.append(('checkout', revision))
        critical = MagicMock()
        critical.detect.side_effect = lambda stacks: order.append(('labels', list(stacks))) or ['web']
        controller = DeploymentController(*components, critical=critical)

        report = controller.run(_request(detect_critical=True))

        assert order == [('checkout', TARGET), ('labels', ['web', 'db'])]
        assert report.critical_stacks == ['db', 'web']
        assert report.to_outputs()['critical_stacks'] == '["db","web"]'
        health.classify.assert_called_once_with(['web', 'db'], ['db', 'web'], include_management=False)

    def test_labels_not_read_unless_requested(self, components):
        critical = MagicMock()
        controller = DeploymentController(*components, critical=critical)

        report = controller.run(_request())

        critical.detect.assert_not_called()
        assert report.critical_stacks == ['db']

    def test_label_critical_stack_makes_rollback_unsafe(self, components):
        _, _, executor, _ = components
        executor.run.side_effect = [
            _execution(Operation.DEPLOY, {'web': 1, 'db': 0}),
            _execution(Operation.ROLLBACK, {'web': 1, 'db': 0}),
        ]
        critical = MagicMock()
        critical.detect.return_value = ['web']
        controller = DeploymentController(*components, critical=critical)

        report = controller.run(_request(critical_stacks=[], detect_critical=True))

        assert report.status == DeploymentStatus.CRITICAL_FAILURE
        assert report.unsafe_state

    def test_explicit_critical_stacks_kept_on_early_failure(self, controller, components):
        _, detector, _, _ = components
        detector.detect.side_effect = DetectionError('tree failed', failed_methods=['tree'])

        report = controller.run(_request())

        assert report.to_outputs()['critical_stacks'] == '["db"]'


class TestFatalErrors:
    def test_detection_error_fails_before_cleanup(self, controller, components):
        _, detector, executor, _ = components
        detector.detect.side_effect = DetectionError('tree failed', failed_methods=['tree'])

        report = controller.run(_request())

        assert report.status == DeploymentStatus.FAILED
        assert report.state_history == [ControllerState.DETECTING, ControllerState.FAILED]
        assert isinstance(report.error, DetectionError)
        detector.cleanup_removed.assert_not_called()
        executor.run.assert_not_called()

    def test_cleanup_error_stops_deployment(self, controller, components):
        _, detector, executor, _ = components
        detector.cleanup_removed.side_effect = CleanupError('down failed')

        report = controller.run(_request())

        assert report.status == DeploymentStatus.FAILED
        assert ControllerState.VALIDATING not in report.state_history
        executor.validate.assert_not_called()

    def test_empty_stack_list_is_fatal(self, controller, components):
        repository, _, executor, _ = components

        report = controller.run(_request(stacks=[]))

        assert report.status == DeploymentStatus.FAILED
        assert isinstance(report.error, ConfigurationError)
        repository.update_to.assert_not_called()
        executor.run.assert_not_called()

    def test_validation_failure_deploys_nothing(self, controller, components):
        _, _, executor, health = components
        executor.validate.return_value = [ValidationFailure('db', 'compose.yaml not found')]

        report = controller.run(_request())

        assert report.status == DeploymentStatus.FAILED_VALIDATION
        assert report.state == ControllerState.FAILED
        assert isinstance(report.error, ValidationError)
        assert report.deploy.validation_failures[0].stack_name == 'db'
        executor.run.assert_not_called()
        health.classify.assert_not_called()

    def test_no_results_at_all_fails_without_rollback(self, controller, components):
        repository, _, executor, _ = components
        executor.run.side_effect = ExecutionError('no per-stack results recorded')

        report = controller.run(_request())

        assert report.status == DeploymentStatus.FAILED
        assert ControllerState.ROLLING_BACK not in report.state_history
        repository.tree_stacks.assert_not_called()

    def test_connection_failure_is_reported(self, controller, components):
        repository, _, _, _ = components
        repository.update_to.side_effect = RemoteConnectionError('SSH connection failed')

        report = controller.run(_request())

        assert report.status == DeploymentStatus.FAILED
        assert isinstance(report.error, RemoteConnectionError)


class TestRollback:
    def test_deploy_failure_rolls_back(self, controller, components):
        repository, _, executor, health = components
        executor.run.side_effect = [
            _execution(Operation.DEPLOY, {'web': 0, 'db': 1}),
            _execution(Operation.ROLLBACK, {'web': 0, 'db': 0}),
        ]

        report = controller.run(_request())

        assert report.status == DeploymentStatus.ROLLED_BACK
        assert report.state == ControllerState.ROLLED_BACK
        assert report.state_history[-3:] == [
            ControllerState.ROLLING_BACK,
            ControllerState.HEALTH_CHECKING,
            ControllerState.ROLLED_BACK,
        ]
        assert report.state_history.count(ControllerState.ROLLED_BACK) == 1
        assert [c.args[0] for c in repository.update_to.call_args_list] == [TARGET, PREVIOUS]
        repository.tree_stacks.assert_called_once_with(PREVIOUS)
        assert report.discovered_rollback_stacks == ['web', 'db']
        assert executor.run.call_args_list[1].args[1] == Operation.ROLLBACK
        assert health.classify.call_count == 2

    def test_health_failure_rolls_back(self, controller, components):
        _, _, _, health = components
        health.classify.side_effect = [
            _summary(healthy=['web'], failed=['db']),
            _summary(healthy=['web', 'db']),
        ]

        report = controller.run(_request())

        assert report.status == DeploymentStatus.ROLLED_BACK
        assert report.to_outputs()['healthy_stacks'] == '["web","db"]'

    def test_rollback_stacks_come_from_previous_revision(self, controller, components):
        repository, _, executor, _ = components
        repository.tree_stacks.return_value = ['web', 'legacy']
        executor.run.side_effect = [
            _execution(Operation.DEPLOY, {'web': 1, 'db': 0}),
            _execution(Operation.ROLLBACK, {'web': 0, 'legacy': 0}),
        ]

        report = controller.run(_request())

        assert executor.run.call_args_list[1].args[0] == ['web', 'legacy']
        assert report.to_outputs()['discovered_rollback_stacks'] == '["web","legacy"]'

    def test_first_deployment_cannot_roll_back(self, controller, components):
        repository, _, executor, _ = components
        executor.run.side_effect = [_execution(Operation.DEPLOY, {'web': 1, 'db': 0})]

        report = controller.run(_request(previous_revision=UNKNOWN_REVISION))

        assert report.status == DeploymentStatus.FAILED
        assert isinstance(report.error, RollbackError)
        repository.tree_stacks.assert_not_called()

    def test_nothing_to_roll_back(self, controller, components):
        repository, _, executor, _ = components
        repository.tree_stacks.return_value = []
        executor.run.side_effect = [_execution(Operation.DEPLOY, {'web': 1, 'db': 0})]

        report = controller.run(_request())

        assert report.status == DeploymentStatus.FAILED
        assert 'No stacks found' in report.error.message

    def test_rollback_validation_failure(self, controller, components):
        _, _, executor, _ = components
        executor.validate.side_effect = [[], [ValidationFailure('web', 'stack directory not found')]]
        executor.run.side_effect = [_execution(Operation.DEPLOY, {'web': 1, 'db': 0})]

        report = controller.run(_request())

        assert report.status == DeploymentStatus.FAILED
        assert report.rollback.status == ExecutionStatus.FAILED_VALIDATION
        assert executor.run.call_count == 1

    def test_critical_rollback_failure_is_unsafe(self, controller, components):
        _, _, executor, health = components
        executor.run.side_effect = [
            _execution(Operation.DEPLOY, {'web': 1, 'db': 0}),
            _execution(Operation.ROLLBACK, {'web': 0, 'db': 1}),
        ]

        report = controller.run(_request())

        assert report.status == DeploymentStatus.CRITICAL_FAILURE
        assert report.unsafe_state
        assert isinstance(report.error, UnsafeStateError)
        assert health.classify.call_count == 1

    def test_non_critical_rollback_failure_fails(self, controller, components):
        _, _, executor, _ = components
        executor.run.side_effect = [
            _execution(Operation.DEPLOY, {'web': 1, 'db': 0}),
            _execution(Operation.ROLLBACK, {'web': 1, 'db': 0}),
        ]

        report = controller.run(_request())

        assert report.status == DeploymentStatus.FAILED
        assert not report.unsafe_state
        assert 'web' in report.error.message

    def test_unhealthy_after_rollback_fails(self, controller, components):
        _, _, executor, health = components
        executor.run.side_effect = [
            _execution(Operation.DEPLOY, {'web': 1, 'db': 0}),
            _execution(Operation.ROLLBACK, {'web': 0, 'db': 0}),
        ]
        health.classify.side_effect = [
            _summary(healthy=['db'], failed=['web']),
            _summary(healthy=['db'], failed=['web']),
        ]

        report = controller.run(_request())

        assert report.status == DeploymentStatus.FAILED
        assert isinstance(report.error, RollbackError)

    def test_critical_unhealthy_after_rollback(self, controller, components):
        _, _, executor, health = components
        executor.run.side_effect = [
            _execution(Operation.DEPLOY, {'web': 1, 'db': 0}),
            _execution(Operation.ROLLBACK, {'web': 0, 'db': 0}),
        ]
        health.classify.side_effect = [
            _summary(healthy=['db'], failed=['web']),
            _summary(failed=['db'], critical_failure=True),
        ]

        report = controller.run(_request())

        assert report.status == DeploymentStatus.CRITICAL_FAILURE
        assert report.unsafe_state
        assert report.to_outputs()['failed_stacks'] == '["db"]'
