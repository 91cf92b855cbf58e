"""Deployment orchestration: detection, execution, health and rollback."""

from fleetdeploy.orchestrator.models import (
    DetectionResult,
    CleanupResult,
    Operation,
    ExecutionStatus,
    ResultSource,
    OperationOutcome,
    ValidationFailure,
    ExecutionReport,
    HealthClassification,
    ContainerTally,
    HealthVerdict,
    FleetSummary,
    ControllerState,
    DeploymentStatus,
    DeploymentRequest,
    DeploymentReport,
    STACK_NAME_PATTERN,
    UNKNOWN_REVISION,
    validate_stack_name,
)
from fleetdeploy.orchestrator.cleaner import StackCleaner
from fleetdeploy.orchestrator.detector import ChangeDetector
from fleetdeploy.orchestrator.executor import ParallelExecutor, ExecutionLedger, ProgressCallback
from fleetdeploy.orchestrator.health import HealthClassifier
from fleetdeploy.orchestrator.critical import CriticalStackDetector
from fleetdeploy.orchestrator.controller import DeploymentController

__all__ = [
    'DetectionResult',
    'CleanupResult',
    'Operation',
    'ExecutionStatus',
    'ResultSource',
    'OperationOutcome',
    'ValidationFailure',
    'ExecutionReport',
    'HealthClassification',
    'ContainerTally',
    'HealthVerdict',
    'FleetSummary',
    'ControllerState',
    'DeploymentStatus',
    'DeploymentRequest',
    'DeploymentReport',
    'STACK_NAME_PATTERN',
    'UNKNOWN_REVISION',
    'validate_stack_name',
    'StackCleaner',
    'ChangeDetector',
    'ParallelExecutor',
    'ExecutionLedger',
    'ProgressCallback',
    'HealthClassifier',
    'CriticalStackDetector',
    'DeploymentController',
]
