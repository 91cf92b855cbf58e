"""Data model shared by detection, execution, health and the controller."""

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from fleetdeploy.utils.errors import DeploymentError

STACK_NAME_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')

# Previous revision of a first-ever deployment
UNKNOWN_REVISION = 'unknown'


def validate_stack_name(name: str) -> bool:
    """Check that a stack name is safe to use as a remote directory name."""
    return bool(name) and bool(STACK_NAME_PATTERN.match(name))


@dataclass
class DetectionResult:
    """Stacks removed, added and kept between two revisions."""
    removed: List[str] = field(default_factory=list)
    new: List[str] = field(default_factory=list)
    existing: List[str] = field(default_factory=list)
    first_deployment: bool = False
    method_results: Dict[str, Dict[str, List[str]]] = field(default_factory=dict)

    @property
    def has_removed(self) -> bool:
        return bool(self.removed)

    @property
    def has_new(self) -> bool:
        return bool(self.new)

    @property
    def has_existing(self) -> bool:
        return bool(self.existing)


@dataclass
class CleanupResult:
    """Outcome of tearing down one removed stack."""
    stack_name: str
    succeeded: bool
    already_removed: bool = False
    exit_code: int = 0
    message: str = ''


class Operation(Enum):
    """Operation a parallel run performs on each stack."""
    DEPLOY = "deploy"
    ROLLBACK = "rollback"


class ExecutionStatus(Enum):
    """Status of a stack or of a whole parallel run."""
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    FAILED_VALIDATION = "failed_validation"


class ResultSource(Enum):
    """Where a stack's outcome was read from."""
    SLOT = "slot"
    LOG_FALLBACK = "log_fallback"


@dataclass
class OperationOutcome:
    """Result of one stack's deploy or rollback."""
    stack_name: str
    operation: Operation
    exit_code: int
    log_lines: List[str] = field(default_factory=list)
    result_source: ResultSource = ResultSource.SLOT
    diagnostic: Optional[str] = None
    duration: float = 0.0  # seconds

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


@dataclass
class ValidationFailure:
    """A stack that failed pre-flight validation."""
    stack_name: str
    reason: str


@dataclass
class ExecutionReport:
    """Partitioned outcome of a parallel deploy or rollback."""
    operation: Operation
    status: ExecutionStatus
    outcomes: Dict[str, OperationOutcome] = field(default_factory=dict)
    validation_failures: List[ValidationFailure] = field(default_factory=list)
    missing_results: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> List[str]:
        return [name for name, outcome in self.outcomes.items() if outcome.succeeded]

    @property
    def failed(self) -> List[str]:
        return [name for name, outcome in self.outcomes.items() if not outcome.succeeded]

    def is_success(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS


class HealthClassification(Enum):
    """Per-stack health verdict."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass
class ContainerTally:
    """Container counts for one stack, by state and health."""
    running_healthy: int = 0
    running_starting: int = 0
    running_unhealthy: int = 0
    running_no_health_check: int = 0
    exited: int = 0
    restarting: int = 0

    @property
    def running_total(self) -> int:
        return (self.running_healthy + self.running_starting
                + self.running_unhealthy + self.running_no_health_check)


@dataclass
class HealthVerdict:
    """Classification of one stack from a single health pass."""
    stack_name: str
    classification: HealthClassification
    total_containers: int = 0
    tally: ContainerTally = field(default_factory=ContainerTally)
    reason: str = ''
    log_lines: List[str] = field(default_factory=list)

    @property
    def running_healthy(self) -> int:
        return self.tally.running_healthy

    @property
    def running_starting(self) -> int:
        return self.tally.running_starting

    @property
    def running_unhealthy(self) -> int:
        return self.tally.running_unhealthy

    @property
    def running_no_health_check(self) -> int:
        return self.tally.running_no_health_check

    @property
    def exited(self) -> int:
        return self.tally.exited

    @property
    def restarting(self) -> int:
        return self.tally.restarting


@dataclass
class FleetSummary:
    """Aggregate health of the fleet after one classifier pass."""
    healthy_stacks: List[str] = field(default_factory=list)
    degraded_stacks: List[str] = field(default_factory=list)
    failed_stacks: List[str] = field(default_factory=list)
    skipped_stacks: List[str] = field(default_factory=list)
    flagged_critical_stacks: List[str] = field(default_factory=list)
    total_containers: int = 0
    running_containers: int = 0
    critical_failure_triggered: bool = False
    verdicts: Dict[str, HealthVerdict] = field(default_factory=dict)

    @property
    def success_rate(self) -> int:
        if self.total_containers == 0:
            return 0
        return self.running_containers * 100 // self.total_containers

    def has_failures(self) -> bool:
        return bool(self.failed_stacks) or self.critical_failure_triggered


class ControllerState(Enum):
    """States of a deployment invocation."""
    DETECTING = "detecting"
    CLEANING = "cleaning"
    VALIDATING = "validating"
    DEPLOYING = "deploying"
    HEALTH_CHECKING = "health_checking"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class DeploymentStatus(Enum):
    """Final status reported to the pipeline."""
    SUCCESS = "success"
    FAILED_VALIDATION = "failed_validation"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    CRITICAL_FAILURE = "critical_failure"


@dataclass
class DeploymentRequest:
    """Inputs of one deployment invocation."""
    target_revision: str
    previous_revision: str
    stacks: List[str]
    deleted_files: List[str] = field(default_factory=list)
    critical_stacks: List[str] = field(default_factory=list)
    # Also mark stacks critical from labels in the target revision
    detect_critical: bool = False
    include_management: bool = False


@dataclass
class DeploymentReport:
    """Everything a deployment invocation observed and decided."""
    status: DeploymentStatus
    state: ControllerState
    state_history: List[ControllerState] = field(default_factory=list)
    detection: Optional[DetectionResult] = None
    cleanup: List[CleanupResult] = field(default_factory=list)
    deploy: Optional[ExecutionReport] = None
    health: Optional[FleetSummary] = None
    rollback: Optional[ExecutionReport] = None
    rollback_health: Optional[FleetSummary] = None
    critical_stacks: List[str] = field(default_factory=list)
    discovered_rollback_stacks: List[str] = field(default_factory=list)
    unsafe_state: bool = False
    error: Optional[DeploymentError] = None

    def to_outputs(self) -> Dict[str, str]:
        """Render pipeline outputs as flat string values."""
        outputs: Dict[str, str] = {'deployment_status': self.status.value}

        if self.detection is not None:
            outputs.update(detection_outputs(self.detection))

        summary = self.rollback_health or self.health
        if summary is not None:
            outputs.update(health_outputs(summary))

        outputs['discovered_rollback_stacks'] = json_list(self.discovered_rollback_stacks)
        outputs['critical_stacks'] = json_list(self.critical_stacks)
        return outputs


def json_list(values: List[str]) -> str:
    return json.dumps(values, separators=(',', ':'))


def detection_outputs(result: DetectionResult) -> Dict[str, str]:
    return {
        'removed_stacks': json_list(result.removed),
        'new_stacks': json_list(result.new),
        'existing_stacks': json_list(result.existing),
        'has_removed_stacks': str(result.has_removed).lower(),
        'has_new_stacks': str(result.has_new).lower(),
        'has_existing_stacks': str(result.has_existing).lower(),
    }


def health_outputs(summary: FleetSummary) -> Dict[str, str]:
    return {
        'healthy_stacks': json_list(summary.healthy_stacks),
        'degraded_stacks': json_list(summary.degraded_stacks),
        'failed_stacks': json_list(summary.failed_stacks),
        'total_containers': str(summary.total_containers),
        'running_containers': str(summary.running_containers),
        'success_rate': str(summary.success_rate),
    }
