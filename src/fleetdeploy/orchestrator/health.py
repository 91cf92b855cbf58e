"""Post-deployment health classification of stacks and the fleet."""

from typing import Iterable, List, Tuple

from fleetdeploy.orchestrator.models import (
    ContainerTally,
    FleetSummary,
    HealthClassification,
    HealthVerdict,
    STACK_NAME_PATTERN,
)
from fleetdeploy.remote import compose
from fleetdeploy.remote.context import RemoteContext
from fleetdeploy.remote.runner import RemoteRunner
from fleetdeploy.utils.logging import get_logger

logger = get_logger(__name__)


def tally_containers(rows: Iterable[str]) -> ContainerTally:
    """Count containers from `service<TAB>state<TAB>health` rows."""
    tally = ContainerTally()
    for row in rows:
        parts = row.strip().split('\t')
        if len(parts) < 2 or not parts[0]:
            continue
        state = parts[1].strip().lower()
        health = parts[2].strip().lower() if len(parts) > 2 else ''

        if state == 'running':
            if health == 'healthy':
                tally.running_healthy += 1
            elif health == 'starting':
                tally.running_starting += 1
            elif health == 'unhealthy':
                tally.running_unhealthy += 1
            else:
                tally.running_no_health_check += 1
        elif state == 'exited':
            tally.exited += 1
        elif state == 'restarting':
            tally.restarting += 1
    return tally


def classify_counts(total: int, tally: ContainerTally) -> Tuple[HealthClassification, str]:
    """Classify one stack from its service count and container tally.

    Returns:
        (classification, reason)
    """
    if tally.running_unhealthy > 0:
        return HealthClassification.FAILED, f"{tally.running_unhealthy} unhealthy containers"

    healthy_total = tally.running_healthy + tally.running_no_health_check
    settled = tally.running_starting == 0 and tally.exited == 0 and tally.restarting == 0

    if total > 0 and healthy_total == total and settled:
        return HealthClassification.HEALTHY, f"all {total} services running"
    if healthy_total > 0 and healthy_total == tally.running_total and settled:
        return (HealthClassification.DEGRADED,
                f"{healthy_total}/{total} services running, all running containers healthy")
    if tally.running_starting > 0:
        return HealthClassification.FAILED, f"{tally.running_starting} containers still starting"

    return (HealthClassification.FAILED,
            f"{healthy_total}/{total} healthy, {tally.exited} exited, {tally.restarting} restarting")


class HealthClassifier:
    """Single-pass health classification; no waiting or polling."""

    def __init__(self, runner: RemoteRunner, context: RemoteContext):
        self.runner = runner
        self.context = context
        self.logger = get_logger(__name__)

    def _service_names(self, stack_name: str) -> List[str]:
        result = self.runner.execute(
            compose.config_services_script(self.context, stack_name, self.context.timeouts.health_command),
            env=self.context.secret_env,
        )
        if not result.ok:
            return []
        return [line for line in result.lines() if STACK_NAME_PATTERN.match(line)]

    def inspect(self, stack_name: str) -> HealthVerdict:
        """Classify one stack from its current container states."""
        presence = self.runner.execute(compose.stack_presence_script(self.context, stack_name))
        state = presence.lines()[0] if presence.ok and presence.lines() else ''
        if state != 'present':
            reason = 'stack directory not found' if state == 'missing-dir' else (
                f"{self.context.definition_file} not found" if state == 'missing-definition'
                else f"could not inspect stack: {presence.first_error()}")
            return HealthVerdict(stack_name=stack_name,
                                 classification=HealthClassification.FAILED, reason=reason)

        total = len(self._service_names(stack_name))
        if total == 0:
            return HealthVerdict(stack_name=stack_name, classification=HealthClassification.FAILED,
                                 reason='no services defined')

        ps = self.runner.execute(
            compose.ps_script(self.context, stack_name, self.context.timeouts.health_command),
            env=self.context.secret_env,
        )
        if not ps.ok:
            return HealthVerdict(stack_name=stack_name, classification=HealthClassification.FAILED,
                                 total_containers=total,
                                 reason=f"could not query containers: {ps.first_error()}")

        rows = ps.lines()
        tally = tally_containers(rows)
        classification, reason = classify_counts(total, tally)
        return HealthVerdict(
            stack_name=stack_name,
            classification=classification,
            total_containers=total,
            tally=tally,
            reason=reason,
            log_lines=rows,
        )

    def classify(self, stacks: List[str], critical_stacks: Iterable[str] = (),
                 include_management: bool = False) -> FleetSummary:
        """Classify stacks in order, stopping early when a critical stack fails.

        Args:
            stacks: Stack names, in the order given by the caller
            critical_stacks: Stacks whose failure stops evaluation
            include_management: Check the management stack first, when one is configured

        Returns:
            FleetSummary including container counts over every stack
        """
        critical = set(critical_stacks)
        summary = FleetSummary()
        targets = self._targets(stacks, include_management)

        for index, (name, checker) in enumerate(targets):
            verdict = checker.inspect(name)
            summary.verdicts[name] = verdict
            extra = {'stack': name}

            if verdict.classification == HealthClassification.HEALTHY:
                self.logger.info(f"✅ {name}: healthy ({verdict.reason})", extra=extra)
                summary.healthy_stacks.append(name)
            elif verdict.classification == HealthClassification.DEGRADED:
                self.logger.warning(f"⚠️ {name}: degraded ({verdict.reason})", extra=extra)
                summary.degraded_stacks.append(name)
            else:
                self.logger.error(f"❌ {name}: failed ({verdict.reason})", extra=extra)
                summary.failed_stacks.append(name)

            if name in critical and verdict.classification != HealthClassification.HEALTHY:
                summary.flagged_critical_stacks.append(name)
                if verdict.classification == HealthClassification.FAILED:
                    self.logger.critical(
                        f"CRITICAL: critical stack {name} failed health check, stopping evaluation",
                        extra=extra,
                    )
                    summary.critical_failure_triggered = True
                    summary.skipped_stacks = [skipped for skipped, _ in targets[index + 1:]]
                    break

        for name, checker in targets:
            total, running = checker.count_containers([name])
            summary.total_containers += total
            summary.running_containers += running
        self.logger.info(
            f"Health summary: {len(summary.healthy_stacks)} healthy, "
            f"{len(summary.degraded_stacks)} degraded, {len(summary.failed_stacks)} failed, "
            f"{summary.running_containers}/{summary.total_containers} containers running "
            f"({summary.success_rate}%)"
        )
        return summary

    def _targets(self, stacks: List[str],
                 include_management: bool) -> List[Tuple[str, 'HealthClassifier']]:
        targets = [(name, self) for name in stacks]
        if include_management and self.context.management_root:
            context, name = self.context.management_stack()
            targets.insert(0, (name, HealthClassifier(self.runner, context)))
        return targets

    def count_containers(self, stacks: List[str]) -> Tuple[int, int]:
        """Total services and running services across every stack.

        Stacks whose queries fail contribute zero.
        """
        total = 0
        running = 0
        timeout = self.context.timeouts.health_command
        for name in stacks:
            total += len(self._service_names(name))
            result = self.runner.execute(
                compose.running_services_script(self.context, name, timeout),
                env=self.context.secret_env,
            )
            if result.ok:
                running += len(result.lines())
        return total, running
