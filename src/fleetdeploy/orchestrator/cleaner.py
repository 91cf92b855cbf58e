"""Teardown of stacks that were removed from the repository."""

from fleetdeploy.orchestrator.models import CleanupResult, validate_stack_name
from fleetdeploy.remote import compose
from fleetdeploy.remote.context import RemoteContext
from fleetdeploy.remote.runner import RemoteRunner
from fleetdeploy.utils.errors import ConfigurationError, ErrorContext
from fleetdeploy.utils.logging import get_logger

logger = get_logger(__name__)


class StackCleaner:
    """Stops a stack's containers; a stack that is already gone is a success."""

    def __init__(self, runner: RemoteRunner, context: RemoteContext):
        self.runner = runner
        self.context = context

    def cleanup(self, stack_name: str) -> CleanupResult:
        """Tear down one stack.

        Args:
            stack_name: Name of the removed stack

        Returns:
            CleanupResult

        Raises:
            ConfigurationError: If the stack name is not valid
        """
        if not validate_stack_name(stack_name):
            raise ConfigurationError(
                f"Invalid stack name: {stack_name!r}",
                context=ErrorContext(stack_name=stack_name, operation='cleanup'),
            )

        presence = self.runner.execute(compose.stack_presence_script(self.context, stack_name))
        if not presence.ok:
            return CleanupResult(
                stack_name=stack_name,
                succeeded=False,
                exit_code=presence.exit_code,
                message=presence.first_error(),
            )

        state = presence.lines()[0] if presence.lines() else ''
        if state == 'missing-dir':
            logger.info(f"Stack directory for {stack_name} not found, already removed",
                        extra={'stack': stack_name})
            return CleanupResult(stack_name=stack_name, succeeded=True, already_removed=True,
                                 message='directory not found')
        if state == 'missing-definition':
            logger.info(f"No {self.context.definition_file} for {stack_name}, already removed",
                        extra={'stack': stack_name})
            return CleanupResult(stack_name=stack_name, succeeded=True, already_removed=True,
                                 message='definition not found')

        logger.info(f"🧹 Cleaning up removed stack {stack_name}...", extra={'stack': stack_name})
        timeout = self.context.timeouts.cleanup
        result = self.runner.execute(
            compose.down_script(self.context, stack_name, timeout),
            env=self.context.secret_env,
        )
        if result.ok:
            logger.info(f"✅ {stack_name} cleaned up", extra={'stack': stack_name})
            return CleanupResult(stack_name=stack_name, succeeded=True)

        message = (f"timed out after {timeout}s" if result.timed_out
                   else result.first_error())
        logger.error(f"❌ Failed to clean up {stack_name}: {message}", extra={'stack': stack_name})
        return CleanupResult(
            stack_name=stack_name,
            succeeded=False,
            exit_code=result.exit_code,
            message=message,
        )
