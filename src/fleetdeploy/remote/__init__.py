"""Remote host access: SSH runner, git checkout and compose commands."""

from fleetdeploy.remote.context import RemoteContext, StepTimeouts
from fleetdeploy.remote.runner import (
    CommandResult,
    RemoteRunner,
    FabricRemoteRunner,
    RetryingRunner,
    TIMEOUT_EXIT_CODE,
)
from fleetdeploy.remote.repository import RemoteRepository, validate_sha

__all__ = [
    'RemoteContext',
    'StepTimeouts',
    'CommandResult',
    'RemoteRunner',
    'FabricRemoteRunner',
    'RetryingRunner',
    'TIMEOUT_EXIT_CODE',
    'RemoteRepository',
    'validate_sha',
]
