"""Per-invocation remote context shared by every component."""

import posixpath
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class StepTimeouts:
    """Per-step timeouts in seconds, enforced on the remote host."""
    git_fetch: int = 60
    git_checkout: int = 30
    image_pull: int = 300
    service_startup: int = 120
    validation_env: int = 30
    validation_syntax: int = 30
    health_command: int = 15
    cleanup: int = 120


@dataclass(frozen=True)
class RemoteContext:
    """Where stacks live on the remote host and how commands reach them.

    Secret values are carried here and forwarded through the runner's
    environment; they never appear in a logged command line.
    """
    host: str
    user: str = 'root'
    port: int = 22
    compose_root: str = '/opt/compose'
    definition_file: str = 'compose.yaml'
    secret_env: Dict[str, str] = field(default_factory=dict, repr=False)
    secret_command_prefix: str = ''
    timeouts: StepTimeouts = field(default_factory=StepTimeouts)
    connect_timeout: int = 30
    key_filename: Optional[str] = None
    # Directory of the stack-management UI stack (e.g. /opt/dockge), outside compose_root
    management_root: Optional[str] = None

    def stack_dir(self, stack_name: str) -> str:
        return posixpath.join(self.compose_root, stack_name)

    def definition_path(self, stack_name: str) -> str:
        return posixpath.join(self.compose_root, stack_name, self.definition_file)

    def management_stack(self) -> Tuple["RemoteContext", str]:
        """Context and name that address the management stack like any other stack."""
        if not self.management_root:
            raise ValueError("No management stack configured")
        parent, name = posixpath.split(self.management_root.rstrip('/'))
        return replace(self, compose_root=parent or '/', management_root=None), name

    def wrap(self, command: str) -> str:
        """Prefix a command with the secret-injecting wrapper, if any."""
        if self.secret_command_prefix:
            return f"{self.secret_command_prefix} {command}"
        return command
