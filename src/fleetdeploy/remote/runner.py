"""Remote script execution over SSH."""

import shlex
import socket
from abc import ABC, abstractmethod
from dataclasses import dataclass
from io import StringIO
from typing import Dict, List, Optional, Sequence

from fabric import Connection
from invoke.exceptions import CommandTimedOut
from paramiko.ssh_exception import SSHException

from fleetdeploy.remote.context import RemoteContext
from fleetdeploy.utils.logging import get_logger
from fleetdeploy.utils.retry import (
    RetryStrategy,
    CONNECTION_FAILURE_EXIT_CODE,
    is_connection_failure,
)

logger = get_logger(__name__)

# Exit status used by coreutils `timeout` when the command overran
TIMEOUT_EXIT_CODE = 124


@dataclass
class CommandResult:
    """Captured output of one remote script."""
    stdout: str
    stderr: str
    exit_code: int
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def timed_out(self) -> bool:
        return self.exit_code == TIMEOUT_EXIT_CODE

    def lines(self) -> List[str]:
        """Non-empty stdout lines, stripped."""
        return [line.strip() for line in self.stdout.splitlines() if line.strip()]

    def first_error(self) -> str:
        """First useful line of stderr (or stdout) for error messages."""
        for stream in (self.stderr, self.stdout):
            for line in stream.splitlines():
                if line.strip():
                    return line.strip()
        return f"exit status {self.exit_code}"


class RemoteRunner(ABC):
    """Runs a shell script on the remote host and reports its outcome."""

    @abstractmethod
    def execute(
        self,
        script: str,
        args: Sequence[str] = (),
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None
    ) -> CommandResult:
        """Execute a script remotely.

        Args:
            script: Shell script body, fed to bash on stdin
            args: Positional arguments available to the script as $1..$N
            env: Extra environment variables for the script
            timeout: Local safety timeout in seconds

        Returns:
            CommandResult; connection failures are reported as exit status 255
        """


class FabricRemoteRunner(RemoteRunner):
    """RemoteRunner backed by a Fabric SSH connection."""

    def __init__(self, context: RemoteContext):
        self.context = context

    def _get_connection(self) -> Connection:
        connect_kwargs = {
            "allow_agent": True,
            "look_for_keys": True,
        }
        if self.context.key_filename:
            connect_kwargs["key_filename"] = self.context.key_filename
        return Connection(
            host=self.context.host,
            user=self.context.user,
            port=self.context.port,
            connect_timeout=self.context.connect_timeout,
            connect_kwargs=connect_kwargs,
        )

    def execute(
        self,
        script: str,
        args: Sequence[str] = (),
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None
    ) -> CommandResult:
        command = "bash -s --"
        if args:
            command += " " + " ".join(shlex.quote(str(arg)) for arg in args)

        # A connection per call keeps worker threads off a shared transport
        try:
            with self._get_connection() as conn:
                result = conn.run(
                    command,
                    in_stream=StringIO(script),
                    env=env or {},
                    hide=True,
                    warn=True,
                    timeout=timeout,
                )
        except CommandTimedOut as e:
            logger.warning(f"Remote command timed out after {e.timeout}s on {self.context.host}")
            return CommandResult(
                stdout=e.result.stdout if e.result else '',
                stderr=f"timed out after {e.timeout}s",
                exit_code=TIMEOUT_EXIT_CODE,
            )
        except (SSHException, socket.error, EOFError) as e:
            logger.warning(f"Connection to {self.context.host} failed: {e}")
            return CommandResult(stdout='', stderr=str(e), exit_code=CONNECTION_FAILURE_EXIT_CODE)

        return CommandResult(stdout=result.stdout, stderr=result.stderr, exit_code=result.exited)


class RetryingRunner(RemoteRunner):
    """Wraps a runner so connection-class failures are retried with backoff."""

    def __init__(self, runner: RemoteRunner, strategy: Optional[RetryStrategy] = None):
        self.runner = runner
        self.strategy = strategy or RetryStrategy()

    def execute(
        self,
        script: str,
        args: Sequence[str] = (),
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None
    ) -> CommandResult:
        outcome = self.strategy.execute(
            lambda: self.runner.execute(script, args=args, env=env, timeout=timeout),
            is_retryable=is_connection_failure,
            description='remote command',
        )
        result = outcome.value
        result.attempts = outcome.attempts
        return result
