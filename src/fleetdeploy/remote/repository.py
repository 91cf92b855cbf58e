"""Git operations against the stack checkout on the remote host."""

import re
import shlex
from typing import List, Optional

from fleetdeploy.remote.context import RemoteContext
from fleetdeploy.remote.runner import CommandResult, RemoteRunner
from fleetdeploy.utils.errors import ErrorContext, ExecutionError, RemoteConnectionError
from fleetdeploy.utils.logging import get_logger
from fleetdeploy.utils.retry import CONNECTION_FAILURE_EXIT_CODE

logger = get_logger(__name__)

SHA_PATTERN = re.compile(r'^[a-fA-F0-9]{40}$')

# git diff --diff-filter letters
DELETED = 'D'
ADDED = 'A'


def validate_sha(value: str) -> bool:
    """Check that a value is a full 40-character commit SHA."""
    return bool(SHA_PATTERN.match(value or ''))


class RemoteRepository:
    """Read and move the git checkout that holds every stack definition."""

    def __init__(self, runner: RemoteRunner, context: RemoteContext):
        self.runner = runner
        self.context = context
        self.logger = get_logger(__name__)

    def _run(self, body: str, description: str, args=(), timeout: Optional[int] = None,
             revision: Optional[str] = None) -> CommandResult:
        root = shlex.quote(self.context.compose_root)
        script = f"cd {root} || exit 1\n{body}\n"
        result = self.runner.execute(script, args=args, timeout=timeout)
        if result.ok:
            return result

        error_context = ErrorContext(
            operation=description,
            host=self.context.host,
            revision=revision,
            exit_code=result.exit_code,
        )
        message = f"{description} failed: {result.first_error()}"
        if result.exit_code == CONNECTION_FAILURE_EXIT_CODE:
            raise RemoteConnectionError(message, context=error_context)
        raise ExecutionError(message, context=error_context)

    def fetch(self, ref: str) -> None:
        """Fetch a ref from origin, falling back to a plain fetch."""
        seconds = self.context.timeouts.git_fetch
        self._run(
            f'timeout {seconds} git fetch origin "$1" || timeout {seconds} git fetch',
            'git fetch', args=(ref,), revision=ref,
        )

    def resolve(self, ref: str) -> str:
        """Resolve a ref to a commit SHA, keeping the ref itself if unresolvable."""
        result = self._run(
            'git rev-parse --verify --quiet "$1^{commit}" || echo "$1"',
            'git rev-parse', args=(ref,), revision=ref,
        )
        lines = result.lines()
        return lines[0] if lines else ref

    def revision_exists(self, revision: str) -> bool:
        root = shlex.quote(self.context.compose_root)
        script = f'cd {root} || exit 1\ngit cat-file -e "$1^{{commit}}"\n'
        result = self.runner.execute(script, args=(revision,))
        if result.exit_code == CONNECTION_FAILURE_EXIT_CODE:
            raise RemoteConnectionError(
                f"Could not check revision {revision}: {result.first_error()}",
                context=ErrorContext(host=self.context.host, revision=revision),
            )
        return result.ok

    def diff_paths(self, previous: str, target: str, diff_filter: str) -> List[str]:
        """Paths added or deleted between two revisions."""
        result = self._run(
            f'git diff --diff-filter={diff_filter} --name-only "$1" "$2"',
            'git diff', args=(previous, target), revision=target,
        )
        return result.lines()

    def tree_directories(self, revision: str) -> List[str]:
        """Top-level directory names in a revision's tree."""
        result = self._run(
            'git ls-tree -d --name-only "$1"',
            'git ls-tree', args=(revision,), revision=revision,
        )
        return result.lines()

    def tree_stacks(self, revision: str) -> List[str]:
        """Top-level directories of a revision that contain a stack definition."""
        result = self._run(
            'git ls-tree -d --name-only "$1" | while IFS= read -r dir; do\n'
            '  git cat-file -e "$1:$dir/$2" 2>/dev/null && echo "$dir"\n'
            'done\ntrue',
            'git ls-tree', args=(revision, self.context.definition_file), revision=revision,
        )
        return result.lines()

    def disk_stacks(self) -> List[str]:
        """Non-hidden directories on disk that contain a stack definition."""
        result = self._run(
            'for dir in */; do\n'
            '  dir="${dir%/}"\n'
            '  [ -f "$dir/$1" ] && echo "$dir"\n'
            'done\ntrue',
            'list stacks on disk', args=(self.context.definition_file,),
        )
        return result.lines()

    def checkout(self, revision: str) -> None:
        seconds = self.context.timeouts.git_checkout
        self._run(
            f'timeout {seconds} git checkout --force --quiet "$1"',
            'git checkout', args=(revision,), revision=revision,
        )

    def update_to(self, revision: str) -> str:
        """Fetch and check out a revision; returns the resolved SHA."""
        self.logger.info(f"Updating checkout to {revision}")
        self.fetch(revision)
        resolved = self.resolve(revision)
        self.checkout(resolved)
        return resolved
