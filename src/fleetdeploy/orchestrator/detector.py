"""Change detection: which stacks were removed, added or kept between revisions.

Three independent methods each produce a removed set and a new set:

* ``revision_diff`` - definition files deleted/added in ``git diff``
* ``tree`` - stacks on disk versus directories in the target tree
* ``input`` - caller-supplied deleted files and requested stacks versus disk

Their findings are combined by set union. If any method fails the whole
detection fails; a partial answer could tear down a live stack.
"""

import re
from typing import Callable, Dict, Iterable, List, Optional

from fleetdeploy.orchestrator.cleaner import StackCleaner
from fleetdeploy.orchestrator.models import (
    CleanupResult,
    DetectionResult,
    UNKNOWN_REVISION,
    validate_stack_name,
)
from fleetdeploy.remote.repository import ADDED, DELETED, RemoteRepository
from fleetdeploy.utils.errors import (
    CleanupError,
    DeploymentError,
    DetectionError,
    ErrorContext,
)
from fleetdeploy.utils.logging import get_logger

logger = get_logger(__name__)

MethodFindings = Dict[str, List[str]]


def stack_names_from_paths(paths: Iterable[str], definition_file: str = 'compose.yaml') -> List[str]:
    """Extract stack names from repository paths of top-level definition files.

    Only ``<stack>/<definition_file>`` paths count; nested files and other
    files in a stack directory are ignored.
    """
    pattern = re.compile(rf'^([^/]+)/{re.escape(definition_file)}$')
    names = []
    for path in paths:
        match = pattern.match(path.strip())
        if match:
            names.append(match.group(1))
    return names


def removed_by_tree(disk_stacks: Iterable[str], tree_directories: Iterable[str]) -> List[str]:
    """Stacks present on disk whose directory no longer exists in the target tree."""
    in_tree = set(tree_directories)
    return [name for name in disk_stacks if name not in in_tree]


def new_by_tree(tree_stacks: Iterable[str], disk_stacks: Iterable[str]) -> List[str]:
    """Stacks defined in the target tree that are not yet on disk."""
    on_disk = set(disk_stacks)
    return [name for name in tree_stacks if name not in on_disk]


def new_by_input(requested: Iterable[str], disk_stacks: Iterable[str]) -> List[str]:
    on_disk = set(disk_stacks)
    return [name for name in requested if name not in on_disk]


def merge_stack_names(*groups: Iterable[str]) -> List[str]:
    """Union of several name lists: deduplicated, sorted, invalid names dropped."""
    merged = set()
    for group in groups:
        for name in group:
            name = name.strip()
            if not name:
                continue
            if not validate_stack_name(name):
                logger.warning(f"Ignoring invalid stack name: {name!r}")
                continue
            merged.add(name)
    return sorted(merged)


class ChangeDetector:
    """Detects removed, new and existing stacks and tears down removed ones."""

    def __init__(self, repository: RemoteRepository, cleaner: StackCleaner):
        """Initialize change detector.

        Args:
            repository: Remote git checkout holding the stack definitions
            cleaner: Used to tear down removed stacks
        """
        self.repository = repository
        self.cleaner = cleaner
        self.definition_file = repository.context.definition_file
        self.logger = get_logger(__name__)

    def detect(
        self,
        previous_revision: str,
        target_revision: str,
        requested_stacks: List[str],
        deleted_files: Optional[List[str]] = None,
        cleanup: bool = True
    ) -> DetectionResult:
        """Classify stacks as removed, new or existing.

        Args:
            previous_revision: Currently deployed revision, or "unknown"
            target_revision: Revision being deployed
            requested_stacks: Stacks the pipeline asked to deploy
            deleted_files: Repository paths the pipeline saw deleted
            cleanup: Tear down removed stacks after detection

        Returns:
            DetectionResult

        Raises:
            DetectionError: If any detection method failed
            CleanupError: If a removed stack could not be torn down
        """
        requested = []
        for name in (name.strip() for name in requested_stacks):
            if not name:
                continue
            if not validate_stack_name(name):
                self.logger.warning(f"Ignoring invalid requested stack name: {name!r}")
                continue
            requested.append(name)

        if previous_revision == UNKNOWN_REVISION:
            self.logger.info("First deployment: every requested stack is new")
            return DetectionResult(
                removed=[],
                new=list(requested),
                existing=[],
                first_deployment=True,
            )

        try:
            self.repository.fetch(target_revision)
            target = self.repository.resolve(target_revision)
        except DeploymentError as e:
            raise DetectionError(
                f"Could not fetch target revision {target_revision}",
                failed_methods=['fetch'],
                context=ErrorContext(operation='detect', revision=target_revision),
                cause=e,
            )

        methods: Dict[str, Callable[[], MethodFindings]] = {
            'revision_diff': lambda: self._detect_by_revision_diff(previous_revision, target),
            'tree': lambda: self._detect_by_tree(target),
            'input': lambda: self._detect_by_input(requested, deleted_files or []),
        }

        findings: Dict[str, MethodFindings] = {}
        failed: Dict[str, str] = {}
        for method, run in methods.items():
            try:
                findings[method] = run()
            except DeploymentError as e:
                self.logger.error(f"Detection method {method} failed: {e.message}")
                failed[method] = e.message
            else:
                self.logger.debug(f"Detection method {method} found {findings[method]}")

        if failed:
            details = '; '.join(f"{method}: {reason}" for method, reason in failed.items())
            raise DetectionError(
                f"Change detection failed ({details})",
                failed_methods=list(failed),
                context=ErrorContext(
                    operation='detect',
                    revision=target,
                    additional_info={'previous_revision': previous_revision},
                ),
            )

        removed = merge_stack_names(*(f['removed'] for f in findings.values()))
        new = merge_stack_names(*(f['new'] for f in findings.values()))
        new_set = set(new)
        existing = [name for name in requested if name not in new_set]

        overlap = sorted(set(removed) & new_set)
        if overlap:
            self.logger.warning(f"Stacks both removed and new (rename?): {overlap}")

        result = DetectionResult(
            removed=removed,
            new=new,
            existing=existing,
            method_results=findings,
        )
        self.logger.info(
            f"Detected {len(removed)} removed, {len(new)} new, {len(existing)} existing stacks"
        )

        if cleanup:
            self.cleanup_removed(result)
        return result

    def cleanup_removed(self, result: DetectionResult) -> List[CleanupResult]:
        """Tear down removed stacks in order, stopping at the first failure.

        Raises:
            CleanupError: If a stack could not be torn down
        """
        results = []
        for name in result.removed:
            cleanup = self.cleaner.cleanup(name)
            results.append(cleanup)
            if not cleanup.succeeded:
                raise CleanupError(
                    f"Failed to clean up removed stack {name}: {cleanup.message}",
                    context=ErrorContext(
                        stack_name=name,
                        operation='cleanup',
                        exit_code=cleanup.exit_code,
                    ),
                )
        return results

    def _detect_by_revision_diff(self, previous: str, target: str) -> MethodFindings:
        for revision in (previous, target):
            if not self.repository.revision_exists(revision):
                raise DetectionError(f"Revision {revision} not found in remote checkout")

        deleted = self.repository.diff_paths(previous, target, DELETED)
        added = self.repository.diff_paths(previous, target, ADDED)
        return {
            'removed': stack_names_from_paths(deleted, self.definition_file),
            'new': stack_names_from_paths(added, self.definition_file),
        }

    def _detect_by_tree(self, target: str) -> MethodFindings:
        disk = self.repository.disk_stacks()
        return {
            'removed': removed_by_tree(disk, self.repository.tree_directories(target)),
            'new': new_by_tree(self.repository.tree_stacks(target), disk),
        }

    def _detect_by_input(self, requested: List[str], deleted_files: List[str]) -> MethodFindings:
        disk = self.repository.disk_stacks()
        return {
            'removed': stack_names_from_paths(deleted_files, self.definition_file),
            'new': new_by_input(requested, disk),
        }
