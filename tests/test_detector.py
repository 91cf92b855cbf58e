"""Tests for change detection and removed-stack cleanup."""

import pytest

from fleetdeploy.orchestrator.cleaner import StackCleaner
from fleetdeploy.orchestrator.detector import (
    ChangeDetector,
    merge_stack_names,
    new_by_input,
    new_by_tree,
    removed_by_tree,
    stack_names_from_paths,
)
from fleetdeploy.orchestrator.models import DetectionResult, UNKNOWN_REVISION
from fleetdeploy.remote.repository import RemoteRepository
from fleetdeploy.utils.errors import CleanupError, DetectionError

from conftest import fail, script_repository, script_stacks

PREVIOUS = 'a' * 40
TARGET = 'b' * 40


def _detector(runner, context):
    return ChangeDetector(RemoteRepository(runner, context), StackCleaner(runner, context))


class TestPureHeuristics:
    def test_stack_names_from_paths(self):
        paths = [
            'web/compose.yaml',
            'web/README.md',
            'nested/dir/compose.yaml',
            'compose.yaml',
            'db/compose.yml',
            ' api/compose.yaml ',
        ]
        assert stack_names_from_paths(paths) == ['web', 'api']

    def test_custom_definition_file(self):
        assert stack_names_from_paths(['web/compose.yml'], 'compose.yml') == ['web']

    def test_removed_by_tree(self):
        assert removed_by_tree(['web', 'old', 'db'], ['web', 'db', 'docs']) == ['old']

    def test_new_by_tree(self):
        assert new_by_tree(['web', 'api'], ['web']) == ['api']

    def test_new_by_input_keeps_order(self):
        assert new_by_input(['zeta', 'web', 'alpha'], ['web']) == ['zeta', 'alpha']

    def test_merge_is_sorted_union(self):
        assert merge_stack_names(['b', 'a'], ['a', 'c'], []) == ['a', 'b', 'c']

    def test_merge_drops_invalid_names(self):
        assert merge_stack_names(['ok-1', 'bad name', '../etc', '', 'x_y']) == ['ok-1', 'x_y']


class TestChangeDetector:
    def test_first_deployment(self, runner, context):
        result = _detector(runner, context).detect(UNKNOWN_REVISION, TARGET, ['a', 'b'])

        assert result.removed == []
        assert result.new == ['a', 'b']
        assert result.existing == []
        assert result.first_deployment
        assert runner.calls == []

    def test_first_deployment_drops_invalid_names(self, runner, context):
        result = _detector(runner, context).detect(UNKNOWN_REVISION, TARGET, ['web', '../etc', ' '])

        assert result.new == ['web']
        assert result.existing == []

    def test_invalid_requested_names_are_not_existing(self, runner, context):
        script_repository(runner, disk=['web'], tree_dirs=['web'], tree_stacks=['web'])

        result = _detector(runner, context).detect(
            PREVIOUS, TARGET, ['web', '../etc', 'bad name'], cleanup=False
        )

        assert result.new == []
        assert result.existing == ['web']
        assert result.method_results['input']['new'] == []

    def test_detects_removed_new_and_existing(self, runner, context):
        script_stacks(runner, present=['old'])
        script_repository(
            runner,
            disk=['web', 'db', 'old'],
            tree_dirs=['web', 'db', 'api'],
            tree_stacks=['web', 'db', 'api'],
            deleted=['old/compose.yaml'],
            added=['api/compose.yaml', 'api/README.md'],
        )

        result = _detector(runner, context).detect(PREVIOUS, TARGET, ['web', 'api'])

        assert result.removed == ['old']
        assert result.new == ['api']
        assert result.existing == ['web']
        downs = runner.calls_matching('cd /opt/compose/old', ' down')
        assert len(downs) == 1

    def test_union_of_methods(self, runner, context):
        script_repository(
            runner,
            disk=['web', 'x'],
            tree_dirs=['web'],
            tree_stacks=['web'],
            deleted=['y/compose.yaml'],
        )

        result = _detector(runner, context).detect(
            PREVIOUS, TARGET, ['web'], deleted_files=['z/compose.yaml'], cleanup=False
        )

        assert result.removed == ['x', 'y', 'z']
        assert result.method_results['tree']['removed'] == ['x']
        assert result.method_results['revision_diff']['removed'] == ['y']
        assert result.method_results['input']['removed'] == ['z']

    def test_existing_excludes_new_in_caller_order(self, runner, context):
        script_repository(runner, disk=['web', 'db'], tree_dirs=['web', 'db', 'api'],
                          tree_stacks=['web', 'db', 'api'])

        result = _detector(runner, context).detect(
            PREVIOUS, TARGET, ['web', 'api', 'db'], cleanup=False
        )

        assert result.new == ['api']
        assert result.existing == ['web', 'db']

    def test_method_failure_aborts_without_cleanup(self, runner, context):
        runner.on('--diff-filter=D', result=fail(128, 'fatal: bad revision'))
        script_stacks(runner, present=['old'])
        script_repository(runner, disk=['web', 'old'], tree_dirs=['web'], tree_stacks=['web'])

        with pytest.raises(DetectionError) as exc_info:
            _detector(runner, context).detect(PREVIOUS, TARGET, ['web'])

        assert exc_info.value.failed_methods == ['revision_diff']
        assert runner.calls_matching(' down') == []

    def test_missing_revision_fails_detection(self, runner, context):
        runner.on('cat-file -e "$1^{commit}"', result=fail(1, ''))
        script_repository(runner, disk=['web'], tree_dirs=['web'], tree_stacks=['web'])

        with pytest.raises(DetectionError) as exc_info:
            _detector(runner, context).detect(PREVIOUS, TARGET, ['web'])

        assert 'revision_diff' in exc_info.value.failed_methods

    def test_fetch_failure_fails_detection(self, runner, context):
        runner.on('git fetch origin', result=fail(1, 'could not read from remote'))

        with pytest.raises(DetectionError) as exc_info:
            _detector(runner, context).detect(PREVIOUS, TARGET, ['web'])

        assert exc_info.value.failed_methods == ['fetch']

    def test_disk_listing_failure_fails_tree_and_input(self, runner, context):
        runner.on('for dir in */', result=fail(1, 'cd: no such directory'))
        script_repository(runner)

        with pytest.raises(DetectionError) as exc_info:
            _detector(runner, context).detect(PREVIOUS, TARGET, ['web'])

        assert exc_info.value.failed_methods == ['tree', 'input']

    def test_idempotent(self, runner, context):
        script_repository(runner, disk=['web', 'old'], tree_dirs=['web', 'api'],
                          tree_stacks=['web', 'api'], deleted=['old/compose.yaml'])
        detector = _detector(runner, context)

        first = detector.detect(PREVIOUS, TARGET, ['web', 'api'], cleanup=False)
        second = detector.detect(PREVIOUS, TARGET, ['web', 'api'], cleanup=False)

        assert (first.removed, first.new, first.existing) == \
            (second.removed, second.new, second.existing)

    def test_rename_is_both_removed_and_new(self, runner, context):
        script_repository(runner, disk=['web'], tree_dirs=['web'], tree_stacks=['web'],
                          deleted=['web/compose.yaml'], added=['web/compose.yaml'])

        result = _detector(runner, context).detect(PREVIOUS, TARGET, ['web'], cleanup=False)

        assert result.removed == ['web']
        assert result.new == ['web']
        assert result.existing == []


class TestCleanupRemoved:
    def test_stops_at_first_failure(self, runner, context):
        script_stacks(runner, present=['a', 'b'])
        runner.on('cd /opt/compose/a', ' down', result=fail(1, 'network in use'))

        with pytest.raises(CleanupError) as exc_info:
            _detector(runner, context).cleanup_removed(DetectionResult(removed=['a', 'b']))

        assert exc_info.value.context.stack_name == 'a'
        assert runner.calls_matching('/opt/compose/b') == []

    def test_already_removed_stacks_succeed(self, runner, context):
        script_stacks(runner, missing_dir=['a'], missing_definition=['b'])

        results = _detector(runner, context).cleanup_removed(DetectionResult(removed=['a', 'b']))

        assert [r.already_removed for r in results] == [True, True]
        assert runner.calls_matching(' down') == []
