"""Shared fixtures: a scripted in-memory stand-in for the SSH runner."""

import threading
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from fleetdeploy.remote.context import RemoteContext
from fleetdeploy.remote.runner import CommandResult, RemoteRunner


def ok(stdout: str = '') -> CommandResult:
    return CommandResult(stdout=stdout, stderr='', exit_code=0)


def fail(exit_code: int = 1, stderr: str = 'error') -> CommandResult:
    return CommandResult(stdout='', stderr=stderr, exit_code=exit_code)


@dataclass
class Call:
    script: str
    args: Tuple[str, ...]
    env: Dict[str, str]
    timeout: Optional[int]


class Rule:
    """Responds to scripts containing every fragment; the last response repeats."""

    def __init__(self, fragments: Sequence[str], responses: List):
        self.fragments = fragments
        self.responses = responses

    def matches(self, script: str) -> bool:
        return all(fragment in script for fragment in self.fragments)

    def next(self):
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


class FakeRunner(RemoteRunner):
    """RemoteRunner that answers from registered rules and records every call.

    Rules are checked in registration order; unmatched scripts succeed with
    empty output.
    """

    def __init__(self):
        self.rules: List[Rule] = []
        self.calls: List[Call] = []
        self._lock = threading.Lock()

    def on(self, *fragments: str, result=None, results=None) -> 'FakeRunner':
        responses = list(results) if results else [result if result is not None else ok()]
        self.rules.append(Rule(fragments, responses))
        return self

    def execute(self, script, args=(), env=None, timeout=None) -> CommandResult:
        with self._lock:
            self.calls.append(Call(script, tuple(args), dict(env or {}), timeout))
            response = ok()
            for rule in self.rules:
                if rule.matches(script):
                    response = rule.next()
                    break

        if isinstance(response, Exception):
            raise response
        return replace(response)

    def calls_matching(self, *fragments: str) -> List[Call]:
        with self._lock:
            return [call for call in self.calls if all(f in call.script for f in fragments)]


def script_stacks(runner: FakeRunner, present=(), missing_dir=(), missing_definition=()) -> None:
    """Register directory/definition presence answers for stacks."""
    for name in missing_dir:
        runner.on(f"[ ! -d /opt/compose/{name} ]", result=ok('missing-dir\n'))
    for name in missing_definition:
        runner.on(f"[ ! -d /opt/compose/{name} ]", result=ok('missing-definition\n'))
    for name in present:
        runner.on(f"[ ! -d /opt/compose/{name} ]", result=ok('present\n'))


def script_repository(
    runner: FakeRunner,
    disk=(),
    tree_dirs=(),
    tree_stacks=(),
    deleted=(),
    added=(),
    target_sha='b' * 40,
) -> None:
    """Register answers for the git commands run against the checkout."""
    runner.on('git fetch origin', result=ok())
    runner.on('git rev-parse', result=ok(target_sha + '\n'))
    runner.on('cat-file -e "$1^{commit}"', result=ok())
    runner.on('--diff-filter=D', result=ok(''.join(f"{p}\n" for p in deleted)))
    runner.on('--diff-filter=A', result=ok(''.join(f"{p}\n" for p in added)))
    runner.on('while IFS', result=ok(''.join(f"{d}\n" for d in tree_stacks)))
    runner.on('--name-only "$1"\n', result=ok(''.join(f"{d}\n" for d in tree_dirs)))
    runner.on('for dir in */', result=ok(''.join(f"{d}\n" for d in disk)))


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def context():
    return RemoteContext(host='deploy.example.net', user='deploy')


@pytest.fixture
def secret_context():
    return RemoteContext(
        host='deploy.example.net',
        user='deploy',
        secret_env={'OP_SERVICE_ACCOUNT_TOKEN': 'ops_secret'},
        secret_command_prefix='op run --env-file=/opt/compose/compose.env --',
    )
