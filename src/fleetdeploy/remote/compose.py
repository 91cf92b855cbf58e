"""Docker Compose command scripts run inside a stack directory."""

import shlex

from fleetdeploy.remote.context import RemoteContext

# Tab-separated tuple consumed by the health classifier
PS_FORMAT = '{{.Service}}\t{{.State}}\t{{.Health}}'


def _in_stack(context: RemoteContext, stack_name: str, command: str) -> str:
    stack_dir = shlex.quote(context.stack_dir(stack_name))
    return f"cd {stack_dir} || exit 1\n{command}\n"


def _compose(context: RemoteContext, subcommand: str) -> str:
    definition = shlex.quote(f"./{context.definition_file}")
    return f"docker compose -f {definition} {subcommand}"


def _bounded(seconds: int, command: str) -> str:
    return f"timeout {int(seconds)} {command}"


def stack_presence_script(context: RemoteContext, stack_name: str) -> str:
    """Prints 'missing-dir', 'missing-definition' or 'present'."""
    stack_dir = shlex.quote(context.stack_dir(stack_name))
    definition = shlex.quote(context.definition_path(stack_name))
    return (
        f"if [ ! -d {stack_dir} ]; then echo missing-dir\n"
        f"elif [ ! -f {definition} ]; then echo missing-definition\n"
        f"else echo present; fi\n"
    )


def config_services_script(context: RemoteContext, stack_name: str, timeout: int) -> str:
    """Lists service names; also proves the secret environment resolves."""
    command = _bounded(timeout, context.wrap(_compose(context, 'config --services')))
    return _in_stack(context, stack_name, command)


def config_quiet_script(context: RemoteContext, stack_name: str, timeout: int) -> str:
    command = _bounded(timeout, context.wrap(_compose(context, 'config --quiet')))
    return _in_stack(context, stack_name, command)


def pull_script(context: RemoteContext, stack_name: str, timeout: int) -> str:
    command = _bounded(timeout, context.wrap(_compose(context, 'pull')))
    return _in_stack(context, stack_name, command)


def up_script(context: RemoteContext, stack_name: str, timeout: int, compose_args: str = '') -> str:
    subcommand = 'up -d --remove-orphans'
    if compose_args:
        subcommand = f"{subcommand} {compose_args}"
    command = _bounded(timeout, context.wrap(_compose(context, subcommand)))
    return _in_stack(context, stack_name, command)


def down_script(context: RemoteContext, stack_name: str, timeout: int) -> str:
    command = _bounded(timeout, context.wrap(_compose(context, 'down')))
    return _in_stack(context, stack_name, command)


def ps_script(context: RemoteContext, stack_name: str, timeout: int) -> str:
    fmt = shlex.quote(PS_FORMAT)
    command = _bounded(timeout, context.wrap(_compose(context, f"ps --format {fmt}")))
    return _in_stack(context, stack_name, command)


def running_services_script(context: RemoteContext, stack_name: str, timeout: int) -> str:
    command = _bounded(
        timeout,
        context.wrap(_compose(context, 'ps --services --filter status=running')),
    )
    return _in_stack(context, stack_name, command)


def read_definition_script(context: RemoteContext, stack_name: str) -> str:
    definition = shlex.quote(context.definition_path(stack_name))
    return f"cat {definition}\n"
