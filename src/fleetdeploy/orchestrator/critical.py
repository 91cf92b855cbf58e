"""Critical-stack detection from compose service labels."""

from typing import Any, Dict, Iterable, List

import yaml

from fleetdeploy.remote import compose
from fleetdeploy.remote.context import RemoteContext
from fleetdeploy.remote.runner import RemoteRunner
from fleetdeploy.utils.logging import get_logger

logger = get_logger(__name__)

TIER_LABEL = 'com.compose.tier'
CRITICAL_LABEL = 'com.compose.critical'


def _labels(service: Dict[str, Any]) -> Dict[str, str]:
    labels = service.get('labels') or {}
    if isinstance(labels, list):
        parsed = {}
        for item in labels:
            key, _, value = str(item).partition('=')
            parsed[key.strip()] = value.strip()
        return parsed
    return {str(key): str(value) for key, value in labels.items()}


def is_critical_definition(definition: Dict[str, Any]) -> bool:
    """True when any service is labelled infrastructure tier or critical."""
    services = (definition or {}).get('services') or {}
    for service in services.values():
        if not isinstance(service, dict):
            continue
        labels = _labels(service)
        if labels.get(TIER_LABEL, '').lower() == 'infrastructure':
            return True
        if labels.get(CRITICAL_LABEL, '').lower() == 'true':
            return True
    return False


class CriticalStackDetector:
    """Reads each stack's definition on the remote host and checks its labels."""

    def __init__(self, runner: RemoteRunner, context: RemoteContext):
        self.runner = runner
        self.context = context

    def detect(self, stacks: Iterable[str]) -> List[str]:
        """Return the critical stacks among the given ones, in input order."""
        critical = []
        for name in stacks:
            result = self.runner.execute(compose.read_definition_script(self.context, name))
            if not result.ok:
                logger.warning(f"Skipping {name}: {self.context.definition_file} not readable",
                               extra={'stack': name})
                continue
            try:
                definition = yaml.safe_load(result.stdout)
            except yaml.YAMLError as e:
                logger.warning(f"Skipping {name}: invalid YAML ({e})", extra={'stack': name})
                continue
            if isinstance(definition, dict) and is_critical_definition(definition):
                logger.info(f"Stack {name} is marked critical", extra={'stack': name})
                critical.append(name)
        return critical
