"""YAML configuration parser for fleetdeploy."""

import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import ValidationError

from .models import FleetConfig

DEFAULT_CONFIG_FILE = "fleetdeploy.yaml"


class ConfigValidationError(Exception):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(self.message)

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  • {location}: {msg}")

        return "\n".join(error_lines)


class Config:
    """Configuration manager for fleetdeploy."""

    def __init__(self, config_path: str = DEFAULT_CONFIG_FILE):
        """Initialize configuration manager.

        Args:
            config_path: Path to fleetdeploy.yaml configuration file
        """
        self.config_path = Path(config_path)
        self.data: Dict = {}
        self.fleet: FleetConfig = FleetConfig()

    def load(self, required: bool = False) -> "Config":
        """Load and validate configuration from YAML file.

        A missing file yields defaults unless ``required`` is set, so command
        line options alone can drive a run.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If configuration is invalid
            FileNotFoundError: If a required configuration file doesn't exist
        """
        if not self.config_path.exists():
            if required:
                raise FileNotFoundError(f"Configuration file not found: {self.config_path}")
            self.data = {}
            self.fleet = FleetConfig()
            return self

        try:
            with open(self.config_path, "r") as f:
                self.data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        if not isinstance(self.data, dict):
            raise ConfigValidationError(
                "Configuration validation failed with 1 error(s)",
                [{"loc": ["<root>"], "msg": "Top level must be a mapping"}],
            )

        validation_errors = self.validate()
        if validation_errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(validation_errors)} error(s)",
                validation_errors,
            )

        self.fleet = FleetConfig(**self.data)
        return self

    def validate(self) -> List[Dict]:
        """Validate configuration against schema.

        Returns:
            List of validation errors (empty if valid)
        """
        try:
            FleetConfig(**self.data)
        except ValidationError as e:
            return [{"loc": list(error["loc"]), "msg": error["msg"]} for error in e.errors()]
        return []

    def secret_env(self) -> Dict[str, str]:
        """Secret values forwarded to remote compose commands."""
        name = self.fleet.secrets.token_env_var
        if name and os.environ.get(name):
            return {name: os.environ[name]}
        return {}
