"""Pydantic models for configuration schema."""

import re
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

_STACK_NAME = re.compile(r'^[a-zA-Z0-9_-]+$')


class SSHConfig(BaseModel):
    """SSH connection to the deployment host."""

    host: Optional[str] = Field(None, description="Deployment host name or address")
    user: str = "root"
    port: int = Field(22, ge=1, le=65535)
    connect_timeout: int = Field(30, ge=1)
    key_filename: Optional[str] = Field(None, description="Private key; agent and default keys are also tried")


class ComposeConfig(BaseModel):
    """Layout of stacks on the remote host."""

    root: str = Field("/opt/compose", description="Git checkout holding one directory per stack")
    definition_file: str = "compose.yaml"
    compose_args: str = Field("", description="Extra arguments for `docker compose up`")
    max_workers: int = Field(8, ge=1, le=64)
    management_root: Optional[str] = Field(
        None, description="Directory of the stack-management UI stack (e.g. /opt/dockge)"
    )

    @field_validator("root")
    @classmethod
    def validate_root(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("compose root must be an absolute path")
        return v.rstrip("/") or "/"

    @field_validator("management_root")
    @classmethod
    def validate_management_root(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.rstrip("/")
        if not v.startswith("/") or not _STACK_NAME.match(v.rsplit("/", 1)[-1]):
            raise ValueError("management_root must be an absolute path ending in a valid stack name")
        return v

    @field_validator("definition_file")
    @classmethod
    def validate_definition_file(cls, v: str) -> str:
        if "/" in v or not v:
            raise ValueError("definition_file must be a plain file name")
        return v


class TimeoutConfig(BaseModel):
    """Per-step timeouts in seconds."""

    git_fetch: int = Field(60, ge=1)
    git_checkout: int = Field(30, ge=1)
    image_pull: int = Field(300, ge=1)
    service_startup: int = Field(120, ge=1)
    validation_env: int = Field(30, ge=1)
    validation_syntax: int = Field(30, ge=1)
    health_command: int = Field(15, ge=1)
    cleanup: int = Field(120, ge=1)


class RetryConfig(BaseModel):
    """Retry of connection-class failures."""

    max_attempts: int = Field(3, ge=1, le=10)
    initial_delay: float = Field(5.0, ge=0)
    backoff_factor: float = Field(2.0, ge=1.0)
    max_delay: Optional[float] = Field(60.0, ge=0)


class SecretsConfig(BaseModel):
    """How compose commands receive secrets on the remote host."""

    env_file: str = "/opt/compose/compose.env"
    command_prefix: str = Field(
        "op run --env-file={env_file} --",
        description="Wrapper prepended to every compose command; empty disables it",
    )
    token_env_var: Optional[str] = Field(
        "OP_SERVICE_ACCOUNT_TOKEN",
        description="Local environment variable forwarded to the remote commands",
    )

    def render_prefix(self) -> str:
        return self.command_prefix.format(env_file=self.env_file) if self.command_prefix else ""


class FleetConfig(BaseModel):
    """Top-level fleetdeploy configuration."""

    ssh: SSHConfig = Field(default_factory=SSHConfig)
    compose: ComposeConfig = Field(default_factory=ComposeConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    secrets: SecretsConfig = Field(default_factory=SecretsConfig)
    critical_stacks: List[str] = Field(default_factory=list)
    detect_critical: bool = Field(False, description="Also treat label-marked stacks as critical")

    @field_validator("critical_stacks")
    @classmethod
    def validate_critical_stacks(cls, v: List[str]) -> List[str]:
        for name in v:
            if not _STACK_NAME.match(name):
                raise ValueError(f"Invalid stack name: {name!r}")
        return v

    @model_validator(mode="after")
    def validate_retry_delays(self):
        if self.retry.max_delay is not None and self.retry.max_delay < self.retry.initial_delay:
            raise ValueError("retry.max_delay must not be smaller than retry.initial_delay")
        return self
