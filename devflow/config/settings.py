"""
Configuration system using Pydantic for type-safe settings management.

Two kinds of configuration exist:

- ``devflow.yaml``: the project's workflows, loaded with ``DevFlowConfig.from_yaml``
  and converted to engine domain objects with ``to_workflow``.
- ``EngineSettings``: engine tunables (Docker socket, logging, retry policy),
  read from ``DEVFLOW_*`` environment variables.
"""

from __future__ import annotations

import importlib
import os
import re
import sys
from pathlib import Path
from typing import Literal

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from devflow.engine.retry import RetryPolicy
from devflow.enums import HealthCheckKind, TaskKind
from devflow.exceptions import ConfigurationError, UnsafeInputError
from devflow.models.domain import (
    CommandTask,
    ContainerTask,
    CustomHealthCheck,
    HealthCheckSpec,
    HealthPredicate,
    HttpHealthCheck,
    PortBinding,
    Task,
    TcpHealthCheck,
    Workflow,
)
from devflow.utils.security import Sanitizer


def _stringify_env(value: object) -> object:
    # YAML turns `PORT: 5432` into an int; environment values are always strings
    if isinstance(value, dict):
        return {str(key): "" if item is None else str(item) for key, item in value.items()}
    return value


def load_predicate(path: str, base_dir: Path | str | None = None) -> HealthPredicate:
    """Import a health-check predicate from a ``module:function`` path.

    Args:
        path: ``module:function`` reference
        base_dir: Directory of the configuration file. Modules next to it are
            importable while the predicate is resolved.

    Raises:
        ConfigurationError: If the path is malformed or the target cannot be imported
    """
    module_name, sep, attribute = path.partition(":")
    if not sep or not module_name or not attribute:
        raise ConfigurationError(
            f"Invalid predicate path '{path}'",
            suggestions=["Use the form 'package.module:function'"],
        )
    search_dir = str(base_dir) if base_dir is not None else None
    if search_dir is not None:
        sys.path.insert(0, search_dir)
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import predicate module '{module_name}': {e}") from e
    finally:
        if search_dir is not None:
            sys.path.remove(search_dir)

    target: object = module
    for part in attribute.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as e:
            raise ConfigurationError(f"Predicate '{path}' not found") from e
    if not callable(target):
        raise ConfigurationError(f"Predicate '{path}' is not callable")
    return target  # type: ignore[return-value]


class HealthCheckConfig(BaseModel):
    """Readiness check declared on a task."""

    type: Literal["tcp", "http", "custom"] = Field(default="tcp", description="Probe kind")
    host: str = Field(default="localhost", description="Host to probe")
    port: int | None = Field(default=None, ge=1, le=65535, description="Port to probe")
    path: str = Field(default="/", description="Request path for http checks")
    retries: int = Field(default=5, ge=1, description="Probe attempts before giving up")
    interval: float = Field(default=2.0, ge=0, description="Initial delay between probes in seconds")
    timeout: float = Field(default=30.0, gt=0, description="Per-probe timeout in seconds")
    predicate: str | None = Field(default=None, description="'module:function' for custom checks")

    @model_validator(mode="after")
    def validate_port(self) -> HealthCheckConfig:
        """Network probes need a port."""
        if self.type != "custom" and self.port is None:
            raise ValueError(f"{self.type} health check requires a port")
        return self

    def to_spec(self, base_dir: Path | str | None = None) -> HealthCheckSpec:
        """Convert to the engine's health-check type.

        Custom predicates are imported with ``base_dir`` on the import path. A
        custom check without a predicate is converted as-is; the scheduler
        rejects it before the workflow runs.
        """
        common = {
            "host": self.host,
            "port": self.port or 0,
            "retries": self.retries,
            "interval": self.interval,
            "timeout": self.timeout,
        }
        kind = HealthCheckKind(self.type)
        if kind == HealthCheckKind.TCP:
            return TcpHealthCheck(**common)
        if kind == HealthCheckKind.HTTP:
            return HttpHealthCheck(path=self.path, **common)
        predicate = load_predicate(self.predicate, base_dir) if self.predicate else None
        return CustomHealthCheck(predicate=predicate, **common)


class TaskConfig(BaseModel):
    """A single task entry of a workflow."""

    name: str = Field(..., min_length=1, description="Unique task name within the workflow")
    type: Literal["command", "docker"] = Field(..., description="Task kind")
    command: str | None = Field(default=None, description="Shell command for command tasks")
    cwd: str | None = Field(default=None, description="Working directory relative to the config file")
    image: str | None = Field(default=None, description="Image for docker tasks")
    container_name: str | None = Field(default=None, description="Container name for docker tasks")
    env: dict[str, str] = Field(default_factory=dict, description="Task environment")
    env_file: str | None = Field(default=None, description="Dotenv file relative to the config file")
    ports: list[str] = Field(default_factory=list, description="Port bindings, host:container[/proto]")
    depends_on: list[str] = Field(default_factory=list, description="Tasks that must succeed first")
    parallel: bool = Field(default=False, description="May run concurrently with neighbouring parallel tasks")
    health_check: HealthCheckConfig | None = Field(default=None, description="Readiness check")

    @field_validator("env", mode="before")
    @classmethod
    def normalize_env(cls, value: object) -> object:
        return _stringify_env(value)

    @field_validator("depends_on", mode="before")
    @classmethod
    def normalize_depends_on(cls, value: object) -> object:
        """Allow a single dependency as a plain string."""
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("ports")
    @classmethod
    def validate_ports(cls, value: list[str]) -> list[str]:
        for binding in value:
            try:
                PortBinding.parse(binding)
            except ConfigurationError as e:
                raise ValueError(e.message) from e
        return value

    @model_validator(mode="after")
    def validate_kind_fields(self) -> TaskConfig:
        """Ensure each task kind carries its required field."""
        if self.type == "command" and not self.command:
            raise ValueError(f"Command task '{self.name}' missing command")
        if self.type == "docker" and not self.image:
            raise ValueError(f"Docker task '{self.name}' missing image")
        return self

    def to_task(self, base_dir: Path, sanitizer: Sanitizer | None = None) -> Task:
        """Convert to the engine's task type.

        Args:
            base_dir: Directory of the config file; ``env_file`` is resolved
                against it and may not leave it
            sanitizer: Path checker for ``env_file``

        Raises:
            ConfigurationError: If the env file is missing, outside the project
                or the health-check predicate cannot be imported
        """
        env = {**self._load_env_file(base_dir, sanitizer or Sanitizer()), **self.env}
        common = {
            "name": self.name,
            "env": env,
            "depends_on": set(self.depends_on),
            "parallel": self.parallel,
            "health_check": self.health_check.to_spec(base_dir) if self.health_check else None,
        }
        kind = TaskKind(self.type)
        if kind == TaskKind.COMMAND:
            return CommandTask(command=self.command or "", cwd=self.cwd, **common)
        return ContainerTask(
            image=self.image or "",
            container_name=self.container_name,
            ports=[PortBinding.parse(binding) for binding in self.ports],
            **common,
        )

    def _load_env_file(self, base_dir: Path, sanitizer: Sanitizer) -> dict[str, str]:
        if not self.env_file:
            return {}
        try:
            path = sanitizer.resolve_path(base_dir, self.env_file)
        except UnsafeInputError as e:
            raise ConfigurationError(f"Task '{self.name}': {e.message}", suggestions=e.suggestions) from e
        if not path.is_file():
            raise ConfigurationError(f"Task '{self.name}': env file not found: {self.env_file}")
        return {key: value or "" for key, value in dotenv_values(path).items()}


class WorkflowConfig(BaseModel):
    """A named, ordered set of tasks."""

    name: str | None = Field(default=None, description="Display name")
    description: str = Field(default="", description="What the workflow sets up")
    parallel: bool = Field(default=False, description="Run all tasks in one dependency-ordered scope")
    tasks: list[TaskConfig] = Field(..., min_length=1, description="Tasks in declaration order")


class DevFlowConfig(BaseModel):
    """Top-level ``devflow.yaml`` document."""

    project_name: str = Field(..., min_length=1, description="Project name")
    version: str = Field(..., description="Config version")
    workflows: dict[str, WorkflowConfig] = Field(..., min_length=1, description="Workflows by key")

    @field_validator("version", mode="before")
    @classmethod
    def coerce_version(cls, value: object) -> object:
        # `version: 1.0` parses as a float
        if isinstance(value, int | float):
            return str(value)
        return value

    def get_workflow(self, name: str) -> WorkflowConfig:
        """Look up a workflow by key.

        Raises:
            ConfigurationError: If no workflow has that key
        """
        try:
            return self.workflows[name]
        except KeyError:
            raise ConfigurationError(
                f"Workflow '{name}' not found",
                suggestions=[f"Available workflows: {', '.join(sorted(self.workflows))}"],
            ) from None

    def to_workflow(self, name: str, base_dir: Path | str = ".") -> Workflow:
        """Convert one workflow to the engine's domain model.

        Args:
            name: Workflow key in ``workflows``
            base_dir: Directory the config file lives in

        Returns:
            The workflow, ready for the scheduler
        """
        config = self.get_workflow(name)
        base = Path(base_dir)
        return Workflow(
            name=name,
            description=config.description,
            parallel=config.parallel,
            tasks=[task.to_task(base) for task in config.tasks],
        )

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> DevFlowConfig:
        """Load the config from YAML with environment variable interpolation.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} substitution.

        Args:
            config_path: Path to the YAML configuration file

        Returns:
            DevFlowConfig instance

        Raises:
            ConfigurationError: If the file is missing, unreadable, not valid
                YAML or fails validation
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(
                f"Configuration file not found: {config_path}",
                suggestions=["Create a devflow.yaml or pass --config"],
            )

        try:
            yaml_content = config_file.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls.model_validate(config_dict)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {config_path}:\n{e}") from e


_ENV_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def interpolate_env_vars(content: str) -> str:
    """Interpolate ${VAR_NAME} placeholders with environment variables.

    Supports two syntaxes:
    - ${VAR_NAME} - Required environment variable (raises if not set)
    - ${VAR_NAME:-default} - Optional with default value

    YAML comment lines are left unchanged.

    Raises:
        ValueError: If a required environment variable is not set
    """

    def replace_var(match: re.Match[str]) -> str:
        var_name = match.group(1)
        default_value = match.group(2)
        value = os.getenv(var_name)

        if value is not None:
            return value
        elif default_value is not None:
            return default_value
        else:
            raise ValueError(f"Environment variable {var_name} is not set")

    def process_line(line: str) -> str:
        if line.lstrip().startswith("#"):
            return line
        return _ENV_REFERENCE.sub(replace_var, line)

    return "\n".join(process_line(line) for line in content.split("\n"))


class EngineSettings(BaseSettings):
    """Engine tunables read from ``DEVFLOW_*`` environment variables.

    Example:
        DEVFLOW_LOG_LEVEL=DEBUG DEVFLOW_RETRY_ATTEMPTS=5 devflow run test
    """

    model_config = SettingsConfigDict(
        env_prefix="DEVFLOW_",
        case_sensitive=False,
    )

    docker_host: str = Field(default="/var/run/docker.sock", description="Docker daemon unix socket")
    docker_api_version: str = Field(default="1.43", description="Docker Engine API version")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    log_format: Literal["console", "json"] = Field(default="console")
    retry_attempts: int = Field(default=3, ge=1, description="Attempts for image pulls and container starts")
    retry_initial_delay: float = Field(default=1.0, ge=0, description="Seconds before the first retry")
    retry_max_delay: float = Field(default=10.0, ge=0, description="Upper bound for a single retry wait")
    retry_backoff_factor: float = Field(default=2.0, ge=1, description="Delay multiplier per retry")
    stop_timeout: float = Field(default=10.0, ge=0, description="Seconds a container gets to stop")

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, value: object) -> object:
        return value.upper() if isinstance(value, str) else value

    @property
    def docker_socket(self) -> str:
        """Socket path with any ``unix://`` scheme removed."""
        return self.docker_host.removeprefix("unix://")

    def retry_policy(self) -> RetryPolicy:
        """Policy for image pulls and container starts."""
        return RetryPolicy(
            attempts=self.retry_attempts,
            initial_delay=self.retry_initial_delay,
            max_delay=self.retry_max_delay,
            factor=self.retry_backoff_factor,
        )
