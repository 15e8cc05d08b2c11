"""Configuration with environment variable and YAML support."""
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from jailhouse.core.exceptions import ConfigurationError
from jailhouse.core.types import DEFAULT_DOCKER_SOCKET, DockerEndpoint, VolumeSpec


DEFAULT_SETTINGS_FILE = Path("jailhouse.yaml")


class JailhouseConfig(BaseSettings):
    """Jailhouse configuration.

    All settings can be overridden via environment variables with the
    JAILHOUSE_ prefix. Example: JAILHOUSE_PRESTART=false disables prestart.
    """

    model_config = SettingsConfigDict(
        env_prefix="JAILHOUSE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Docker control endpoint
    docker_socket: str = Field(
        default=DEFAULT_DOCKER_SOCKET,
        description="Unix socket of the Docker daemon",
    )
    docker_host: str | None = Field(
        default=None,
        description="TCP host of the Docker daemon (overrides docker_socket)",
    )
    docker_port: int | None = Field(
        default=None,
        ge=1,
        le=65535,
        description="TCP port of the Docker daemon",
    )

    # Image
    image_name: str | None = Field(
        default=None,
        description="Fixed image reference; derived from the bundle digest when unset",
    )
    image_base_name: str = Field(
        default="jailhouse",
        description="Repository part of derived image references",
    )
    python_version: str = Field(
        default="3.12",
        description="Python version of the sandbox base image",
    )
    dockerfile: Path | None = Field(
        default=None,
        description="Custom Dockerfile for the sandbox image",
    )

    # Inmate
    inmate_dir: Path | None = Field(
        default=None,
        description="Directory holding the inmate code to bundle",
    )
    inmate: str | None = Field(
        default=None,
        description="Inmate methods as module:attribute",
    )

    # Behavior
    prestart: bool = Field(
        default=True,
        description="Keep a started container ready for the next call",
    )
    no_proxy: bool = Field(
        default=False,
        description="Call inmate methods in-process instead of in a container",
    )
    volumes: dict[str, VolumeSpec] = Field(
        default_factory=dict,
        description="Container path -> host bind ('/host/path[:ro|rw]')",
    )
    create_options: dict[str, Any] = Field(
        default_factory=dict,
        description="Extra fields for the container create request",
    )
    log_level: str = Field(
        default="INFO",
        description="Minimum log level",
    )

    @field_validator("volumes", mode="before")
    @classmethod
    def _parse_volumes(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {path: VolumeSpec.parse(spec) for path, spec in value.items()}
        return value

    @property
    def endpoint(self) -> DockerEndpoint:
        """The Docker control endpoint described by this config."""
        return DockerEndpoint(
            socket=self.docker_socket, host=self.docker_host, port=self.docker_port,
        )


def load_config(config_path: Path | None = None) -> JailhouseConfig:
    """Load configuration from a YAML file, then the environment.

    Resolution order:
    1. Explicit config_path parameter (if provided)
    2. JAILHOUSE_SETTINGS environment variable (if set)
    3. 'jailhouse.yaml' in the current directory, if it exists
    4. Environment variables and defaults only

    Values from the YAML file take precedence over environment variables.

    Raises:
        ConfigurationError: If an explicitly named file is missing or the
            file is not a YAML mapping.
        pydantic.ValidationError: If the configuration fails validation.
    """
    explicit = config_path is not None
    if config_path is None:
        env_path = os.environ.get("JAILHOUSE_SETTINGS")
        explicit = bool(env_path)
        config_path = Path(env_path) if env_path else DEFAULT_SETTINGS_FILE

    if not config_path.exists():
        if explicit:
            raise ConfigurationError(f"Configuration file not found at {config_path}")
        return JailhouseConfig()

    with open(config_path) as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Malformed configuration file {config_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {config_path} must contain a mapping")
    return JailhouseConfig(**data)
