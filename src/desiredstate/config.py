"""
Agent configuration.

Resolution order, lowest to highest precedence:
    1. Built-in defaults
    2. ``<home>/config/config.yaml``
    3. ``DESIREDSTATE_*`` environment variables
    4. Explicit overrides (CLI options)
"""

from __future__ import annotations

import logging
import os
import shlex
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from . import AGENT_HOME

logger = logging.getLogger("desiredstate.config")

DEFAULT_REGISTRY = "ghcr.io/silvanoc/poc-deploy:desired"
DEFAULT_STATUS_PORT = 7787
CONFIG_FILE = Path("config") / "config.yaml"

_ENV_OVERRIDES = {
    "DESIREDSTATE_DEPLOY_DIR": "deploy_dir",
    "DESIREDSTATE_REGISTRY": "registry",
    "DESIREDSTATE_INTERVAL": "interval",
    "DESIREDSTATE_COMPOSE": "compose_command",
    "DESIREDSTATE_STATUS_PORT": "status_port",
}


class AgentConfig(BaseModel):
    """Runtime configuration for the reconciliation agent."""

    home: Path = Path(AGENT_HOME)
    deploy_dir: Path = Path("./deploy")
    registry: str = DEFAULT_REGISTRY
    interval: float = Field(default=3.0, gt=0)
    compose_command: list[str] = Field(default_factory=lambda: ["docker-compose"])
    command_timeout: float = 300.0
    request_timeout: float = 30.0
    insecure_registries: list[str] = Field(default_factory=list)
    docker_config: Optional[Path] = None
    status_port: int = DEFAULT_STATUS_PORT

    @field_validator("compose_command", mode="before")
    @classmethod
    def _split_command(cls, value: Any) -> Any:
        # "docker compose" from YAML or the environment is a command line.
        if isinstance(value, str):
            return shlex.split(value)
        return value

    @field_validator("compose_command")
    @classmethod
    def _non_empty(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("compose_command must not be empty")
        return value

    @property
    def log_file(self) -> Path:
        return self.home.expanduser() / "logs" / "agent.log"


def load_config(
    home: Optional[Path] = None,
    config_file: Optional[Path] = None,
    **overrides: Any,
) -> AgentConfig:
    """Build the agent configuration from disk, environment, and overrides.

    Args:
        home: Agent home directory. Defaults to ``DESIREDSTATE_HOME``.
        config_file: Explicit config file; defaults to
            ``<home>/config/config.yaml``.
        **overrides: Field values that win over everything else. ``None``
            values are ignored so unset CLI options fall through.

    Returns:
        The merged AgentConfig.

    Raises:
        pydantic.ValidationError: If overrides or environment values are
            invalid.
    """
    home_path = Path(home or AGENT_HOME).expanduser()
    path = Path(config_file).expanduser() if config_file else home_path / CONFIG_FILE

    data: dict[str, Any] = {}
    if path.exists():
        try:
            loaded = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            AgentConfig(**loaded)
            data.update(loaded)
        except (yaml.YAMLError, ValidationError, TypeError) as exc:
            logger.warning("Failed to load config %s: %s, using defaults", path, exc)

    for env_name, field in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            data[field] = value

    data.update({k: v for k, v in overrides.items() if v is not None})
    data["home"] = home_path
    return AgentConfig(**data)
