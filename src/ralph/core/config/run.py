"""Root configuration for a Ralph batch run, loadable from YAML.

Example file:

    loop:
      project_path: ./my-project
      max_attempts_per_function: 6
      model_aliases:
        worker: haiku
        fallback: sonnet
        architect: opus
      circuit_breaker:
        global_failure_threshold: 0.15
    logging:
      level: DEBUG
      format: json
"""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from ralph.core.config.execution import RalphLoopConfig
from ralph.core.config.workspace import LogConfig
from ralph.core.errors import ConfigurationError


class RalphConfig(BaseModel):
    """Top-level configuration: the loop settings plus logging."""

    loop: RalphLoopConfig = Field(default_factory=RalphLoopConfig)
    logging: LogConfig = Field(default_factory=LogConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> RalphConfig:
        """Load configuration from a YAML file.

        Raises:
            ConfigurationError: If the file is missing, unparsable or invalid.
        """
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file {path}: {e}") from e
        return cls.from_yaml_string(text)

    @classmethod
    def from_yaml_string(cls, yaml_str: str) -> RalphConfig:
        """Load configuration from a YAML string."""
        try:
            data = yaml.safe_load(yaml_str)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError("Config root must be a mapping")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(str(e)) from e
