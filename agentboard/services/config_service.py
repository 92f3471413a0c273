"""Configuration loading service.

Loads config.yaml, applies environment overrides and validates the result
against the AppConfig schema. Any problem falls back to defaults with a
warning; configuration is never a reason to refuse to start.
"""

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from agentboard.models.config import AppConfig

logger = logging.getLogger(__name__)

# Environment variable -> top-level config key
ENV_OVERRIDES = {
    "PORT": "port",
    "AGENTBOARD_TMUX_SESSION": "tmux_session",
}


class ConfigService:
    """Service for loading and managing application configuration.

    Handles:
    - Loading config from config.yaml
    - Applying PORT / AGENTBOARD_TMUX_SESSION overrides
    - Validating against Pydantic schema
    - Saving updated config
    """

    def __init__(self, config_path: str | Path = "config.yaml", env: Mapping[str, str] | None = None):
        """Initialize the config service.

        Args:
            config_path: Path to the config file.
            env: Environment mapping; defaults to os.environ.
        """
        self.config_path = Path(config_path)
        self._env = env if env is not None else os.environ
        self._config: AppConfig | None = None

    def load(self) -> AppConfig:
        """Load and validate configuration.

        Returns:
            Validated AppConfig instance.
        """
        raw_config = self._read_file()
        merged = self._apply_env_overrides(raw_config)

        try:
            self._config = AppConfig(**merged)
        except ValidationError as e:
            logger.warning(f"Config validation error: {e}, using defaults")
            self._config = AppConfig(**self._apply_env_overrides({}, strict=True))

        return self._config

    def _read_file(self) -> dict[str, Any]:
        if not self.config_path.exists():
            logger.info(f"Config file not found at {self.config_path}, using defaults")
            return {}

        try:
            with open(self.config_path) as f:
                raw_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Error reading config file: {e}, using defaults")
            return {}

        if not isinstance(raw_config, dict):
            logger.warning(f"Config file {self.config_path} is not a mapping, using defaults")
            return {}

        return raw_config

    def _apply_env_overrides(self, raw: dict[str, Any], strict: bool = False) -> dict[str, Any]:
        """Overlay environment overrides on the file config.

        Args:
            raw: Config dictionary from YAML.
            strict: Only keep overrides that validate on their own, so the
                defaults fallback cannot fail a second time.
        """
        merged = dict(raw)
        for env_name, key in ENV_OVERRIDES.items():
            value = self._env.get(env_name)
            if not value:
                continue
            if strict:
                try:
                    AppConfig(**{key: value})
                except ValidationError:
                    logger.warning(f"Ignoring invalid {env_name}={value!r}")
                    continue
            merged[key] = value
        return merged

    def get_config(self) -> AppConfig:
        """Get the current configuration.

        Loads from disk if not already loaded.
        """
        if self._config is None:
            return self.load()
        return self._config

    def reload(self) -> AppConfig:
        """Force reload configuration from disk."""
        self._config = None
        return self.load()

    def save(self, config: AppConfig | None = None) -> bool:
        """Save configuration to disk.

        Args:
            config: Config to save. Uses current config if not provided.

        Returns:
            True if save succeeded.
        """
        config = config or self._config
        if config is None:
            return False

        try:
            config_dict = config.model_dump(mode="json")
            with open(self.config_path, "w") as f:
                yaml.dump(config_dict, f, default_flow_style=False, sort_keys=False)
            return True
        except OSError as e:
            logger.error(f"Error saving config: {e}")
            return False
