"""Centralized host-side configuration for boxmatrix."""

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from boxmatrix.models.config import MatrixConfigModel
from boxmatrix.paths import HostPaths

logger = logging.getLogger(__name__)

MIRROR_DIR_ENV = "BOXMATRIX_REGISTRY_MIRROR_DIR"
SHORT_ENV = "BOXMATRIX_SHORT"
PARALLEL_ENV = "BOXMATRIX_PARALLEL"


def _env_flag(name: str) -> Optional[bool]:
    value = os.environ.get(name)
    if value is None or value == "":
        return None
    return value.lower() in ("1", "true", "yes")


class MatrixConfig:
    """Manages host-side configuration from ~/.config/boxmatrix/config.yml.

    Environment variables take precedence over the file.
    """

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or HostPaths.config_file()
        self.model = self._load()

    def _load(self) -> MatrixConfigModel:
        """Load configuration from file, falling back to defaults."""
        if not self.config_path.exists():
            return MatrixConfigModel()

        try:
            with open(self.config_path) as f:
                raw_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load config from {self.config_path}: {e}")
            return MatrixConfigModel()

        try:
            return MatrixConfigModel.model_validate(raw_config)
        except ValidationError as e:
            logger.warning(f"Config validation errors: {e}")
            return MatrixConfigModel()

    @property
    def mirror_dir(self) -> Optional[Path]:
        """Shared mirror directory.

        Priority:
        1. BOXMATRIX_REGISTRY_MIRROR_DIR environment variable
        2. mirror.dir in config file
        3. None (process-local coordination only)
        """
        env_dir = os.environ.get(MIRROR_DIR_ENV)
        if env_dir:
            return Path(env_dir)
        if self.model.mirror.dir:
            return Path(self.model.mirror.dir).expanduser()
        return None

    @property
    def registry_image(self) -> str:
        return self.model.mirror.registry_image

    @property
    def extra_images(self) -> dict:
        return dict(self.model.mirror.images)

    @property
    def short(self) -> bool:
        env = _env_flag(SHORT_ENV)
        if env is not None:
            return env
        return self.model.run.short

    @property
    def parallel(self) -> int:
        explicit = self.explicit_parallel
        return explicit if explicit is not None else self.model.run.parallel

    @property
    def explicit_parallel(self) -> Optional[int]:
        """Parallelism set by env or config file, None when left at the default."""
        env = os.environ.get(PARALLEL_ENV)
        if env:
            try:
                return max(1, int(env))
            except ValueError:
                logger.warning(f"Ignoring invalid {PARALLEL_ENV}={env!r}")
        if "parallel" in self.model.run.model_fields_set:
            return self.model.run.parallel
        return None

    def get(self, *keys, default=None) -> Any:
        """Get nested config value.

        Example: config.get("docker", "image")
        """
        value: Any = self.model
        for key in keys:
            if hasattr(value, key):
                value = getattr(value, key)
            elif isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        if hasattr(value, "model_dump"):
            return value.model_dump()
        return value


# Singleton instance
_config: Optional[MatrixConfig] = None


def get_config() -> MatrixConfig:
    """Get the global host configuration."""
    global _config
    if _config is None:
        _config = MatrixConfig()
    return _config


def reset_config() -> None:
    """Drop the cached configuration (used by tests and the CLI)."""
    global _config
    _config = None
