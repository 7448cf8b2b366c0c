"""Configuration loading utilities."""

from __future__ import annotations
import os
from pathlib import Path
from typing import Dict, Any, Union, Optional

import pydantic

from ..contracts.errors import ConfigError
from .constants import ENV_CONFIG_PATH, ENV_PREFIX, LOCAL_CONFIG_NAME, USER_CONFIG_DIR
from .model import AppConfig


def default_config() -> AppConfig:
    """Create default configuration."""
    return AppConfig()


def load_config(path: Optional[Union[str, Path]] = None) -> AppConfig:
    """Load configuration from file or environment.

    Args:
        path: Path to configuration file. If None, looks for:
              - NLME_CONFIG environment variable
              - nlme.toml in current directory
              - ~/.nlme/config.toml

    Returns:
        Loaded and validated configuration

    Raises:
        ConfigError: If configuration file is invalid or not found
    """
    if path is None:
        path = _find_config_file()

    if path is None:
        return _apply_env_overrides(default_config())

    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        config = AppConfig.from_toml_file(path)
        return _apply_env_overrides(config)
    except (OSError, ValueError, pydantic.ValidationError) as e:
        raise ConfigError(f"Failed to load config from {path}: {e}", details={"path": str(path)}) from e


def _find_config_file() -> Optional[Path]:
    """Find configuration file using standard search paths."""

    # 1. Environment variable
    env_path = os.environ.get(ENV_CONFIG_PATH)
    if env_path:
        return Path(env_path)

    # 2. Current directory
    cwd_config = Path(LOCAL_CONFIG_NAME)
    if cwd_config.exists():
        return cwd_config

    # 3. User config directory
    user_config = Path.home() / USER_CONFIG_DIR / "config.toml"
    if user_config.exists():
        return user_config

    return None


def _apply_env_overrides(config: AppConfig) -> AppConfig:
    """Apply environment variable overrides to configuration.

    Environment variables follow pattern: NLME_<SECTION>_<KEY>
    Examples:
        NLME_RUN_THREADS=4
        NLME_SOLVER_METHOD=LSODA
        NLME_STEADY_STATE_POLICY=periods
    """
    config_dict = config.model_dump()
    sections = sorted(
        (name for name, value in config_dict.items() if isinstance(value, dict)),
        key=len,
        reverse=True,
    )
    applied = False

    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key == ENV_CONFIG_PATH:
            continue
        rest = key[len(ENV_PREFIX):].lower()
        for section in sections:
            if rest.startswith(section + "_"):
                field = rest[len(section) + 1:]
                config_dict[section][field] = _convert_env_value(value)
                applied = True
                break

    if not applied:
        return config
    try:
        return AppConfig.model_validate(config_dict)
    except pydantic.ValidationError as e:
        raise ConfigError(f"Invalid environment override: {e}") from e


def _convert_env_value(value: str) -> Any:
    """Convert string environment variable to appropriate type."""
    # Boolean
    if value.lower() in ("true", "false"):
        return value.lower() == "true"

    # Integer
    try:
        return int(value)
    except ValueError:
        pass

    # Float
    try:
        return float(value)
    except ValueError:
        pass

    # String (default)
    return value
