"""
Tool configuration: built-in defaults merged with an optional YAML file.
"""

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import SchemaError

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_DB = Path.home() / ".local" / "share" / "reconcile-tool" / "history.db"


class ToolConfig(BaseModel):
    """Runtime settings; command line flags override these."""
    timeout: float = Field(30.0, gt=0, description="Per-operation timeout in seconds")
    max_workers: int = Field(4, ge=1, description="Hosts reconciled in parallel")
    continue_on_error: bool = Field(False, description="Ignore fatal flags on resources")
    history_db: str = Field(str(DEFAULT_HISTORY_DB), description="SQLite run history path")
    record_history: bool = True
    log_level: str = "WARNING"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"invalid log level: {v}")
        return level


def load_config(config_path: Optional[str] = None) -> ToolConfig:
    """
    Load configuration from file or use defaults.

    Args:
        config_path: YAML file whose keys override the defaults

    Raises:
        SchemaError: If the file is unreadable or holds invalid settings
    """
    if not config_path:
        return ToolConfig()

    path = Path(config_path)
    if not path.exists():
        raise SchemaError(f"configuration file not found: {config_path}")

    try:
        with open(path, 'r') as f:
            user_config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise SchemaError(f"cannot read configuration {config_path}: {e}")

    if not isinstance(user_config, dict):
        raise SchemaError(f"configuration {config_path} must be a mapping")

    try:
        config = ToolConfig(**user_config)
    except ValidationError as e:
        raise SchemaError(f"invalid configuration {config_path}: {e}")

    logger.debug("Loaded configuration from %s", config_path)
    return config
