"""
Engine configuration: YAML or JSON file plus environment overrides.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from infraflow.utils.errors import ErrorKind, InfraflowError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = ".infraflow/config.yaml"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

ENV_OVERRIDES = {
    "INFRAFLOW_CHECKPOINT_DIR": "checkpoint_dir",
    "INFRAFLOW_MAX_CONCURRENCY": "max_concurrency",
    "INFRAFLOW_ROLLBACK_HISTORY": "rollback_history_path",
    "INFRAFLOW_LOG_LEVEL": "log_level",
}


@dataclass
class EngineConfig:
    """Settings shared by the engine and the CLI."""

    checkpoint_dir: str = ".infraflow/checkpoints"
    max_concurrency: int = 4
    rollback_history_path: Optional[str] = None
    log_level: str = "INFO"
    default_step_timeout_ms: Optional[int] = None
    working_dir: str = "."

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise InfraflowError(
                f"Unknown configuration keys: {', '.join(unknown)}",
                ErrorKind.VALIDATION,
                "INVALID_CONFIG",
                suggestions=[f"Valid keys: {', '.join(sorted(known))}"],
            )
        config = cls(**data)
        errors = config.validate()
        if errors:
            raise InfraflowError(
                f"Configuration validation failed: {', '.join(errors)}",
                ErrorKind.VALIDATION,
                "INVALID_CONFIG",
            )
        return config

    def validate(self) -> List[str]:
        errors = []
        if not isinstance(self.max_concurrency, int) or self.max_concurrency < 1:
            errors.append("max_concurrency must be a positive integer")
        if not self.checkpoint_dir:
            errors.append("checkpoint_dir cannot be empty")
        if self.default_step_timeout_ms is not None and self.default_step_timeout_ms <= 0:
            errors.append("default_step_timeout_ms must be positive")
        if str(self.log_level).upper() not in LOG_LEVELS:
            errors.append(f"Unknown log level: {self.log_level}")
        return errors


def _read_config_file(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            if path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise InfraflowError(
            f"Failed to read configuration {path}: {e}",
            ErrorKind.VALIDATION,
            "INVALID_CONFIG",
        ) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InfraflowError(
            f"Configuration {path} must contain a mapping",
            ErrorKind.VALIDATION,
            "INVALID_CONFIG",
        )
    return data


def _apply_environment_overrides(config_data: Dict[str, Any]) -> Dict[str, Any]:
    for variable, key in ENV_OVERRIDES.items():
        value = os.getenv(variable)
        if not value:
            continue
        if key == "max_concurrency":
            try:
                config_data[key] = int(value)
            except ValueError:
                raise InfraflowError(
                    f"{variable} must be an integer, got {value!r}",
                    ErrorKind.VALIDATION,
                    "INVALID_CONFIG",
                )
        else:
            config_data[key] = value
    return config_data


def load_engine_config(path: Optional[str] = None) -> EngineConfig:
    """Load engine configuration.

    ``path`` falls back to ``INFRAFLOW_CONFIG`` and then to
    ``.infraflow/config.yaml``. An explicitly named file must exist; the
    default one is optional. Environment overrides win over file values.

    Raises:
        InfraflowError: With code INVALID_CONFIG for unreadable or invalid settings
    """
    explicit = path or os.getenv("INFRAFLOW_CONFIG")
    config_path = Path(explicit or DEFAULT_CONFIG_PATH)

    if config_path.exists():
        logger.debug(f"Loading configuration from {config_path}")
        config_data = _read_config_file(config_path)
    elif explicit:
        raise InfraflowError(
            f"Configuration file not found: {config_path}",
            ErrorKind.NOT_FOUND,
            "CONFIG_NOT_FOUND",
        )
    else:
        config_data = {}

    return EngineConfig.from_dict(_apply_environment_overrides(config_data))
