"""Configuration loading for convoy.

Reads ``convoy.yaml`` with ``yaml.safe_load`` and validates it into a
:class:`~convoy_core.schemas.config.PipelineConfig`. Any YAML or validation
problem surfaces as a :class:`~convoy_core.errors.ConfigurationError`.

Environment Variables:
    CONVOY_CONFIG: Default config file path.
    CONVOY_STATE_DIR: Default directory for the deployment history file.
    CONVOY_OPERATOR: Operator identity recorded on deployments.
"""

from __future__ import annotations

import os
from pathlib import Path

import structlog
import yaml
from pydantic import ValidationError

from convoy_core.errors import ConfigurationError
from convoy_core.schemas.config import PipelineConfig

logger = structlog.get_logger(__name__)

CONFIG_ENV_VAR = "CONVOY_CONFIG"
STATE_DIR_ENV_VAR = "CONVOY_STATE_DIR"
OPERATOR_ENV_VAR = "CONVOY_OPERATOR"

DEFAULT_CONFIG_FILENAME = "convoy.yaml"
DEFAULT_STATE_DIR = ".convoy"


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "<root>"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


def parse_config(data: object, source: str | None = None) -> PipelineConfig:
    """Validate an already-parsed mapping into a PipelineConfig.

    Args:
        data: Parsed YAML document (None is treated as an empty mapping).
        source: Origin of the data, used in error messages.

    Raises:
        ConfigurationError: If the document is not a mapping or fails validation.
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"top-level document must be a mapping, got {type(data).__name__}",
            source=source,
        )
    try:
        return PipelineConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(_format_validation_error(e), source=source) from e


def load_config(path: str | Path | None = None) -> PipelineConfig:
    """Load pipeline configuration from a YAML file.

    Resolution order: explicit ``path``, then ``$CONVOY_CONFIG``, then
    ``./convoy.yaml``. When no path was given and the default file does not
    exist, the built-in defaults are returned.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        Validated PipelineConfig.

    Raises:
        ConfigurationError: If the file is missing (when named explicitly),
            unreadable, not valid YAML, or fails validation.

    Examples:
        >>> config = load_config("convoy.yaml")  # doctest: +SKIP
        >>> config.environments[0].name  # doctest: +SKIP
        'development'
    """
    explicit = path is not None or bool(os.environ.get(CONFIG_ENV_VAR))
    config_path = Path(path or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILENAME)

    if not config_path.exists():
        if explicit:
            raise ConfigurationError("config file not found", source=str(config_path))
        logger.debug("config_defaults_used", path=str(config_path))
        return PipelineConfig()

    try:
        raw = config_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"cannot read config file: {e}", source=str(config_path)) from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid YAML: {e}", source=str(config_path)) from e

    config = parse_config(data, source=str(config_path))
    logger.debug(
        "config_loaded",
        path=str(config_path),
        environments=[env.name for env in config.environments],
        services=[svc.name for svc in config.services],
    )
    return config


def resolve_state_dir(state_dir: str | Path | None = None) -> Path:
    """Return the state directory from the argument, ``$CONVOY_STATE_DIR`` or the default."""
    return Path(state_dir or os.environ.get(STATE_DIR_ENV_VAR) or DEFAULT_STATE_DIR)


def get_operator() -> str:
    """Return the operator identity recorded on deployments."""
    return os.environ.get(OPERATOR_ENV_VAR) or os.environ.get("USER") or "unknown"


__all__: list[str] = [
    "CONFIG_ENV_VAR",
    "OPERATOR_ENV_VAR",
    "STATE_DIR_ENV_VAR",
    "get_operator",
    "load_config",
    "parse_config",
    "resolve_state_dir",
]
