"""Load and validate the YAML bot configuration once per run."""

import logging
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import ValidationError

from securitybot.core.config import get_settings
from securitybot.core.errors import ConfigError
from securitybot.schemas.config import BotConfig

logger = logging.getLogger(__name__)


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        parts.append(f"{location}: {err.get('msg', 'invalid value')}")
    return "; ".join(parts)


def parse_bot_config(data: object) -> BotConfig:
    """Validate an already-decoded mapping. Raises ConfigError listing every failing field."""
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping.")
    try:
        return BotConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            f"Invalid configuration: {_format_validation_error(e)}",
            cause=e,
        ) from e


def load_bot_config(path: str | Path) -> BotConfig:
    """
    Read the YAML file at path and return a frozen BotConfig.

    Raises ConfigError when the file is missing, is not valid YAML, or fails validation.
    """
    config_path = Path(path)
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read configuration file {config_path}: {e}", cause=e) from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Configuration file {config_path} is not valid YAML: {e}", cause=e) from e

    config = parse_bot_config(data)
    logger.info(
        "Configuration loaded",
        extra={
            "config_path": str(config_path),
            "checks_enabled": len(config.enabled_checks()),
            "provider": config.ai_model.provider,
            "model": config.ai_model.model,
        },
    )
    return config


@lru_cache
def get_bot_config() -> BotConfig:
    """Configuration at CONFIG_PATH, loaded once per process (API dependency)."""
    return load_bot_config(get_settings().CONFIG_PATH)
