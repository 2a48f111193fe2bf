"""Configuration loading for CAL.

Values are layered, later layers winning:

    defaults < TOML file < CAL_* environment variables < CLI overrides
"""

import logging
import os
import shlex
import shutil
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from cli_agent_loop.constants import (
    DEFAULT_CONFIG_FILE,
    DEFAULT_ITERATION_TIMEOUT,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_RECENT_ATTEMPTS,
    DEFAULT_TIMEOUT_RETRIES,
    DEFAULT_WORKER_PATH,
    ENV_PREFIX,
)
from cli_agent_loop.errors import ConfigError

logger = logging.getLogger(__name__)

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


class BuildConfig(BaseModel):
    """Settings for a build run."""

    model_config = ConfigDict(extra="forbid")

    worker_path: str = DEFAULT_WORKER_PATH
    # Arguments placed before the headless flags (e.g. a script for an interpreter)
    worker_base_args: List[str] = Field(default_factory=list)
    skip_permissions: bool = False
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1)
    recent_attempts: int = Field(default=DEFAULT_RECENT_ATTEMPTS, ge=0)
    iteration_timeout: float = Field(default=DEFAULT_ITERATION_TIMEOUT, gt=0)
    timeout_retries: int = Field(default=DEFAULT_TIMEOUT_RETRIES, ge=0)
    # Path to a file that replaces the built-in build prompt
    build_prompt: Optional[Path] = None
    auto_commit: bool = True


def _parse_bool(name: str, raw: str) -> Optional[bool]:
    value = raw.strip().lower()
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    logger.warning(f"Ignoring {name}={raw!r}: expected a boolean")
    return None


def _parse_number(name: str, raw: str, kind: type) -> Optional[Any]:
    try:
        return kind(raw.strip())
    except ValueError:
        logger.warning(f"Ignoring {name}={raw!r}: expected {kind.__name__}")
        return None


def _env_overrides(environ: Dict[str, str]) -> Dict[str, Any]:
    """Collect CAL_* environment variables that name a config field."""
    values: Dict[str, Any] = {}
    for field_name, field_info in BuildConfig.model_fields.items():
        env_name = f"{ENV_PREFIX}{field_name.upper()}"
        raw = environ.get(env_name)
        if raw is None:
            continue

        annotation = field_info.annotation
        if annotation is bool:
            value = _parse_bool(env_name, raw)
        elif annotation is int:
            value = _parse_number(env_name, raw, int)
        elif annotation is float:
            value = _parse_number(env_name, raw, float)
        elif field_name == "worker_base_args":
            value = shlex.split(raw)
        else:
            value = raw

        if value is not None:
            values[field_name] = value
    return values


def _read_toml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e


def resolve_worker_path(worker_path: str) -> str:
    """Resolve a bare executable name against PATH, keeping it if not found."""
    if os.path.isabs(worker_path) or os.sep in worker_path:
        return worker_path
    return shutil.which(worker_path) or worker_path


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> BuildConfig:
    """Load the build configuration.

    Args:
        config_path: TOML file to read. Must exist when given explicitly; the
            default location is read only if present.
        overrides: Explicit values (CLI options). None entries are skipped.
        environ: Environment mapping, defaults to os.environ

    Returns:
        BuildConfig with the worker path resolved

    Raises:
        ConfigError: If the file is unreadable or a value is invalid
    """
    values: Dict[str, Any] = {}

    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.is_file():
            raise ConfigError(f"Config file not found: {config_path}")
        values.update(_read_toml(config_path))
    elif DEFAULT_CONFIG_FILE.is_file():
        values.update(_read_toml(DEFAULT_CONFIG_FILE))

    values.update(_env_overrides(os.environ if environ is None else environ))
    values.update({key: value for key, value in (overrides or {}).items() if value is not None})

    try:
        config = BuildConfig(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    config.worker_path = resolve_worker_path(config.worker_path)
    logger.debug(f"Loaded config: {config.model_dump()}")
    return config
