"""Load and validate teamstream.yaml configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from teamstream.config.models import TeamstreamConfig

DEFAULT_CONFIG_NAME = "teamstream.yaml"


class ConfigError(Exception):
    """User-facing configuration error."""


def load_config(path: Path | None = None, *, required: bool = True) -> TeamstreamConfig:
    """Load a teamstream.yaml file and the ``.env`` file next to it.

    Args:
        path: Explicit config file. If None, teamstream.yaml in the
              current directory is used.
        required: When False and no explicit path was given, a missing
              file yields the built-in defaults instead of an error.

    Raises:
        ConfigError: On missing file, bad YAML, or validation failure.
    """
    config_path = find_config(path)
    if config_path is None:
        if required:
            msg = (
                f"No {DEFAULT_CONFIG_NAME} found in {Path.cwd()}. "
                "Run `teamstream init` to create one."
            )
            raise ConfigError(msg)
        return TeamstreamConfig()

    data = _read_mapping(config_path)
    env_path = config_path.parent / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    try:
        return TeamstreamConfig.model_validate(data)
    except ValidationError as exc:
        msg = "Config validation failed:\n" + "\n".join(_describe_errors(exc))
        raise ConfigError(msg) from exc


def find_config(path: Path | None = None) -> Path | None:
    """Return the config file to load, or None when the default is absent.

    An explicit *path* that does not exist is always an error.
    """
    if path is None:
        default = Path.cwd() / DEFAULT_CONFIG_NAME
        return default if default.is_file() else None
    explicit = Path(path)
    if not explicit.is_file():
        msg = f"Config file not found: {explicit}"
        raise ConfigError(msg)
    return explicit


def _read_mapping(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        msg = f"Cannot read config file: {exc}"
        raise ConfigError(msg) from exc
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        where = f" (line {mark.line + 1}, column {mark.column + 1})" if mark else ""
        msg = f"Invalid YAML in {path.name}{where}"
        raise ConfigError(msg) from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {path.name}, got {type(data).__name__}"
        raise ConfigError(msg)
    return data


def _describe_errors(exc: ValidationError) -> list[str]:
    lines = []
    for err in exc.errors():
        loc = " → ".join(str(part) for part in err["loc"]) or "(root)"
        text = err["msg"]
        if err["type"] == "missing":
            text = "This field is required"
        elif err["type"] == "extra_forbidden":
            text = "Unknown setting"
        lines.append(f"  {loc}: {text}")
    return lines
