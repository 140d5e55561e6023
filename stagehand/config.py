"""
Startup settings.

Settings come from three layers, later ones winning: built-in defaults, an
optional ``stagehand.yaml`` file, and command line flags.

    pipelines: ./pipelines
    refresh_seconds: 60
    log_level: info
    log_file: stagehand.log
    shell: sh
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from stagehand.errors import ConfigError
from stagehand.executor import DEFAULT_SHELL
from stagehand.log import LOG_LEVELS

DEFAULT_SETTINGS_FILE = "stagehand.yaml"
DEFAULT_PIPELINES_DIR = "pipelines"
DEFAULT_REFRESH_SECONDS = 60
DEFAULT_LOG_LEVEL = "info"
SETTINGS_KEYS = {"pipelines", "refresh_seconds", "log_level", "log_file", "shell"}


@dataclass(frozen=True)
class Settings:
    pipelines: Path
    refresh_seconds: int = DEFAULT_REFRESH_SECONDS
    log_level: str = DEFAULT_LOG_LEVEL
    log_file: Optional[Path] = None
    shell: str = DEFAULT_SHELL


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def parse_log_level(value: Any, field_path: str, default: str = DEFAULT_LOG_LEVEL) -> str:
    if value is None:
        return default
    level = ensure_str(value, field_path).lower()
    if level not in LOG_LEVELS:
        raise ConfigError(
            f'Error: {field_path} must be one of {sorted(LOG_LEVELS)}, got "{level}".'
        )
    return level


def resolve_path(value: Any, base_dir: Path, field_path: str) -> Path:
    raw = Path(ensure_str(value, field_path)).expanduser()
    resolved = raw if raw.is_absolute() else (base_dir / raw)
    return resolved.resolve()


def load_settings_payload(settings_path: Path) -> Dict[str, Any]:
    try:
        payload = yaml.safe_load(settings_path.read_text(encoding="utf-8")) or {}
    except OSError as exc:
        raise ConfigError(f"Error: Failed to read settings file {settings_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {settings_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level settings must be a mapping.")
    return payload


def parse_settings(payload: Dict[str, Any], base_dir: Path) -> Settings:
    unknown = set(payload.keys()) - SETTINGS_KEYS
    if unknown:
        raise ConfigError(f"Error: Unknown settings keys: {sorted(unknown)}.")

    log_file_raw = payload.get("log_file")
    return Settings(
        pipelines=resolve_path(payload.get("pipelines", DEFAULT_PIPELINES_DIR), base_dir, "pipelines"),
        refresh_seconds=ensure_int(payload.get("refresh_seconds"), "refresh_seconds", DEFAULT_REFRESH_SECONDS, 1),
        log_level=parse_log_level(payload.get("log_level"), "log_level"),
        log_file=resolve_path(log_file_raw, base_dir, "log_file") if log_file_raw is not None else None,
        shell=ensure_str(payload.get("shell", DEFAULT_SHELL), "shell"),
    )


def load_settings(
    settings_file: Optional[str] = None,
    pipelines: Optional[str] = None,
    refresh_seconds: Optional[int] = None,
    log_level: Optional[str] = None,
    log_file: Optional[str] = None,
    shell: Optional[str] = None,
    cwd: Optional[Path] = None,
) -> Settings:
    """
    Build ``Settings`` from the settings file and command line overrides.

    A missing default ``stagehand.yaml`` is not an error; a missing file that
    was asked for explicitly is.
    """
    base_dir = (cwd or Path.cwd()).resolve()
    if settings_file is not None:
        settings_path = resolve_path(settings_file, base_dir, "--settings")
        if not settings_path.is_file():
            raise ConfigError(f"Error: Settings file not found: {settings_path}")
    else:
        settings_path = base_dir / DEFAULT_SETTINGS_FILE

    if settings_path.is_file():
        settings = parse_settings(load_settings_payload(settings_path), settings_path.parent)
    else:
        settings = parse_settings({}, base_dir)

    overrides: Dict[str, Any] = {}
    if pipelines is not None:
        overrides["pipelines"] = resolve_path(pipelines, base_dir, "--pipelines")
    if refresh_seconds is not None:
        overrides["refresh_seconds"] = ensure_int(refresh_seconds, "--refresh", DEFAULT_REFRESH_SECONDS, 1)
    if log_level is not None:
        overrides["log_level"] = parse_log_level(log_level, "--log")
    if log_file is not None:
        overrides["log_file"] = resolve_path(log_file, base_dir, "--log-file")
    if shell is not None:
        overrides["shell"] = ensure_str(shell, "--shell")
    return replace(settings, **overrides)
