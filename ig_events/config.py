from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Protocol

import yaml
from pydantic import ValidationError

from .config_schema import AppConfig
from .errors import ConfigError

SCOPE_FEATURE = "instagram"
SCOPE_GLOBAL = "system"


class _SettingsReader(Protocol):
    def get_setting(self, scope: str, key: str) -> str | None: ...


def load_config(path: str | Path) -> AppConfig:
    """
    Load a YAML config file and validate it into a typed AppConfig.

    Raises ConfigError with a readable validation message on failure.
    """
    p = Path(path)

    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")

    try:
        raw_text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {p}") from e

    try:
        data = yaml.safe_load(raw_text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML in {p}: {e}") from e

    if data is None:
        data = {}

    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML in {p} must be a mapping/object")

    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(_format_pydantic_errors(e, p)) from e


def layered_setting(
    settings: _SettingsReader | None,
    key: str,
    *,
    environ: Mapping[str, str] | None = None,
    env_name: str | None = None,
) -> str | None:
    """
    Resolve a setting: feature scope, then global scope, then an environment variable.

    Blank values at any layer are treated as absent.
    """
    if settings is not None:
        for scope in (SCOPE_FEATURE, SCOPE_GLOBAL):
            value = (settings.get_setting(scope, key) or "").strip()
            if value:
                return value

    if env_name:
        env = os.environ if environ is None else environ
        value = (env.get(env_name) or "").strip()
        if value:
            return value

    return None


def resolve_apify_token(
    config: AppConfig,
    *,
    settings: _SettingsReader | None = None,
    environ: Mapping[str, str] | None = None,
) -> str:
    env = os.environ if environ is None else environ
    from_env = (env.get(config.apify.token_env) or "").strip()
    if from_env:
        return from_env

    stored = layered_setting(settings, "apify_api_token")
    if stored:
        return stored

    raise ConfigError(
        f"Missing Apify token: set {config.apify.token_env} or the apify_api_token setting"
    )


def _format_pydantic_errors(err: ValidationError, path: Path) -> str:
    lines: list[str] = [f"Invalid configuration in {path}:"]
    for item in err.errors():
        loc = ".".join(str(part) for part in item.get("loc", [])) or "<root>"
        msg = item.get("msg", "invalid value")
        lines.append(f"- {loc}: {msg}")
    return "\n".join(lines)
