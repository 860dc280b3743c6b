from __future__ import annotations

from .config import load_config, resolve_apify_token
from .config_schema import AppConfig
from .errors import (
    ActorRunFailedError,
    ActorRunTimeoutError,
    ApifyError,
    ConfigError,
    ExtractionError,
    ExtractorError,
    RunnerInfraError,
    StorageError,
)

__all__ = [
    "ActorRunFailedError",
    "ActorRunTimeoutError",
    "AppConfig",
    "ApifyError",
    "ConfigError",
    "ExtractionError",
    "ExtractorError",
    "RunnerInfraError",
    "StorageError",
    "load_config",
    "resolve_apify_token",
]
