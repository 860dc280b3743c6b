from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Mapping

from .config import layered_setting
from .config_schema import ExtractionConfig
from .errors import ConfigError
from .llm import (
    ClaudePosterExtractor,
    GeminiPosterExtractor,
    OpenRouterPosterExtractor,
    PosterExtractor,
)
from .stores import SettingsStore


class AIProvider(str, Enum):
    GEMINI = "gemini"
    CLAUDE = "claude"
    OPENROUTER = "openrouter"

    @classmethod
    def parse(cls, value: str) -> "AIProvider":
        key = (value or "").strip().casefold()
        for member in cls:
            if member.value == key:
                return member
        supported = ", ".join(m.value for m in cls)
        raise ConfigError(f"Unsupported AI provider {value!r} (expected one of: {supported})")


@dataclass(frozen=True)
class ProviderSettings:
    provider: AIProvider
    api_key: str
    model: str
    prompt: str | None = None


class ProviderRegistry:
    """
    Resolves which AI provider to use and with what credentials.

    Every lookup goes feature scope, then global scope, then config/environment, so a
    settings change takes effect on the next call without rebuilding the registry.
    """

    def __init__(
        self,
        extractors: Mapping[AIProvider, PosterExtractor],
        *,
        config: ExtractionConfig,
        settings: SettingsStore | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        missing = [p.value for p in AIProvider if p not in extractors]
        if missing:
            raise ConfigError(f"No extractor registered for provider(s): {', '.join(missing)}")

        self._extractors = dict(extractors)
        self._config = config
        self._settings = settings
        self._environ = environ

    @classmethod
    def from_config(
        cls,
        config: ExtractionConfig,
        *,
        settings: SettingsStore | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> "ProviderRegistry":
        limits = {
            "max_output_tokens": config.max_output_tokens,
            "classify_max_output_tokens": config.classify_max_output_tokens,
        }
        return cls(
            {
                AIProvider.GEMINI: GeminiPosterExtractor(**limits),
                AIProvider.CLAUDE: ClaudePosterExtractor(**limits),
                AIProvider.OPENROUTER: OpenRouterPosterExtractor(**limits),
            },
            config=config,
            settings=settings,
            environ=environ,
        )

    def _setting(self, key: str, *, env_name: str | None = None) -> str | None:
        env = os.environ if self._environ is None else self._environ
        return layered_setting(self._settings, key, environ=env, env_name=env_name)

    def active_provider(self) -> AIProvider:
        return AIProvider.parse(self._setting("ai_provider") or self._config.provider)

    def resolve(self, provider: AIProvider | None = None) -> ProviderSettings:
        chosen = provider or self.active_provider()
        pcfg = self._config.provider_config(chosen.value)

        api_key = self._setting(f"{chosen.value}_api_key", env_name=pcfg.api_key_env)
        if not api_key:
            raise ConfigError(
                f"{chosen.value} API key is not configured "
                f"(set {pcfg.api_key_env} or the {chosen.value}_api_key setting)"
            )

        return ProviderSettings(
            provider=chosen,
            api_key=api_key,
            model=self._setting(f"{chosen.value}_model") or pcfg.model,
            prompt=self._setting("extraction_prompt"),
        )

    def extractor(self, provider: AIProvider) -> PosterExtractor:
        return self._extractors[provider]
