from __future__ import annotations

import unittest
from typing import Any

from ig_events.config import SCOPE_FEATURE, SCOPE_GLOBAL
from ig_events.config_schema import ExtractionConfig
from ig_events.errors import ConfigError
from ig_events.providers import AIProvider, ProviderRegistry


class _Settings:
    def __init__(self) -> None:
        self.values: dict[tuple[str, str], str] = {}

    def get_setting(self, scope: str, key: str) -> str | None:
        return self.values.get((scope, key))

    def set_setting(self, scope: str, key: str, value: str | None) -> None:
        if value is None:
            self.values.pop((scope, key), None)
        else:
            self.values[(scope, key)] = value


class _Extractor:
    def __init__(self, provider: str) -> None:
        self.provider = provider

    def extract(self, *args: Any, **kwargs: Any) -> Any:
        raise NotImplementedError

    def classify(self, *args: Any, **kwargs: Any) -> Any:
        raise NotImplementedError


def _registry(settings: _Settings, environ: dict[str, str], **config: Any) -> ProviderRegistry:
    return ProviderRegistry(
        {p: _Extractor(p.value) for p in AIProvider},  # type: ignore[misc]
        config=ExtractionConfig(**config),
        settings=settings,
        environ=environ,
    )


class TestProviderRegistry(unittest.TestCase):
    def test_defaults_to_configured_provider_and_env_key(self) -> None:
        registry = _registry(_Settings(), {"GEMINI_API_KEY": "env-key"})

        resolved = registry.resolve()

        self.assertEqual(resolved.provider, AIProvider.GEMINI)
        self.assertEqual(resolved.api_key, "env-key")
        self.assertEqual(resolved.model, "gemini-2.0-flash")
        self.assertIsNone(resolved.prompt)
        self.assertEqual(registry.extractor(resolved.provider).provider, "gemini")

    def test_feature_scope_wins_over_global_and_env(self) -> None:
        settings = _Settings()
        settings.set_setting(SCOPE_GLOBAL, "ai_provider", "openrouter")
        settings.set_setting(SCOPE_FEATURE, "ai_provider", "claude")
        settings.set_setting(SCOPE_GLOBAL, "claude_api_key", "global-key")
        settings.set_setting(SCOPE_FEATURE, "claude_model", "claude-custom")
        settings.set_setting(SCOPE_FEATURE, "extraction_prompt", "Custom prompt")
        registry = _registry(settings, {"CLAUDE_API_KEY": "env-key"})

        resolved = registry.resolve()

        self.assertEqual(resolved.provider, AIProvider.CLAUDE)
        self.assertEqual(resolved.api_key, "global-key")
        self.assertEqual(resolved.model, "claude-custom")
        self.assertEqual(resolved.prompt, "Custom prompt")

    def test_settings_changes_apply_without_rebuilding(self) -> None:
        settings = _Settings()
        registry = _registry(settings, {"GEMINI_API_KEY": "g", "OPENROUTER_API_KEY": "o"})
        self.assertEqual(registry.active_provider(), AIProvider.GEMINI)

        settings.set_setting(SCOPE_FEATURE, "ai_provider", "openrouter")
        self.assertEqual(registry.resolve().api_key, "o")

    def test_blank_values_count_as_missing(self) -> None:
        settings = _Settings()
        settings.set_setting(SCOPE_FEATURE, "gemini_api_key", "   ")
        with self.assertRaises(ConfigError) as ctx:
            _registry(settings, {}).resolve()
        self.assertIn("GEMINI_API_KEY", str(ctx.exception))

    def test_unknown_provider_is_config_error(self) -> None:
        settings = _Settings()
        settings.set_setting(SCOPE_FEATURE, "ai_provider", "palm")
        with self.assertRaises(ConfigError):
            _registry(settings, {}).active_provider()

    def test_every_provider_needs_an_extractor(self) -> None:
        with self.assertRaises(ConfigError):
            ProviderRegistry(
                {AIProvider.GEMINI: _Extractor("gemini")},  # type: ignore[dict-item]
                config=ExtractionConfig(),
            )


if __name__ == "__main__":
    unittest.main()
