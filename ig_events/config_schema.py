from __future__ import annotations

import re
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DEFAULT_APIFY_API_URL = "https://api.apify.com"


def _validate_env_var_name(value: str) -> str:
    name = (value or "").strip()
    if not _ENV_NAME_RE.fullmatch(name):
        raise ValueError("must be a valid environment variable name")
    return name


PositiveInt = Annotated[int, Field(ge=1)]
NonNegativeInt = Annotated[int, Field(ge=0)]
PositiveFloat = Annotated[float, Field(gt=0)]

ProviderName = Literal["gemini", "claude", "openrouter"]


class ApifyConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    token_env: str = "APIFY_TOKEN"
    actor_id: str = "apify/instagram-post-scraper"
    base_url: str = DEFAULT_APIFY_API_URL

    batch_size: PositiveInt = 8
    run_timeout_secs: PositiveInt = 180
    request_timeout_secs: PositiveInt = 30
    poll_interval_secs: PositiveFloat = 5.0
    # Clamped to 1..1000 when paging; out-of-range values are tolerated here.
    dataset_page_size: int = 500

    use_subprocess_runner: bool = True
    runner_command: list[str] | None = None
    runner_timeout_buffer_secs: NonNegativeInt = 30

    known_id_stop_after: PositiveInt = 2

    @field_validator("token_env")
    @classmethod
    def _token_env_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)

    @field_validator("actor_id")
    @classmethod
    def _actor_id_must_be_non_empty(cls, v: str) -> str:
        actor = (v or "").strip()
        if not actor:
            raise ValueError("must be a non-empty Actor id")
        return actor

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        url = (v or "").strip().rstrip("/")
        return url or DEFAULT_APIFY_API_URL

    @field_validator("runner_command")
    @classmethod
    def _runner_command_not_blank(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return None
        parts = [p for p in (s.strip() for s in v) if p]
        if not parts:
            raise ValueError("must contain at least one non-empty argument")
        return parts


class ProviderConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    api_key_env: str
    model: str

    @field_validator("api_key_env")
    @classmethod
    def _api_key_env_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)


class ExtractionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    provider: ProviderName = "gemini"
    image_dir: str = "./data/instagram_images"
    default_timezone: str = "America/Vancouver"
    max_output_tokens: PositiveInt = 4096
    classify_max_output_tokens: PositiveInt = 1024

    gemini: ProviderConfig = Field(
        default_factory=lambda: ProviderConfig(
            api_key_env="GEMINI_API_KEY", model="gemini-2.0-flash"
        )
    )
    claude: ProviderConfig = Field(
        default_factory=lambda: ProviderConfig(
            api_key_env="CLAUDE_API_KEY", model="claude-sonnet-4-5"
        )
    )
    openrouter: ProviderConfig = Field(
        default_factory=lambda: ProviderConfig(
            api_key_env="OPENROUTER_API_KEY", model="google/gemini-2.0-flash-exp"
        )
    )

    def provider_config(self, name: str) -> ProviderConfig:
        if name == "gemini":
            return self.gemini
        if name == "claude":
            return self.claude
        if name == "openrouter":
            return self.openrouter
        raise KeyError(name)


class IngestConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    posts_per_account: PositiveInt = 10
    download_images: bool = True
    download_timeout_secs: PositiveInt = 30


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    db_path: str = "./data/state.sqlite"
    log_path: str = "./data/run.log"


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    apify: ApifyConfig = Field(default_factory=ApifyConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    ingest: IngestConfig = Field(default_factory=IngestConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
