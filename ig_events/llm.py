from __future__ import annotations

import base64
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

import google.generativeai as genai
import requests
from openai import OpenAI
from pydantic import ValidationError

from .errors import ConfigError, ExtractorError
from .llm_schema import Classification, ExtractionPayload
from .prompts import CLASSIFICATION_PROMPT, EXTRACTION_PROMPT

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

_MIME_BY_SUFFIX = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
}

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


@dataclass(frozen=True)
class PosterImage:
    data: bytes
    mime_type: str = "image/jpeg"

    @classmethod
    def from_file(cls, path: str | Path) -> "PosterImage":
        p = Path(path)
        return cls(data=p.read_bytes(), mime_type=mime_type_for(p))

    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64()}"


def mime_type_for(path: str | Path) -> str:
    return _MIME_BY_SUFFIX.get(Path(path).suffix.casefold(), "image/jpeg")


def build_context(
    *,
    caption: str | None,
    posted_at: datetime | None,
    classifying: bool = False,
) -> str | None:
    """The "Additional context" block sent after the prompt, or None when there is nothing to add."""
    sections: list[str] = []

    if posted_at is not None:
        stamp = posted_at.astimezone(timezone.utc).replace(tzinfo=None, microsecond=0).isoformat()
        subject = "potential events" if classifying else "events"
        sections.append(
            "Instagram post publication details:\n"
            f"- Published on {stamp}.\n"
            f"- Treat {subject} as upcoming relative to this date unless the poster clearly "
            "indicates an earlier year."
        )

    text = (caption or "").strip()
    if text:
        sections.append(f"Instagram caption (additional context):\n{text}")

    if not sections:
        return None
    return "Additional context:\n" + "\n\n".join(sections)


def parse_json_object(raw: str, *, provider: str) -> dict[str, Any]:
    """Decode a model reply: strip markdown fences, parse, and on failure retry on the first {...} span."""
    cleaned = _FENCE_RE.sub("", raw or "").replace("```", "").strip()
    if not cleaned:
        raise ExtractorError(f"{provider} response did not include any JSON content")

    try:
        obj = json.loads(cleaned)
    except json.JSONDecodeError as first:
        match = _OBJECT_RE.search(cleaned)
        if match is None:
            raise ExtractorError(f"Failed to parse {provider} response as JSON: {first}") from first
        try:
            obj = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise ExtractorError(f"Failed to parse {provider} response as JSON") from e

    if not isinstance(obj, dict):
        raise ExtractorError(f"{provider} response JSON must be an object")
    return obj


def parse_payload(raw: str, *, provider: str) -> ExtractionPayload:
    obj = parse_json_object(raw, provider=provider)
    try:
        return ExtractionPayload.model_validate(obj)
    except ValidationError as e:
        raise ExtractorError(f"{provider} extraction response has an unexpected shape: {e}") from e


def parse_classification(raw: str, *, provider: str) -> Classification:
    obj = parse_json_object(raw, provider=provider)
    if not isinstance(obj.get("isEventPoster", obj.get("is_event_poster")), bool):
        raise ExtractorError(f"{provider} classification response missing isEventPoster field")
    try:
        return Classification.model_validate(obj)
    except ValidationError as e:
        raise ExtractorError(f"{provider} classification response has an unexpected shape: {e}") from e


def _require_key(api_key: str, provider: str) -> str:
    key = (api_key or "").strip()
    if not key:
        raise ConfigError(f"{provider} API key is not configured")
    return key


class PosterExtractor(Protocol):
    provider: str

    def extract(
        self,
        image: PosterImage,
        *,
        api_key: str,
        model: str,
        prompt: str | None = None,
        caption: str | None = None,
        posted_at: datetime | None = None,
    ) -> ExtractionPayload: ...

    def classify(
        self,
        image: PosterImage,
        *,
        api_key: str,
        model: str,
        caption: str | None = None,
        posted_at: datetime | None = None,
    ) -> Classification: ...


@dataclass(frozen=True)
class _ProviderRequest:
    image: PosterImage
    api_key: str
    model: str
    prompt: str
    context: str | None
    max_tokens: int


class _BaseExtractor(ABC):
    provider = "base"

    def __init__(self, *, max_output_tokens: int = 4096, classify_max_output_tokens: int = 1024) -> None:
        self._max_tokens = int(max_output_tokens)
        self._classify_max_tokens = int(classify_max_output_tokens)

    @abstractmethod
    def _complete(self, req: _ProviderRequest) -> str: ...

    def _call(
        self,
        image: PosterImage,
        *,
        api_key: str,
        model: str,
        prompt: str,
        context: str | None,
        max_tokens: int,
    ) -> str:
        req = _ProviderRequest(
            image=image,
            api_key=_require_key(api_key, self.provider),
            model=model,
            prompt=prompt,
            context=context,
            max_tokens=max_tokens,
        )
        try:
            return self._complete(req)
        except (ExtractorError, ConfigError):
            raise
        except Exception as e:
            raise ExtractorError(f"{self.provider} API error ({model}): {e}") from e

    def extract(
        self,
        image: PosterImage,
        *,
        api_key: str,
        model: str,
        prompt: str | None = None,
        caption: str | None = None,
        posted_at: datetime | None = None,
    ) -> ExtractionPayload:
        raw = self._call(
            image,
            api_key=api_key,
            model=model,
            prompt=(prompt or "").strip() or EXTRACTION_PROMPT,
            context=build_context(caption=caption, posted_at=posted_at),
            max_tokens=self._max_tokens,
        )
        return parse_payload(raw, provider=self.provider)

    def classify(
        self,
        image: PosterImage,
        *,
        api_key: str,
        model: str,
        caption: str | None = None,
        posted_at: datetime | None = None,
    ) -> Classification:
        raw = self._call(
            image,
            api_key=api_key,
            model=model,
            prompt=CLASSIFICATION_PROMPT,
            context=build_context(caption=caption, posted_at=posted_at, classifying=True),
            max_tokens=self._classify_max_tokens,
        )
        return parse_classification(raw, provider=self.provider)


GeminiModelFactory = Callable[[str, str], Any]


def _gemini_model(api_key: str, model: str) -> Any:
    genai.configure(api_key=api_key)
    return genai.GenerativeModel(model)


class GeminiPosterExtractor(_BaseExtractor):
    provider = "gemini"

    def __init__(self, *, model_factory: GeminiModelFactory | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._model_factory = model_factory or _gemini_model

    def _complete(self, req: _ProviderRequest) -> str:
        client = self._model_factory(req.api_key, req.model)
        parts: list[Any] = [{"mime_type": req.image.mime_type, "data": req.image.data}, req.prompt]
        if req.context:
            parts.append(req.context)

        response = client.generate_content(
            parts,
            generation_config={"max_output_tokens": req.max_tokens, "temperature": 0.2},
        )
        try:
            text = response.text
        except ValueError as e:
            # Raised by the SDK when the reply was blocked or has no text part.
            raise ExtractorError(f"Gemini response did not include text output: {e}") from e
        return text or ""


class ClaudePosterExtractor(_BaseExtractor):
    """Anthropic Messages API over plain HTTP."""

    provider = "claude"

    def __init__(
        self,
        *,
        session: requests.Session | None = None,
        timeout_secs: float = 120.0,
        url: str = ANTHROPIC_MESSAGES_URL,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._session = session or requests.Session()
        self._timeout = float(timeout_secs)
        self._url = url

    def _complete(self, req: _ProviderRequest) -> str:
        content: list[dict[str, Any]] = [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": req.image.mime_type,
                    "data": req.image.base64(),
                },
            },
            {"type": "text", "text": req.prompt},
        ]
        if req.context:
            content.append({"type": "text", "text": req.context})

        response = self._session.post(
            self._url,
            headers={
                "x-api-key": req.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
            json={
                "model": req.model,
                "max_tokens": req.max_tokens,
                "messages": [{"role": "user", "content": content}],
            },
            timeout=self._timeout,
        )
        if response.status_code >= 400:
            raise ExtractorError(
                f"Claude API error ({req.model}): HTTP {response.status_code}: {response.text[:500]}"
            )

        data = response.json()
        for block in data.get("content") or []:
            if isinstance(block, dict) and block.get("type") == "text":
                return str(block.get("text") or "")
        raise ExtractorError("Claude response did not include text output")


OpenAIClientFactory = Callable[[str], Any]


class OpenRouterPosterExtractor(_BaseExtractor):
    """OpenRouter's OpenAI-compatible chat completions endpoint via the openai SDK."""

    provider = "openrouter"

    def __init__(
        self,
        *,
        client_factory: OpenAIClientFactory | None = None,
        app_title: str = "ig-events",
        app_url: str = "http://localhost",
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._headers = {"HTTP-Referer": app_url, "X-Title": app_title}
        self._client_factory = client_factory or self._default_client

    def _default_client(self, api_key: str) -> OpenAI:
        return OpenAI(api_key=api_key, base_url=OPENROUTER_BASE_URL, default_headers=self._headers)

    def _complete(self, req: _ProviderRequest) -> str:
        content: list[dict[str, Any]] = [
            {"type": "text", "text": req.prompt},
            {"type": "image_url", "image_url": {"url": req.image.data_url()}},
        ]
        if req.context:
            content.append({"type": "text", "text": req.context})

        client = self._client_factory(req.api_key)
        completion = client.chat.completions.create(
            model=req.model,
            max_tokens=req.max_tokens,
            messages=[{"role": "user", "content": content}],
        )

        choices = getattr(completion, "choices", None) or []
        if not choices:
            raise ExtractorError("OpenRouter response did not include any choices")
        text = getattr(getattr(choices[0], "message", None), "content", None)

        if isinstance(text, list):
            text = "".join(str(part.get("text") or "") for part in text if isinstance(part, dict))
        if not isinstance(text, str) or not text.strip():
            raise ExtractorError("OpenRouter response did not include text output")
        return text
