from __future__ import annotations

import math
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool, field_validator
from pydantic.alias_generators import to_camel

OccurrenceType = Literal["single", "multi_day", "recurring", "all_day", "virtual"]
RecurrenceType = Literal["none", "daily", "weekly", "monthly", "yearly", "custom"]


class _Wire(BaseModel):
    """Provider JSON uses camelCase; unknown keys are ignored rather than rejected."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def _none_to_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, (str, bytes)):
        return [value]
    return value


def _scalar_text(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _clamp_unit(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(f):
        return None
    return max(0.0, min(1.0, f))


class Venue(_Wire):
    name: str | None = None
    address: str | None = None
    city: str | None = None
    region: str | None = None
    country: str | None = None

    @field_validator("*", mode="before")
    @classmethod
    def _text_only(cls, v: Any) -> Any:
        return _scalar_text(v)


class ContactInfo(_Wire):
    phone: str | None = None
    email: str | None = None
    website: str | None = None

    @field_validator("*", mode="before")
    @classmethod
    def _text_only(cls, v: Any) -> Any:
        return _scalar_text(v)


class SeriesDate(_Wire):
    start: str
    end: str | None = None


class DraftEvent(_Wire):
    title: str = ""
    description: str | None = None
    start_date: str | None = None
    start_time: str | None = None
    end_date: str | None = None
    end_time: str | None = None
    timezone: str | None = None
    occurrence_type: OccurrenceType | None = None
    recurrence_type: RecurrenceType | None = None
    series_dates: list[SeriesDate] = Field(default_factory=list)
    venue: Venue | None = None
    organizer: str | None = None
    category: str | None = None
    price: str | None = None
    tags: list[str] = Field(default_factory=list)
    registration_url: str | None = None
    contact_info: ContactInfo | None = None
    additional_info: str | None = None
    url: str | None = None
    image_url: str | None = None

    @field_validator("title", mode="before")
    @classmethod
    def _title_text(cls, v: Any) -> Any:
        if v is None or isinstance(v, (dict, list)):
            return ""
        return v if isinstance(v, str) else str(v)

    @field_validator(
        "description", "start_date", "start_time", "end_date", "end_time", "timezone",
        "organizer", "category", "price", "registration_url", "additional_info",
        "url", "image_url",
        mode="before",
    )
    @classmethod
    def _optional_text(cls, v: Any) -> Any:
        return _scalar_text(v)

    @field_validator("tags", mode="before")
    @classmethod
    def _tag_strings(cls, v: Any) -> Any:
        items = _none_to_list(v)
        if not isinstance(items, list):
            return []
        return [t.strip() for t in items if isinstance(t, str) and t.strip()]

    @field_validator("series_dates", mode="before")
    @classmethod
    def _usable_series_dates(cls, v: Any) -> Any:
        items = _none_to_list(v)
        if not isinstance(items, list):
            return []
        return [d for d in items if isinstance(d, dict) and isinstance(d.get("start"), str)]

    @field_validator("venue", mode="before")
    @classmethod
    def _venue_object(cls, v: Any) -> Any:
        # A bare string is the venue name.
        if isinstance(v, str):
            return {"name": v} if v.strip() else None
        return v if isinstance(v, dict) else None

    @field_validator("contact_info", mode="before")
    @classmethod
    def _contact_object(cls, v: Any) -> Any:
        return v if isinstance(v, dict) else None

    @field_validator("occurrence_type", "recurrence_type", mode="before")
    @classmethod
    def _unknown_enum_to_none(cls, v: Any) -> Any:
        # Models sometimes invent values; keep the draft and drop the label.
        if isinstance(v, str) and v.strip().casefold() in {
            "single", "multi_day", "recurring", "all_day", "virtual",
            "none", "daily", "weekly", "monthly", "yearly", "custom",
        }:
            return v.strip().casefold()
        return None


class Classification(_Wire):
    is_event_poster: StrictBool
    confidence: float | None = None
    reasoning: str | None = None
    cues: list[str] = Field(default_factory=list)
    should_extract_events: bool | None = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float | None:
        return _clamp_unit(v)

    @field_validator("cues", mode="before")
    @classmethod
    def _cues_as_list(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, list):
            return [str(c) for c in v]
        return [str(v)]


class ExtractionConfidence(_Wire):
    overall: float | None = None
    notes: str | None = None

    @field_validator("overall", mode="before")
    @classmethod
    def _clamp_overall(cls, v: Any) -> float | None:
        return _clamp_unit(v)


class ExtractionPayload(_Wire):
    events: list[DraftEvent] = Field(default_factory=list)
    classification: Classification | None = None
    extraction_confidence: ExtractionConfidence | None = None

    @field_validator("events", mode="before")
    @classmethod
    def _events_list(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, dict):
            return [v]
        if isinstance(v, list):
            # Stray non-object entries are dropped; the remaining drafts still count.
            return [e for e in v if isinstance(e, dict)]
        return v

    @field_validator("classification", mode="before")
    @classmethod
    def _drop_partial_classification(cls, v: Any) -> Any:
        # A classification without a boolean verdict is noise inside an extraction.
        if isinstance(v, dict) and not isinstance(
            v.get("isEventPoster", v.get("is_event_poster")), bool
        ):
            return None
        return v
