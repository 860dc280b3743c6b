from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


def normalize_handle(value: str | None) -> str:
    handle = (value or "").strip()
    if handle.startswith("@"):
        handle = handle[1:].strip()
    return handle.strip("/")


def profile_url(handle: str) -> str:
    return f"https://www.instagram.com/{normalize_handle(handle)}/"


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"
    TIMED_OUT = "timedOut"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL

    @classmethod
    def from_apify(cls, value: Any) -> "RunStatus":
        key = str(value or "").strip().upper().replace("_", "-")
        return _APIFY_STATUS.get(key, cls.RUNNING)


_TERMINAL = frozenset(
    {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED, RunStatus.TIMED_OUT}
)

_APIFY_STATUS: dict[str, RunStatus] = {
    "READY": RunStatus.QUEUED,
    "RUNNING": RunStatus.RUNNING,
    "TIMING-OUT": RunStatus.RUNNING,
    "ABORTING": RunStatus.RUNNING,
    "SUCCEEDED": RunStatus.SUCCEEDED,
    "FAILED": RunStatus.FAILED,
    "ABORTED": RunStatus.ABORTED,
    "TIMED-OUT": RunStatus.TIMED_OUT,
}


@dataclass(frozen=True)
class Account:
    """An Instagram profile we follow, plus the post ids already ingested for it."""

    handle: str
    known_post_ids: frozenset[str] = frozenset()
    last_checked_at: datetime | None = None
    default_timezone: str | None = None


@dataclass(frozen=True)
class RawPost:
    """A post as delivered by the scraping Actor, before it reaches the post store."""

    post_id: str
    timestamp: datetime
    permalink: str
    caption: str = ""
    image_url: str | None = None
    video_url: str | None = None
    is_video: bool = False
    account: str | None = None

    def to_raw(self) -> dict[str, Any]:
        return {
            "id": self.post_id,
            "caption": self.caption,
            "timestamp": self.timestamp.isoformat(),
            "imageUrl": self.image_url,
            "videoUrl": self.video_url,
            "isVideo": self.is_video,
            "permalink": self.permalink,
            "username": self.account,
        }


@dataclass(frozen=True)
class ActorRunInfo:
    run_id: str
    status: RunStatus
    dataset_id: str | None = None
    key_value_store_id: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


@dataclass(frozen=True)
class ExtractionRequest:
    post_id: str
    overwrite: bool = False
    create_events: bool = True


@dataclass(frozen=True)
class PostRecord:
    """A stored post as seen by the extraction service."""

    id: str
    platform_post_id: str | None
    account: str | None = None
    caption: str | None = None
    image_url: str | None = None
    permalink: str | None = None
    local_image_path: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)
    scraped_at: datetime | None = None
    is_event_poster: bool | None = None
    classification_confidence: float | None = None


@dataclass(frozen=True)
class RunRecord:
    id: str
    source: str
    status: str
    started_at: datetime
    finished_at: datetime | None = None
    events_found: int = 0
    pages_crawled: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EventRecord:
    """A materialized event row derived from one draft."""

    id: str
    run_id: str
    source_event_id: str
    title: str
    start_at: datetime
    timezone: str
    url: str
    end_at: datetime | None = None
    description: str = ""
    venue_name: str | None = None
    venue_address: str | None = None
    city: str | None = None
    region: str | None = None
    country: str | None = None
    organizer: str | None = None
    category: str | None = None
    price: str | None = None
    tags: tuple[str, ...] = ()
    registration_url: str | None = None
    contact: dict[str, Any] = field(default_factory=dict)
    image_url: str | None = None
    account: str | None = None
    platform_post_id: str | None = None
    local_image_path: str | None = None
    classification_confidence: float | None = None
    raw: dict[str, Any] = field(default_factory=dict)
