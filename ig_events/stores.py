from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Protocol, Sequence

from .models import Account, EventRecord, PostRecord, RunRecord


class PostStore(Protocol):
    def get_post(self, post_id: str) -> PostRecord | None: ...

    def update_post_raw(self, post_id: str, raw: Mapping[str, Any]) -> None: ...

    def update_post_classification(
        self,
        post_id: str,
        *,
        is_event_poster: bool,
        confidence: float | None,
        raw: Mapping[str, Any],
    ) -> None: ...

    def list_extraction_candidates(self, *, account: str | None = None) -> list[PostRecord]:
        """Posts flagged as event posters with a local image, newest scrape first."""
        ...


class EventStore(Protocol):
    def replace_post_events(
        self,
        platform_post_id: str,
        run: RunRecord,
        events: Sequence[EventRecord],
    ) -> int:
        """
        Atomically drop every event linked to the post, record the run, insert the events.

        Returns how many old events were removed.
        """
        ...

    def events_for_post(self, platform_post_id: str) -> list[EventRecord]: ...


class RunStore(Protocol):
    def insert_run(self, run: RunRecord) -> None: ...

    def finish_run(
        self,
        run_id: str,
        *,
        status: str,
        events_found: int | None = None,
        pages_crawled: int | None = None,
        metadata: Mapping[str, Any] | None = None,
        finished_at: datetime | None = None,
    ) -> None: ...


class SettingsStore(Protocol):
    def get_setting(self, scope: str, key: str) -> str | None: ...


class AccountLookup(Protocol):
    def get_account(self, handle: str) -> Account | None: ...
