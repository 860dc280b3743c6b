from __future__ import annotations

import hashlib
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from pathlib import Path
from typing import Any, Callable, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .config_schema import ExtractionConfig
from .errors import ExtractionError
from .items import parse_timestamp
from .llm import PosterImage
from .llm_schema import Classification, DraftEvent, ExtractionPayload
from .models import EventRecord, ExtractionRequest, PostRecord, RunRecord
from .providers import ProviderRegistry
from .run_log import RunLogger
from .stores import AccountLookup, EventStore, PostStore

RUN_SOURCE = "instagram"

_START_OF_DAY = time(0, 0, 0)
_END_OF_DAY = time(23, 59, 59)
_TIME_FORMATS = ("%I:%M %p", "%I:%M%p", "%I %p", "%I%p", "%H.%M", "%Hh%M")
_WS_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class ExtractionResult:
    post_id: str
    provider: str
    model: str
    payload: ExtractionPayload
    events_created: int
    message: str


@dataclass(frozen=True)
class BulkItemResult:
    post_id: str
    success: bool
    events_created: int = 0
    error: str | None = None


@dataclass(frozen=True)
class BulkExtractionReport:
    processed: int
    successful: int
    failed: int
    remaining: int
    results: list[BulkItemResult] = field(default_factory=list)


def resolve_posted_at(post: PostRecord) -> tuple[datetime | None, str]:
    """
    Pick the timestamp that anchors relative dates on the poster.

    Returns (timestamp, source) with source one of instagram, raw, scraped_at, none.
    """
    raw = post.raw or {}
    ig = raw.get("instagram")
    if isinstance(ig, Mapping):
        ts = parse_timestamp(ig.get("timestamp"))
        if ts is not None:
            return ts, "instagram"

    ts = parse_timestamp(raw.get("timestamp"))
    if ts is not None:
        return ts, "raw"

    if post.scraped_at is not None:
        return post.scraped_at, "scraped_at"
    return None, "none"


def extracted_events(raw: Mapping[str, Any] | None) -> list[Any]:
    if not raw:
        return []
    extraction = raw.get("extraction")
    if isinstance(extraction, Mapping) and isinstance(extraction.get("events"), list):
        return list(extraction["events"])
    legacy = raw.get("events")
    return list(legacy) if isinstance(legacy, list) else []


def has_extracted_events(raw: Mapping[str, Any] | None) -> bool:
    return len(extracted_events(raw)) > 0


def stable_event_key(platform_post_id: str, index: int, title: str) -> str:
    normalized = _WS_RE.sub(" ", (title or "").casefold()).strip()
    digest = hashlib.sha256(f"{platform_post_id}\x1f{index}\x1f{normalized}".encode("utf-8"))
    return digest.hexdigest()


def _zone(name: str | None) -> ZoneInfo | None:
    n = (name or "").strip()
    if not n:
        return None
    try:
        return ZoneInfo(n)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def _parse_date(value: str | None) -> date | None:
    s = (value or "").strip()
    if len(s) < 10:
        return None
    try:
        return date.fromisoformat(s[:10])
    except ValueError:
        return None


def _parse_time(value: str | None) -> time | None:
    s = (value or "").strip()
    if not s:
        return None
    try:
        return time.fromisoformat(s).replace(tzinfo=None)
    except ValueError:
        pass
    for fmt in _TIME_FORMATS:
        try:
            return datetime.strptime(s.upper(), fmt).time()
        except ValueError:
            continue
    return None


def normalize_draft(
    draft: DraftEvent,
    index: int,
    *,
    post: PostRecord,
    run_id: str,
    anchor: datetime | None,
    fallback_timezone: str,
    now: datetime,
) -> EventRecord:
    """Turn one draft into an event row; dates are wall-clock times in the event's timezone."""
    zone_name = next(
        (n for n in (draft.timezone, fallback_timezone) if _zone(n) is not None),
        "UTC",
    )
    zone = _zone(zone_name) or timezone.utc

    start_day = _parse_date(draft.start_date)
    if start_day is not None:
        start_at = datetime.combine(start_day, _parse_time(draft.start_time) or _START_OF_DAY, zone)
    else:
        start_at = (anchor or now).astimezone(zone)

    end_day = _parse_date(draft.end_date)
    end_clock = _parse_time(draft.end_time)
    end_at: datetime | None = None
    if end_day is not None:
        end_at = datetime.combine(end_day, end_clock or _END_OF_DAY, zone)
    elif end_clock is not None and start_day is not None:
        end_at = datetime.combine(start_day, end_clock, zone)

    platform_id = post.platform_post_id or post.id
    venue = draft.venue
    contact = draft.contact_info.to_wire() if draft.contact_info else {}
    title = (draft.title or "").strip() or "Untitled event"

    return EventRecord(
        id=uuid.uuid4().hex,
        run_id=run_id,
        source_event_id=stable_event_key(platform_id, index, title),
        title=title,
        start_at=start_at,
        end_at=end_at,
        timezone=zone_name,
        url=draft.url or post.permalink or f"https://instagram.com/p/{platform_id}/",
        description=draft.description or "",
        venue_name=venue.name if venue else None,
        venue_address=venue.address if venue else None,
        city=venue.city if venue else None,
        region=venue.region if venue else None,
        country=venue.country if venue else None,
        organizer=draft.organizer,
        category=draft.category,
        price=draft.price,
        tags=tuple(t for t in draft.tags if t),
        registration_url=draft.registration_url,
        contact={k: v for k, v in contact.items() if v},
        image_url=draft.image_url or post.image_url,
        account=post.account,
        platform_post_id=platform_id,
        local_image_path=post.local_image_path,
        classification_confidence=post.classification_confidence,
        raw={"draft": draft.to_wire(), "draftIndex": index},
    )


class ExtractionService:
    """
    Turns a stored post's poster image into structured events.

    Extraction is idempotent: a post that already carries extracted events is refused
    unless overwrite is set, and re-materializing a post replaces its events rather
    than adding a second generation.
    """

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        posts: PostStore,
        events: EventStore,
        config: ExtractionConfig,
        accounts: AccountLookup | None = None,
        logger: RunLogger | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._posts = posts
        self._events = events
        self._config = config
        self._accounts = accounts
        self._logger = logger or RunLogger.disabled()
        self._now = clock or (lambda: datetime.now(timezone.utc))

    def _load_post(self, post_id: str) -> PostRecord:
        post = self._posts.get_post(post_id)
        if post is None:
            raise ExtractionError(f"Post not found: {post_id}", kind="not_found", details={"post_id": post_id})
        return post

    def local_image_path(self, post: PostRecord) -> Path | None:
        recorded = (post.local_image_path or "").strip()
        if not recorded:
            return None
        p = Path(recorded)
        if not p.is_absolute():
            p = Path(self._config.image_dir) / p
        return p if p.is_file() else None

    def _require_image(self, post: PostRecord) -> Path:
        path = self.local_image_path(post)
        if path is None:
            raise ExtractionError(
                f"Post {post.id} has no downloaded image to analyze",
                kind="image_unavailable",
                details={"post_id": post.id, "local_image_path": post.local_image_path},
            )
        return path

    def _account_timezone(self, post: PostRecord) -> str | None:
        if self._accounts is None or not post.account:
            return None
        account = self._accounts.get_account(post.account)
        return account.default_timezone if account is not None else None

    def handle(self, request: ExtractionRequest) -> ExtractionResult:
        return self.extract(
            request.post_id,
            overwrite=request.overwrite,
            create_events=request.create_events,
        )

    def extract(
        self,
        post_id: str,
        *,
        overwrite: bool = False,
        create_events: bool = True,
    ) -> ExtractionResult:
        settings = self._registry.resolve()
        post = self._load_post(post_id)
        log = self._logger.bind(post_id=post.id, provider=settings.provider.value)

        image_path = self._require_image(post)

        if not overwrite and has_extracted_events(post.raw):
            existing = post.raw.get("extraction")
            if not isinstance(existing, Mapping):
                existing = {"events": extracted_events(post.raw)}
            raise ExtractionError(
                f"Post {post.id} already has extracted events; pass overwrite to re-run",
                kind="already_extracted",
                details={"post_id": post.id, "existing_data": dict(existing)},
            )

        anchor, anchor_source = resolve_posted_at(post)
        if anchor_source == "scraped_at":
            log.warning(
                "extraction_anchor_degraded",
                reason="no publication timestamp in raw data; using scrape time",
                anchor=anchor,
            )

        extractor = self._registry.extractor(settings.provider)
        payload = extractor.extract(
            PosterImage.from_file(image_path),
            api_key=settings.api_key,
            model=settings.model,
            prompt=settings.prompt,
            caption=post.caption,
            posted_at=anchor,
        )

        now = self._now()
        raw = dict(post.raw or {})
        raw["extraction"] = {
            **payload.to_wire(),
            "aiProvider": settings.provider.value,
            "model": settings.model,
            "extractedAt": now.isoformat(),
        }
        raw["instagram"] = {
            "timestamp": (anchor or now).isoformat(),
            "postId": post.platform_post_id,
            "caption": post.caption,
            "imageUrl": post.image_url,
            "localImagePath": post.local_image_path,
        }
        self._posts.update_post_raw(post.id, raw)

        created = 0
        if create_events and payload.events:
            created = self._materialize(
                post, payload, anchor=anchor, provider=settings.provider.value,
                model=settings.model, now=now, log=log,
            )

        log.info("extraction_completed", drafts=len(payload.events), events_created=created)
        return ExtractionResult(
            post_id=post.id,
            provider=settings.provider.value,
            model=settings.model,
            payload=payload,
            events_created=created,
            message=f"Extracted {len(payload.events)} event(s) from post using {settings.provider.value}",
        )

    def _materialize(
        self,
        post: PostRecord,
        payload: ExtractionPayload,
        *,
        anchor: datetime | None,
        provider: str,
        model: str,
        now: datetime,
        log: RunLogger,
    ) -> int:
        platform_id = post.platform_post_id or post.id
        run = RunRecord(
            id=uuid.uuid4().hex,
            source=RUN_SOURCE,
            status="success",
            started_at=now,
            finished_at=now,
            events_found=len(payload.events),
            pages_crawled=1,
            metadata={
                "type": "manual_extraction",
                "provider": provider,
                "model": model,
                "postId": post.id,
                "platformPostId": platform_id,
            },
        )
        fallback_tz = self._account_timezone(post) or self._config.default_timezone
        events = [
            normalize_draft(
                draft, i, post=post, run_id=run.id, anchor=anchor,
                fallback_timezone=fallback_tz, now=now,
            )
            for i, draft in enumerate(payload.events)
        ]

        deleted = self._events.replace_post_events(platform_id, run, events)
        log.info("events_replaced", run_id=run.id, deleted=deleted, inserted=len(events))
        return len(events)

    def extract_many(
        self,
        *,
        account: str | None = None,
        limit: int | None = None,
        overwrite: bool = False,
    ) -> BulkExtractionReport:
        """Extract posters newest first, one at a time; overwrite also re-runs posts that already have events."""
        candidates = [
            p for p in self._posts.list_extraction_candidates(account=account)
            if overwrite or not has_extracted_events(p.raw)
        ]
        batch = candidates if limit is None else candidates[: max(0, int(limit))]

        results: list[BulkItemResult] = []
        for post in batch:
            try:
                res = self.extract(post.id, overwrite=overwrite, create_events=True)
            except Exception as e:
                self._logger.exception("bulk_extraction_failed", exc=e, post_id=post.id)
                results.append(BulkItemResult(post_id=post.id, success=False, error=str(e)))
                continue
            results.append(BulkItemResult(post_id=post.id, success=True, events_created=res.events_created))

        successful = sum(1 for r in results if r.success)
        report = BulkExtractionReport(
            processed=len(results),
            successful=successful,
            failed=len(results) - successful,
            remaining=len(candidates) - len(batch),
            results=results,
        )
        self._logger.info(
            "bulk_extraction_completed",
            account=account,
            processed=report.processed,
            successful=report.successful,
            failed=report.failed,
            remaining=report.remaining,
        )
        return report

    def classify(self, post_id: str) -> Classification:
        settings = self._registry.resolve()
        post = self._load_post(post_id)
        image_path = self._require_image(post)
        anchor, _ = resolve_posted_at(post)

        classification = self._registry.extractor(settings.provider).classify(
            PosterImage.from_file(image_path),
            api_key=settings.api_key,
            model=settings.model,
            caption=post.caption,
            posted_at=anchor,
        )

        raw = dict(post.raw or {})
        raw["classification"] = {
            **classification.to_wire(),
            "aiProvider": settings.provider.value,
            "model": settings.model,
            "classifiedAt": self._now().isoformat(),
        }
        self._posts.update_post_classification(
            post.id,
            is_event_poster=classification.is_event_poster,
            confidence=classification.confidence,
            raw=raw,
        )
        self._logger.info(
            "post_classified",
            post_id=post.id,
            provider=settings.provider.value,
            is_event_poster=classification.is_event_poster,
            confidence=classification.confidence,
        )
        return classification
