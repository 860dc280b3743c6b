from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Sequence

from .batch_runner import BatchActorRunner
from .media import ImageDownloader
from .models import PostRecord, RawPost, RunRecord, normalize_handle
from .run_log import RunLogger
from .storage import SQLiteStateStore

IMPORTER = "apify_direct"
RUN_SOURCE = "instagram"


@dataclass
class ImportStats:
    attempted: int = 0
    created: int = 0
    updated: int = 0
    skipped_existing: int = 0
    missing_accounts: int = 0


@dataclass(frozen=True)
class ImportResult:
    run_id: str
    stats: ImportStats
    message: str
    created_post_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ScrapeReport:
    imported: ImportResult
    fetched: dict[str, int]
    errors: dict[str, str]
    runner: str | None


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"


def import_message(stats: ImportStats, *, source_label: str) -> str:
    if stats.created > 0:
        msg = f"Imported {_plural(stats.created, 'new post')} from {source_label}."
        if stats.updated > 0:
            msg += f" Updated {_plural(stats.updated, 'existing post')} with images."
        return msg
    if stats.updated > 0:
        return f"Updated {_plural(stats.updated, 'existing post')} with images."
    if stats.skipped_existing > 0:
        return "No new posts imported; all posts already exist."
    if stats.missing_accounts > 0:
        return "Skipped posts because matching accounts were not found."
    return "No posts were imported."


def import_posts(
    store: SQLiteStateStore,
    posts: Sequence[RawPost],
    *,
    downloader: ImageDownloader | None = None,
    apify_run_id: str | None = None,
    source_label: str | None = None,
    metadata: Mapping[str, Any] | None = None,
    logger: RunLogger | None = None,
    now_fn: Callable[[], datetime] | None = None,
) -> ImportResult:
    """Store fetched posts under their accounts; existing posts only get a missing image filled in."""
    log = logger or RunLogger.disabled()
    now = now_fn or (lambda: datetime.now(timezone.utc))
    stats = ImportStats(attempted=len(posts))

    run_meta: dict[str, Any] = {"importStrategy": IMPORTER, **dict(metadata or {})}
    if apify_run_id:
        run_meta["apifyRunId"] = apify_run_id

    run = RunRecord(
        id=uuid.uuid4().hex,
        source=RUN_SOURCE,
        status="running",
        started_at=now(),
        metadata=run_meta,
    )
    store.insert_run(run)

    created_ids: list[str] = []
    account_cache: dict[str, bool] = {}

    try:
        for post in posts:
            handle = normalize_handle(post.account)
            if not handle:
                stats.missing_accounts += 1
                continue
            key = handle.casefold()
            if key not in account_cache:
                account_cache[key] = store.get_account(handle) is not None
            if not account_cache[key]:
                stats.missing_accounts += 1
                continue

            existing = store.get_post_by_platform_id(post.post_id)
            if existing is not None:
                if not existing.local_image_path and post.image_url and downloader is not None:
                    filename = downloader.download(post.image_url, post.post_id)
                    if filename:
                        store.set_local_image_path(existing.id, filename)
                        stats.updated += 1
                stats.skipped_existing += 1
                continue

            filename = None
            if post.image_url and downloader is not None:
                filename = downloader.download(post.image_url, post.post_id)

            raw = post.to_raw()
            raw["_meta"] = {
                "importedAt": now().isoformat(),
                "apifyRunId": apify_run_id,
                "importer": IMPORTER,
            }
            record = PostRecord(
                id=uuid.uuid4().hex,
                platform_post_id=post.post_id,
                account=handle,
                caption=post.caption,
                image_url=post.image_url,
                permalink=post.permalink or f"https://instagram.com/p/{post.post_id}/",
                local_image_path=filename,
                raw=raw,
                scraped_at=now(),
            )
            store.insert_post(record, run_id=run.id)
            created_ids.append(record.id)
            stats.created += 1
    except Exception as e:
        store.finish_run(
            run.id,
            status="failed",
            events_found=stats.created,
            metadata={"error": str(e)},
        )
        log.exception("posts_import_failed", exc=e, run_id=run.id, created=stats.created)
        raise

    store.finish_run(
        run.id,
        status="success" if stats.created > 0 else "partial",
        events_found=stats.created,
    )

    label = source_label or (f"Apify run {apify_run_id}" if apify_run_id else "Apify")
    message = import_message(stats, source_label=label)
    log.info(
        "posts_imported",
        run_id=run.id,
        attempted=stats.attempted,
        created=stats.created,
        updated=stats.updated,
        skipped_existing=stats.skipped_existing,
        missing_accounts=stats.missing_accounts,
    )
    return ImportResult(run_id=run.id, stats=stats, message=message, created_post_ids=created_ids)


def scrape_accounts(
    runner: BatchActorRunner,
    store: SQLiteStateStore,
    *,
    handles: Iterable[str] | None = None,
    limit_per_account: int,
    batch_size: int | None = None,
    downloader: ImageDownloader | None = None,
    logger: RunLogger | None = None,
) -> ScrapeReport:
    """Fetch new posts for registered accounts, import them and grow each account's known ids."""
    log = logger or RunLogger.disabled()
    wanted = [normalize_handle(h) for h in handles] if handles is not None else None
    accounts = store.list_accounts(wanted)

    errors: dict[str, str] = {}
    if wanted is not None:
        found = {a.handle.casefold() for a in accounts}
        for h in wanted:
            if h and h.casefold() not in found:
                errors[h] = "account is not registered"

    result = runner.fetch_posts(accounts, limit_per_account, batch_size=batch_size)
    errors.update(result.errors)

    fetched: list[RawPost] = []
    for handle, posts in result.posts.items():
        fetched.extend(p if p.account == handle else replace(p, account=handle) for p in posts)

    imported = import_posts(
        store,
        fetched,
        downloader=downloader,
        source_label="Apify scrape",
        metadata={"accounts": [a.handle for a in accounts], "runner": result.runner},
        logger=log,
    )

    checked_at = datetime.now(timezone.utc)
    for handle, posts in result.posts.items():
        store.add_known_post_ids(handle, (p.post_id for p in posts))
        if handle not in result.errors:
            store.touch_account_checked(handle, at=checked_at)

    for handle, err in result.errors.items():
        log.error("account_scrape_failed", account=handle, error=err)

    return ScrapeReport(
        imported=imported,
        fetched={h: len(p) for h, p in result.posts.items()},
        errors=errors,
        runner=result.runner,
    )
