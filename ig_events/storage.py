from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from .errors import StorageError
from .models import Account, EventRecord, PostRecord, RunRecord, normalize_handle
from .storage_schema import initialize_sqlite


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str)


def _json_loads(text: Any, default: Any) -> Any:
    try:
        value = json.loads(text or "")
    except (TypeError, ValueError):
        return default
    return value if isinstance(value, type(default)) else default


def _opt_bool(value: Any) -> bool | None:
    return None if value is None else bool(value)


_EVENT_COLUMNS = (
    "id", "run_id", "source_event_id", "platform_post_id", "account", "title", "description",
    "start_at", "end_at", "timezone", "url", "image_url", "local_image_path", "venue_name",
    "venue_address", "city", "region", "country", "organizer", "category", "price", "tags_json",
    "registration_url", "contact_json", "classification_confidence", "raw_json",
)


class SQLiteStateStore:
    """
    SQLite persistence for accounts, posts, runs, events and settings.

    Implements the PostStore, EventStore, RunStore and SettingsStore interfaces.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._conn.row_factory = sqlite3.Row

    @classmethod
    def open(cls, path: str | Path) -> "SQLiteStateStore":
        db_path = str(path)
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(db_path)
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to open sqlite database: {db_path}: {e}") from e

        try:
            initialize_sqlite(conn)
        except sqlite3.DatabaseError as e:
            conn.close()
            raise StorageError(f"Failed to initialize sqlite schema: {e}") from e

        return cls(conn)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "SQLiteStateStore":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    def _write(self, what: str, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        try:
            with self._conn:
                return self._conn.execute(sql, params)
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to {what}: {e}") from e

    # Accounts

    def add_account(self, handle: str, *, default_timezone: str | None = None) -> bool:
        h = normalize_handle(handle)
        if not h:
            raise ValueError("handle must be non-empty")
        cur = self._write(
            "add account",
            "INSERT OR IGNORE INTO accounts(handle, default_timezone, active, created_at) VALUES (?, ?, 1, ?)",
            (h, default_timezone, _iso(_utc_now())),
        )
        return cur.rowcount > 0

    def _known_ids(self, handle: str) -> frozenset[str]:
        rows = self._conn.execute(
            "SELECT post_id FROM account_known_posts WHERE handle = ?", (handle,)
        ).fetchall()
        return frozenset(str(r["post_id"]) for r in rows)

    def _account_from_row(self, row: sqlite3.Row) -> Account:
        handle = str(row["handle"])
        return Account(
            handle=handle,
            known_post_ids=self._known_ids(handle),
            last_checked_at=_dt(row["last_checked_at"]),
            default_timezone=row["default_timezone"],
        )

    def get_account(self, handle: str) -> Account | None:
        row = self._conn.execute(
            "SELECT handle, default_timezone, last_checked_at FROM accounts WHERE handle = ?",
            (normalize_handle(handle),),
        ).fetchone()
        return self._account_from_row(row) if row is not None else None

    def list_accounts(self, handles: Iterable[str] | None = None) -> list[Account]:
        """Active accounts, optionally restricted to the given handles (in that order)."""
        if handles is None:
            rows = self._conn.execute(
                "SELECT handle, default_timezone, last_checked_at FROM accounts WHERE active = 1 ORDER BY handle"
            ).fetchall()
            return [self._account_from_row(r) for r in rows]

        out: list[Account] = []
        for h in handles:
            acc = self.get_account(h)
            if acc is not None:
                out.append(acc)
        return out

    def add_known_post_ids(self, handle: str, post_ids: Iterable[str]) -> int:
        """Grow the account's known-post-id set; ids are never removed."""
        h = normalize_handle(handle)
        now = _iso(_utc_now())
        rows = [(h, pid, now) for pid in {str(p).strip() for p in post_ids} if pid]
        if not rows:
            return 0
        try:
            with self._conn:
                before = self._conn.total_changes
                self._conn.executemany(
                    "INSERT OR IGNORE INTO account_known_posts(handle, post_id, first_seen_at) VALUES (?, ?, ?)",
                    rows,
                )
                return self._conn.total_changes - before
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to record known post ids: {e}") from e

    def touch_account_checked(self, handle: str, *, at: datetime | None = None) -> None:
        self._write(
            "update account last_checked_at",
            "UPDATE accounts SET last_checked_at = ? WHERE handle = ?",
            (_iso(at or _utc_now()), normalize_handle(handle)),
        )

    # Runs

    def insert_run(self, run: RunRecord) -> None:
        self._write(
            "insert run",
            """
            INSERT INTO runs(id, source, status, started_at, finished_at, events_found, pages_crawled, metadata_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """.strip(),
            self._run_params(run),
        )

    @staticmethod
    def _run_params(run: RunRecord) -> tuple[Any, ...]:
        return (
            run.id,
            run.source,
            run.status,
            _iso(run.started_at),
            _iso(run.finished_at),
            int(run.events_found),
            int(run.pages_crawled),
            _json_dumps(dict(run.metadata)),
        )

    def finish_run(
        self,
        run_id: str,
        *,
        status: str,
        events_found: int | None = None,
        pages_crawled: int | None = None,
        metadata: Mapping[str, Any] | None = None,
        finished_at: datetime | None = None,
    ) -> None:
        current = self.get_run(run_id)
        if current is None:
            raise StorageError(f"Run not found: {run_id}")

        merged = {**current.metadata, **dict(metadata or {})}
        self._write(
            "finish run",
            """
            UPDATE runs
               SET status = ?, finished_at = ?, events_found = ?, pages_crawled = ?, metadata_json = ?
             WHERE id = ?
            """.strip(),
            (
                status,
                _iso(finished_at or _utc_now()),
                current.events_found if events_found is None else int(events_found),
                current.pages_crawled if pages_crawled is None else int(pages_crawled),
                _json_dumps(merged),
                run_id,
            ),
        )

    def get_run(self, run_id: str) -> RunRecord | None:
        row = self._conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        if row is None:
            return None
        return RunRecord(
            id=str(row["id"]),
            source=str(row["source"]),
            status=str(row["status"]),
            started_at=_dt(row["started_at"]) or _utc_now(),
            finished_at=_dt(row["finished_at"]),
            events_found=int(row["events_found"] or 0),
            pages_crawled=int(row["pages_crawled"] or 0),
            metadata=_json_loads(row["metadata_json"], {}),
        )

    # Posts

    def _post_from_row(self, row: sqlite3.Row) -> PostRecord:
        return PostRecord(
            id=str(row["id"]),
            platform_post_id=row["platform_post_id"],
            account=row["account"],
            caption=row["caption"],
            image_url=row["image_url"],
            permalink=row["permalink"],
            local_image_path=row["local_image_path"],
            raw=_json_loads(row["raw_json"], {}),
            scraped_at=_dt(row["scraped_at"]),
            is_event_poster=_opt_bool(row["is_event_poster"]),
            classification_confidence=row["classification_confidence"],
        )

    def get_post(self, post_id: str) -> PostRecord | None:
        """Look a post up by store id, falling back to its platform id."""
        row = self._conn.execute(
            "SELECT * FROM posts WHERE id = ? OR platform_post_id = ? ORDER BY id = ? DESC LIMIT 1",
            (post_id, post_id, post_id),
        ).fetchone()
        return self._post_from_row(row) if row is not None else None

    def get_post_by_platform_id(self, platform_post_id: str) -> PostRecord | None:
        row = self._conn.execute(
            "SELECT * FROM posts WHERE platform_post_id = ?", (platform_post_id,)
        ).fetchone()
        return self._post_from_row(row) if row is not None else None

    def insert_post(self, post: PostRecord, *, run_id: str | None = None) -> None:
        if not post.platform_post_id:
            raise ValueError("platform_post_id must be non-empty")
        self._write(
            "insert post",
            """
            INSERT INTO posts(
              id, platform_post_id, account, caption, image_url, permalink, local_image_path,
              raw_json, scraped_at, is_event_poster, classification_confidence, run_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """.strip(),
            (
                post.id,
                post.platform_post_id,
                post.account,
                post.caption,
                post.image_url,
                post.permalink,
                post.local_image_path,
                _json_dumps(dict(post.raw)),
                _iso(post.scraped_at or _utc_now()),
                None if post.is_event_poster is None else int(post.is_event_poster),
                post.classification_confidence,
                run_id,
            ),
        )

    def set_local_image_path(self, post_id: str, path: str | None) -> None:
        self._write(
            "update local image path",
            "UPDATE posts SET local_image_path = ? WHERE id = ?",
            (path, post_id),
        )

    def update_post_raw(self, post_id: str, raw: Mapping[str, Any]) -> None:
        self._write(
            "update post raw document",
            "UPDATE posts SET raw_json = ? WHERE id = ?",
            (_json_dumps(dict(raw)), post_id),
        )

    def update_post_classification(
        self,
        post_id: str,
        *,
        is_event_poster: bool,
        confidence: float | None,
        raw: Mapping[str, Any],
    ) -> None:
        self._write(
            "update post classification",
            "UPDATE posts SET is_event_poster = ?, classification_confidence = ?, raw_json = ? WHERE id = ?",
            (int(bool(is_event_poster)), confidence, _json_dumps(dict(raw)), post_id),
        )

    def list_extraction_candidates(self, *, account: str | None = None) -> list[PostRecord]:
        sql = (
            "SELECT * FROM posts WHERE is_event_poster = 1 "
            "AND local_image_path IS NOT NULL AND local_image_path != ''"
        )
        params: list[Any] = []
        if account:
            sql += " AND account = ?"
            params.append(normalize_handle(account))
        sql += " ORDER BY scraped_at DESC, id"
        return [self._post_from_row(r) for r in self._conn.execute(sql, params).fetchall()]

    # Events

    @staticmethod
    def _event_params(ev: EventRecord) -> tuple[Any, ...]:
        return (
            ev.id, ev.run_id, ev.source_event_id, ev.platform_post_id, ev.account, ev.title,
            ev.description, _iso(ev.start_at), _iso(ev.end_at), ev.timezone, ev.url, ev.image_url,
            ev.local_image_path, ev.venue_name, ev.venue_address, ev.city, ev.region, ev.country,
            ev.organizer, ev.category, ev.price, _json_dumps(list(ev.tags)), ev.registration_url,
            _json_dumps(dict(ev.contact)), ev.classification_confidence, _json_dumps(dict(ev.raw)),
        )

    def replace_post_events(
        self,
        platform_post_id: str,
        run: RunRecord,
        events: Sequence[EventRecord],
    ) -> int:
        placeholders = ", ".join("?" for _ in _EVENT_COLUMNS)
        insert_sql = f"INSERT INTO events({', '.join(_EVENT_COLUMNS)}) VALUES ({placeholders})"

        try:
            with self._conn:
                deleted = self._conn.execute(
                    "DELETE FROM events WHERE platform_post_id = ?", (platform_post_id,)
                ).rowcount
                self._conn.execute(
                    """
                    INSERT INTO runs(id, source, status, started_at, finished_at, events_found, pages_crawled, metadata_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """.strip(),
                    self._run_params(run),
                )
                self._conn.executemany(insert_sql, [self._event_params(ev) for ev in events])
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to replace events for post {platform_post_id}: {e}") from e

        return max(0, int(deleted))

    def _event_from_row(self, row: sqlite3.Row) -> EventRecord:
        return EventRecord(
            id=str(row["id"]),
            run_id=str(row["run_id"]),
            source_event_id=str(row["source_event_id"]),
            title=str(row["title"]),
            start_at=_dt(row["start_at"]) or _utc_now(),
            timezone=str(row["timezone"]),
            url=str(row["url"]),
            end_at=_dt(row["end_at"]),
            description=str(row["description"] or ""),
            venue_name=row["venue_name"],
            venue_address=row["venue_address"],
            city=row["city"],
            region=row["region"],
            country=row["country"],
            organizer=row["organizer"],
            category=row["category"],
            price=row["price"],
            tags=tuple(_json_loads(row["tags_json"], [])),
            registration_url=row["registration_url"],
            contact=_json_loads(row["contact_json"], {}),
            image_url=row["image_url"],
            account=row["account"],
            platform_post_id=row["platform_post_id"],
            local_image_path=row["local_image_path"],
            classification_confidence=row["classification_confidence"],
            raw=_json_loads(row["raw_json"], {}),
        )

    def events_for_post(self, platform_post_id: str) -> list[EventRecord]:
        rows = self._conn.execute(
            "SELECT * FROM events WHERE platform_post_id = ? ORDER BY start_at, id",
            (platform_post_id,),
        ).fetchall()
        return [self._event_from_row(r) for r in rows]

    # Settings

    def get_setting(self, scope: str, key: str) -> str | None:
        row = self._conn.execute(
            "SELECT value FROM settings WHERE scope = ? AND key = ?", (scope, key)
        ).fetchone()
        return None if row is None or row["value"] is None else str(row["value"])

    def set_setting(self, scope: str, key: str, value: str | None) -> None:
        """Store a setting; None removes it."""
        if value is None:
            self._write("delete setting", "DELETE FROM settings WHERE scope = ? AND key = ?", (scope, key))
            return
        self._write(
            "store setting",
            """
            INSERT INTO settings(scope, key, value, updated_at) VALUES (?, ?, ?, ?)
            ON CONFLICT(scope, key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """.strip(),
            (scope, key, value, _iso(_utc_now())),
        )
