from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

SCHEMA_VERSION = 2


def initialize_sqlite(conn: sqlite3.Connection) -> None:
    """Configure the connection and bring the schema up to SCHEMA_VERSION. Safe to call on every open."""
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")
    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.DatabaseError:
        pass
    _migrate(conn)


_MIGRATIONS: dict[int, str] = {
    1: """
CREATE TABLE IF NOT EXISTS accounts (
  handle TEXT PRIMARY KEY COLLATE NOCASE,
  default_timezone TEXT,
  active INTEGER NOT NULL DEFAULT 1,
  last_checked_at TEXT,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS account_known_posts (
  handle TEXT NOT NULL COLLATE NOCASE,
  post_id TEXT NOT NULL,
  first_seen_at TEXT NOT NULL,
  PRIMARY KEY (handle, post_id),
  FOREIGN KEY (handle) REFERENCES accounts(handle) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS runs (
  id TEXT PRIMARY KEY,
  source TEXT NOT NULL,
  status TEXT NOT NULL,
  started_at TEXT NOT NULL,
  finished_at TEXT,
  events_found INTEGER NOT NULL DEFAULT 0,
  pages_crawled INTEGER NOT NULL DEFAULT 0,
  metadata_json TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS posts (
  id TEXT PRIMARY KEY,
  platform_post_id TEXT NOT NULL UNIQUE,
  account TEXT COLLATE NOCASE,
  caption TEXT,
  image_url TEXT,
  permalink TEXT,
  local_image_path TEXT,
  raw_json TEXT NOT NULL DEFAULT '{}',
  scraped_at TEXT NOT NULL,
  is_event_poster INTEGER,
  classification_confidence REAL,
  run_id TEXT,
  FOREIGN KEY (run_id) REFERENCES runs(id) ON DELETE SET NULL
);

CREATE INDEX IF NOT EXISTS idx_posts_account ON posts(account);
CREATE INDEX IF NOT EXISTS idx_posts_scraped_at ON posts(scraped_at);

CREATE TABLE IF NOT EXISTS events (
  id TEXT PRIMARY KEY,
  run_id TEXT NOT NULL,
  source_event_id TEXT NOT NULL UNIQUE,
  platform_post_id TEXT,
  account TEXT COLLATE NOCASE,
  title TEXT NOT NULL,
  description TEXT NOT NULL DEFAULT '',
  start_at TEXT NOT NULL,
  end_at TEXT,
  timezone TEXT NOT NULL,
  url TEXT NOT NULL,
  image_url TEXT,
  local_image_path TEXT,
  venue_name TEXT,
  venue_address TEXT,
  city TEXT,
  region TEXT,
  country TEXT,
  organizer TEXT,
  category TEXT,
  price TEXT,
  tags_json TEXT NOT NULL DEFAULT '[]',
  registration_url TEXT,
  contact_json TEXT NOT NULL DEFAULT '{}',
  classification_confidence REAL,
  raw_json TEXT NOT NULL DEFAULT '{}',
  FOREIGN KEY (run_id) REFERENCES runs(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_events_platform_post_id ON events(platform_post_id);
""".strip(),
    2: """
CREATE TABLE IF NOT EXISTS settings (
  scope TEXT NOT NULL,
  key TEXT NOT NULL,
  value TEXT,
  updated_at TEXT NOT NULL,
  PRIMARY KEY (scope, key)
);
""".strip(),
}


def _migrate(conn: sqlite3.Connection) -> None:
    with conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
        )

    applied = {int(r[0]) for r in conn.execute("SELECT version FROM schema_migrations")}

    for version in sorted(_MIGRATIONS):
        if version in applied:
            continue
        with conn:
            conn.executescript(_MIGRATIONS[version])
            conn.execute(
                "INSERT INTO schema_migrations(version, applied_at) VALUES (?, ?)",
                (version, datetime.now(timezone.utc).isoformat()),
            )
