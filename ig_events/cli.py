from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Callable, Sequence

from .batch_runner import BatchActorRunner
from .config import SCOPE_FEATURE, SCOPE_GLOBAL, load_config, resolve_apify_token
from .config_schema import AppConfig
from .errors import ApifyError, ConfigError, ExtractionError, ExtractorError, StorageError
from .extraction import ExtractionService
from .ingest import import_posts, scrape_accounts
from .media import ImageDownloader
from .models import ExtractionRequest
from .providers import ProviderRegistry
from .run_log import RunLogger
from .storage import SQLiteStateStore

Handler = Callable[[argparse.Namespace, AppConfig, SQLiteStateStore, RunLogger], int]


def _add_config(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", required=True, help="Path to YAML config file.")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ig_events")
    subparsers = parser.add_subparsers(dest="command", required=True)

    add = subparsers.add_parser("add-accounts", help="Register Instagram accounts to follow.")
    _add_config(add)
    add.add_argument("handles", nargs="+", help="Instagram handles (with or without @).")
    add.add_argument("--timezone", default=None, help="Default IANA timezone for their events.")
    add.set_defaults(_handler=_cmd_add_accounts)

    scrape = subparsers.add_parser("scrape", help="Fetch and import new posts for registered accounts.")
    _add_config(scrape)
    scrape.add_argument("--account", action="append", dest="accounts", help="Limit to this handle (repeatable).")
    scrape.add_argument("--limit", type=int, default=None, help="Posts per account.")
    scrape.add_argument("--batch-size", type=int, default=None, help="Accounts per Actor run.")
    scrape.add_argument("--no-images", action="store_true", help="Skip image downloads.")
    scrape.set_defaults(_handler=_cmd_scrape)

    fetch = subparsers.add_parser("test-fetch", help="Run the Actor for one profile URL and print the result.")
    _add_config(fetch)
    fetch.add_argument("url", help="Instagram profile URL.")
    fetch.add_argument("--limit", type=int, default=10)
    fetch.set_defaults(_handler=_cmd_test_fetch)

    snap = subparsers.add_parser("import-run", help="Import posts from an already finished Actor run.")
    _add_config(snap)
    snap.add_argument("run_id", help="Apify run id.")
    snap.add_argument("--limit", type=int, default=None)
    snap.add_argument("--no-images", action="store_true", help="Skip image downloads.")
    snap.set_defaults(_handler=_cmd_import_run)

    extract = subparsers.add_parser("extract", help="Extract events from one post's poster image.")
    _add_config(extract)
    extract.add_argument("post_id", help="Post id or Instagram shortcode.")
    extract.add_argument("--overwrite", action="store_true", help="Replace an existing extraction.")
    extract.add_argument("--no-events", action="store_true", help="Store the extraction without creating events.")
    extract.set_defaults(_handler=_cmd_extract)

    bulk = subparsers.add_parser("extract-missing", help="Extract every poster that has no events yet.")
    _add_config(bulk)
    bulk.add_argument("--account", default=None)
    bulk.add_argument("--limit", type=int, default=None)
    bulk.add_argument("--overwrite", action="store_true", help="Also re-extract posts that already have events.")
    bulk.set_defaults(_handler=_cmd_extract_missing)

    classify = subparsers.add_parser("classify", help="Ask the AI provider whether a post is an event poster.")
    _add_config(classify)
    classify.add_argument("post_id")
    classify.set_defaults(_handler=_cmd_classify)

    setting = subparsers.add_parser("set-setting", help="Store a setting (API keys, provider, model, prompt).")
    _add_config(setting)
    setting.add_argument("key")
    setting.add_argument("value", nargs="?", default=None)
    setting.add_argument("--scope", choices=[SCOPE_FEATURE, SCOPE_GLOBAL], default=SCOPE_FEATURE)
    setting.add_argument("--unset", action="store_true", help="Remove the setting.")
    setting.set_defaults(_handler=_cmd_set_setting)

    return parser


def _eprint(message: str) -> None:
    print(message, file=sys.stderr)


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, ensure_ascii=False, sort_keys=True, default=str))


def _downloader(cfg: AppConfig, log: RunLogger, *, enabled: bool = True) -> ImageDownloader | None:
    if not (enabled and cfg.ingest.download_images):
        return None
    return ImageDownloader(
        cfg.extraction.image_dir,
        timeout_secs=cfg.ingest.download_timeout_secs,
        logger=log,
    )


def _runner(cfg: AppConfig, store: SQLiteStateStore, log: RunLogger) -> BatchActorRunner:
    token = resolve_apify_token(cfg, settings=store)
    return BatchActorRunner.from_config(token, cfg.apify, logger=log)


def _service(cfg: AppConfig, store: SQLiteStateStore, log: RunLogger) -> ExtractionService:
    return ExtractionService(
        registry=ProviderRegistry.from_config(cfg.extraction, settings=store),
        posts=store,
        events=store,
        accounts=store,
        config=cfg.extraction,
        logger=log,
    )


def _cmd_add_accounts(args: argparse.Namespace, cfg: AppConfig, store: SQLiteStateStore, log: RunLogger) -> int:
    for handle in args.handles:
        created = store.add_account(handle, default_timezone=args.timezone)
        print(f"{'added' if created else 'exists'}={handle.lstrip('@')}")
    log.info("accounts_added", handles=list(args.handles))
    return 0


def _cmd_scrape(args: argparse.Namespace, cfg: AppConfig, store: SQLiteStateStore, log: RunLogger) -> int:
    runner = _runner(cfg, store, log)
    report = scrape_accounts(
        runner,
        store,
        handles=args.accounts,
        limit_per_account=args.limit or cfg.ingest.posts_per_account,
        batch_size=args.batch_size,
        downloader=_downloader(cfg, log, enabled=not args.no_images),
        logger=log,
    )

    print(f"run_id={report.imported.run_id}")
    print(f"runner={report.runner}")
    print(f"created={report.imported.stats.created}")
    print(f"skipped_existing={report.imported.stats.skipped_existing}")
    print(f"message={report.imported.message}")
    for handle, err in sorted(report.errors.items()):
        print(f"error[{handle}]={err}")
    return 0


def _cmd_test_fetch(args: argparse.Namespace, cfg: AppConfig, store: SQLiteStateStore, log: RunLogger) -> int:
    result = _runner(cfg, store, log).test_fetch(args.url, limit=args.limit)
    _print_json(
        {
            "runner": result.runner,
            "input": result.input,
            "itemCount": len(result.items),
            "posts": [p.to_raw() for p in result.posts],
        }
    )
    return 0


def _cmd_import_run(args: argparse.Namespace, cfg: AppConfig, store: SQLiteStateStore, log: RunLogger) -> int:
    snapshot = _runner(cfg, store, log).fetch_run_snapshot(args.run_id, limit=args.limit)
    result = import_posts(
        store,
        snapshot.posts,
        downloader=_downloader(cfg, log, enabled=not args.no_images),
        apify_run_id=snapshot.run.run_id,
        metadata={"snapshotInput": snapshot.input},
        logger=log,
    )
    print(f"run_id={result.run_id}")
    print(f"items={len(snapshot.items)}")
    print(f"created={result.stats.created}")
    print(f"message={result.message}")
    return 0


def _cmd_extract(args: argparse.Namespace, cfg: AppConfig, store: SQLiteStateStore, log: RunLogger) -> int:
    request = ExtractionRequest(
        post_id=args.post_id,
        overwrite=args.overwrite,
        create_events=not args.no_events,
    )
    result = _service(cfg, store, log).handle(request)
    print(f"provider={result.provider}")
    print(f"model={result.model}")
    print(f"events_created={result.events_created}")
    print(f"message={result.message}")
    _print_json(result.payload.to_wire())
    return 0


def _cmd_extract_missing(args: argparse.Namespace, cfg: AppConfig, store: SQLiteStateStore, log: RunLogger) -> int:
    report = _service(cfg, store, log).extract_many(
        account=args.account,
        limit=args.limit,
        overwrite=args.overwrite,
    )
    print(f"processed={report.processed}")
    print(f"successful={report.successful}")
    print(f"failed={report.failed}")
    print(f"remaining={report.remaining}")
    for item in report.results:
        outcome = f"events={item.events_created}" if item.success else f"error={item.error}"
        print(f"post[{item.post_id}] {outcome}")
    return 0


def _cmd_classify(args: argparse.Namespace, cfg: AppConfig, store: SQLiteStateStore, log: RunLogger) -> int:
    classification = _service(cfg, store, log).classify(args.post_id)
    _print_json(classification.to_wire())
    return 0


def _cmd_set_setting(args: argparse.Namespace, cfg: AppConfig, store: SQLiteStateStore, log: RunLogger) -> int:
    if args.unset:
        store.set_setting(args.scope, args.key, None)
        print(f"unset={args.scope}.{args.key}")
        return 0
    if args.value is None:
        raise ConfigError("set-setting needs a value (or --unset)")
    store.set_setting(args.scope, args.key, args.value)
    # Values may be secrets; only the key is logged.
    log.info("setting_stored", scope=args.scope, key=args.key)
    print(f"set={args.scope}.{args.key}")
    return 0


def _run(args: argparse.Namespace) -> int:
    handler: Handler = getattr(args, "_handler")
    cfg = load_config(args.config)

    with RunLogger.open(cfg.storage.log_path) as log:
        cmd_log = log.bind(command=args.command)
        cmd_log.info("command_started", config_path=str(args.config))
        try:
            with SQLiteStateStore.open(cfg.storage.db_path) as store:
                code = int(handler(args, cfg, store, cmd_log))
        except Exception as e:
            cmd_log.exception("command_failed", exc=e)
            raise
        cmd_log.info("command_completed", exit_code=code)
        return code


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        return _run(args)
    except ConfigError as e:
        _eprint(str(e))
        return 2
    except (ApifyError, ExtractorError, ExtractionError, StorageError) as e:
        _eprint(str(e))
        return 3
    except KeyboardInterrupt:
        _eprint("Interrupted")
        return 130
    except Exception as e:
        _eprint(f"Unexpected error: {e}")
        return 1
