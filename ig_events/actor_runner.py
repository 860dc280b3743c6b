"""
Child-process entry point used by SubprocessTransport.

Reads the Actor input as JSON from stdin, runs it through ApifyRestTransport and prints
the dataset items as one JSON array on stdout. Failures are printed to stderr as a single
JSON object {name, message, stack?, statusCode?, status?} with exit code 1.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import traceback
from typing import Any, Callable, Sequence, TextIO

from apify_client import ApifyClient

from .apify_client import ApifyRestTransport
from .config_schema import DEFAULT_APIFY_API_URL, ApifyConfig
from .retry import SleepFn


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ig_events.actor_runner")
    p.add_argument("--token", default=None)
    p.add_argument("--actor", required=True)
    p.add_argument("--timeout-secs", type=int, default=None, help="Per-request API timeout.")
    p.add_argument("--wait-secs", type=int, default=None, help="How long to wait for the run.")
    p.add_argument("--limit", type=int, default=None)
    p.add_argument("--page-size", type=int, default=500)
    p.add_argument("--base-url", default=None)
    return p


def _read_input(stream: TextIO) -> dict[str, Any]:
    raw = "" if stream.isatty() else stream.read()
    raw = raw.strip()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Failed to parse JSON input: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Actor input must be a JSON object")
    return data


def config_from_args(args: argparse.Namespace) -> ApifyConfig:
    values: dict[str, Any] = {
        "actor_id": args.actor,
        "base_url": args.base_url or DEFAULT_APIFY_API_URL,
        "dataset_page_size": args.page_size,
        "use_subprocess_runner": False,
    }
    if args.timeout_secs:
        values["request_timeout_secs"] = args.timeout_secs
    if args.wait_secs:
        values["run_timeout_secs"] = args.wait_secs
    return ApifyConfig(**values)


def build_transport(
    args: argparse.Namespace,
    *,
    sleep_fn: SleepFn | None = None,
    clock: Callable[[], float] | None = None,
) -> ApifyRestTransport:
    token = args.token or os.environ.get("APIFY_TOKEN")
    if not token:
        raise ValueError("Missing Apify token. Provide --token or set APIFY_TOKEN.")

    apify = config_from_args(args)
    client = ApifyClient(
        token=token,
        api_url=apify.base_url,
        max_retries=0,
        timeout_secs=apify.request_timeout_secs,
    )
    return ApifyRestTransport(token, apify=apify, client=client, sleep_fn=sleep_fn, clock=clock)


def _error_payload(exc: BaseException) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "name": type(exc).__name__,
        "message": str(exc) or type(exc).__name__,
        "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    }
    status_code = getattr(exc, "status_code", None)
    if status_code:
        payload["statusCode"] = status_code
    status = getattr(exc, "status", None)
    if status:
        payload["status"] = status
    return payload


def main(argv: Sequence[str] | None = None) -> int:
    try:
        args = _build_parser().parse_args(argv)
        run_input = _read_input(sys.stdin)
        transport = build_transport(args)
        items = transport.run(run_input, timeout_secs=args.wait_secs, dataset_limit=args.limit)
    except SystemExit:
        raise
    except Exception as e:
        sys.stderr.write(json.dumps(_error_payload(e), default=str) + "\n")
        return 1

    sys.stdout.write(json.dumps(items, ensure_ascii=False, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
