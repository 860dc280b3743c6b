from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Iterator, Mapping, Protocol, Sequence

from .apify_client import ApifyRestTransport
from .config_schema import ApifyConfig
from .errors import ApifyError, RunnerInfraError
from .items import handle_from_url, iter_post_objects, posts_from_items, raw_post_from_object
from .models import Account, ActorRunInfo, RawPost, normalize_handle, profile_url
from .retry import RetryAttempt
from .run_log import RunLogger
from .subprocess_transport import SubprocessTransport


class ActorTransport(Protocol):
    name: str

    def run(
        self,
        run_input: Mapping[str, Any],
        *,
        timeout_secs: int | None = None,
        dataset_limit: int | None = None,
    ) -> list[dict[str, Any]]: ...


class RestTransport(ActorTransport, Protocol):
    def get_run(self, run_id: str) -> ActorRunInfo: ...

    def fetch_dataset_items(
        self, dataset_id: str, *, limit: int | None = None
    ) -> list[dict[str, Any]]: ...

    def get_input_record(self, store_id: str | None, key: str = "INPUT") -> dict[str, Any]: ...


@dataclass(frozen=True)
class BatchFetchResult:
    posts: dict[str, list[RawPost]]
    errors: dict[str, str]
    runner: str | None = None


@dataclass(frozen=True)
class SingleFetchResult:
    input: dict[str, Any]
    items: list[dict[str, Any]]
    posts: list[RawPost]
    runner: str


@dataclass(frozen=True)
class RunSnapshot:
    run: ActorRunInfo
    input: dict[str, Any]
    items: list[dict[str, Any]]
    posts: list[RawPost] = field(default_factory=list)


@dataclass(frozen=True)
class RuntimeInfo:
    prefer_subprocess: bool
    subprocess_failed: bool
    using_subprocess: bool
    last_runner: str | None


def _chunked(values: Sequence[Account], size: int) -> Iterator[list[Account]]:
    if size <= 0:
        raise ValueError("batch size must be positive")
    for start in range(0, len(values), size):
        yield list(values[start : start + size])


def build_run_input(handles: Sequence[str], limit: int) -> dict[str, Any]:
    names = [normalize_handle(h) for h in handles]
    return {
        "directUrls": [profile_url(h) for h in names],
        "username": list(names),
        "usernames": list(names),
        "resultsLimit": int(limit),
        "maxItems": int(limit),
        "skipPinnedPosts": False,
    }


def select_new_posts(
    posts: Sequence[RawPost],
    known_ids: frozenset[str],
    *,
    limit: int,
    stop_after: int,
) -> list[RawPost]:
    """
    Newest-first, deduplicated, unknown posts for one account.

    Scanning stops once stop_after consecutive posts are already known; an
    unknown post in between resets the run.
    """
    ordered = sorted(posts, key=lambda p: p.timestamp, reverse=True)
    out: list[RawPost] = []
    seen: set[str] = set()
    consecutive_known = 0

    for post in ordered:
        if post.post_id in seen:
            continue
        seen.add(post.post_id)

        if post.post_id in known_ids:
            consecutive_known += 1
            if consecutive_known >= stop_after:
                break
            continue

        consecutive_known = 0
        out.append(post)
        if len(out) >= limit:
            break

    return out


class BatchActorRunner:
    """
    Fetches recent posts for many accounts with as few Actor runs as possible.

    Accounts are batched into one run each. A failed batch is halved and each half
    retried, so one bad account only costs its own results. The subprocess transport
    is preferred until it fails for an infrastructure reason; from then on this
    instance uses the REST transport only.
    """

    def __init__(
        self,
        *,
        rest: RestTransport,
        subprocess: ActorTransport | None = None,
        apify: ApifyConfig,
        logger: RunLogger | None = None,
    ) -> None:
        self._rest = rest
        self._subprocess = subprocess
        self._apify = apify
        self._logger = logger or RunLogger.disabled()

        self._prefer_subprocess = bool(apify.use_subprocess_runner and subprocess is not None)
        self._subprocess_failed = False
        self._last_runner: str | None = None

    @classmethod
    def from_config(
        cls,
        token: str,
        apify: ApifyConfig,
        *,
        logger: RunLogger | None = None,
    ) -> "BatchActorRunner":
        log = logger or RunLogger.disabled()

        def _on_retry(ev: RetryAttempt) -> None:
            log.warning(
                "apify_api_retry",
                operation=ev.operation,
                failures=ev.failures,
                delay_secs=ev.delay_secs,
                reason=ev.reason,
                error_type=ev.error_type,
            )

        rest = ApifyRestTransport(token, apify=apify, on_retry=_on_retry)
        sub = SubprocessTransport(token, apify=apify) if apify.use_subprocess_runner else None
        return cls(rest=rest, subprocess=sub, apify=apify, logger=log)

    @property
    def rest(self) -> RestTransport:
        return self._rest

    def _will_use_subprocess(self) -> bool:
        return self._prefer_subprocess and not self._subprocess_failed

    def runtime_info(self) -> RuntimeInfo:
        return RuntimeInfo(
            prefer_subprocess=self._prefer_subprocess,
            subprocess_failed=self._subprocess_failed,
            using_subprocess=self._will_use_subprocess(),
            last_runner=self._last_runner,
        )

    def _run_with_fallback(
        self,
        run_input: Mapping[str, Any],
        *,
        dataset_limit: int | None,
    ) -> list[dict[str, Any]]:
        timeout = self._apify.run_timeout_secs

        if self._will_use_subprocess() and self._subprocess is not None:
            try:
                items = self._subprocess.run(
                    run_input, timeout_secs=timeout, dataset_limit=dataset_limit
                )
            except RunnerInfraError as e:
                self._subprocess_failed = True
                self._logger.warning(
                    "apify_runner_downgraded",
                    from_runner=self._subprocess.name,
                    to_runner=self._rest.name,
                    reason=str(e),
                )
            else:
                self._last_runner = self._subprocess.name
                return items

        items = self._rest.run(run_input, timeout_secs=timeout, dataset_limit=dataset_limit)
        self._last_runner = self._rest.name
        return items

    def fetch_posts(
        self,
        accounts: Sequence[Account],
        limit_per_account: int,
        *,
        batch_size: int | None = None,
    ) -> BatchFetchResult:
        limit = max(1, int(limit_per_account))
        size = max(1, int(batch_size or self._apify.batch_size))

        unique: list[Account] = []
        seen: set[str] = set()
        for acc in accounts:
            handle = normalize_handle(acc.handle)
            if not handle or handle.casefold() in seen:
                continue
            seen.add(handle.casefold())
            unique.append(acc if acc.handle == handle else replace(acc, handle=handle))

        posts: dict[str, list[RawPost]] = {}
        errors: dict[str, str] = {}

        for batch in _chunked(unique, size):
            self._fetch_batch(batch, limit, posts, errors)

        return BatchFetchResult(posts=posts, errors=errors, runner=self._last_runner)

    def _fetch_batch(
        self,
        batch: list[Account],
        limit: int,
        posts: dict[str, list[RawPost]],
        errors: dict[str, str],
    ) -> None:
        handles = [a.handle for a in batch]
        batch_limit = max(limit * len(batch), limit)
        run_input = build_run_input(handles, batch_limit)

        try:
            items = self._run_with_fallback(run_input, dataset_limit=batch_limit)
        except ApifyError as e:
            if len(batch) == 1:
                errors[handles[0]] = str(e)
                self._logger.error(
                    "apify_account_failed",
                    account=handles[0],
                    error_type=type(e).__name__,
                    error=str(e),
                )
                return

            mid = len(batch) // 2
            self._logger.warning(
                "apify_batch_bisected",
                accounts=handles,
                left=handles[:mid],
                right=handles[mid:],
                error_type=type(e).__name__,
                error=str(e),
            )
            self._fetch_batch(batch[:mid], limit, posts, errors)
            self._fetch_batch(batch[mid:], limit, posts, errors)
            return

        self._assign(batch, items, limit, posts)

    def _assign(
        self,
        batch: list[Account],
        items: list[dict[str, Any]],
        limit: int,
        posts: dict[str, list[RawPost]],
    ) -> None:
        requested = {a.handle.casefold(): a.handle for a in batch}
        by_account: dict[str, list[RawPost]] = {a.handle: [] for a in batch}
        dropped = 0

        for account, obj in iter_post_objects(items, requested):
            post = raw_post_from_object(obj, account) if account else None
            if account is None or post is None:
                dropped += 1
                continue
            by_account[account].append(post)

        if dropped:
            self._logger.info("apify_items_dropped", accounts=list(by_account), dropped=dropped)

        for acc in batch:
            posts[acc.handle] = select_new_posts(
                by_account[acc.handle],
                acc.known_post_ids,
                limit=limit,
                stop_after=self._apify.known_id_stop_after,
            )

    def test_fetch(self, url: str, limit: int = 10) -> SingleFetchResult:
        """Run the Actor for one profile URL and return everything it produced."""
        u = (url or "").strip()
        if not u:
            raise ApifyError("Instagram URL is required")

        n = max(1, int(limit))
        handle = handle_from_url(u)
        run_input: dict[str, Any] = {
            "directUrls": [u],
            "resultsLimit": n,
            "maxItems": n,
            "skipPinnedPosts": False,
        }
        if handle:
            run_input["username"] = [handle]
            run_input["usernames"] = [handle]

        items = self._run_with_fallback(run_input, dataset_limit=n)
        return SingleFetchResult(
            input=run_input,
            items=items,
            posts=posts_from_items(items, limit=n),
            runner=self._last_runner or self._rest.name,
        )

    def fetch_run_snapshot(self, run_id: str, limit: int | None = None) -> RunSnapshot:
        """Read the input and dataset of an existing run without starting a new one."""
        rest = self._rest
        run = rest.get_run(run_id)
        if not run.dataset_id:
            raise ApifyError(f"Apify run {run.run_id} did not expose a dataset of items")

        items = rest.fetch_dataset_items(run.dataset_id, limit=limit)

        try:
            run_input = rest.get_input_record(run.key_value_store_id)
        except ApifyError as e:
            self._logger.warning("apify_run_input_unavailable", run_id=run.run_id, error=str(e))
            run_input = {}

        return RunSnapshot(
            run=run,
            input=run_input,
            items=items,
            posts=posts_from_items(items, limit=limit),
        )
