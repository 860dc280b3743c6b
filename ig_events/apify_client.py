from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, TypeVar

from apify_client import ApifyClient
from apify_client.errors import ApifyApiError

from .apify_retry import transient_apify_reason
from .config_schema import ApifyConfig
from .errors import ActorRunFailedError, ActorRunTimeoutError, ApifyError
from .models import ActorRunInfo, RunStatus
from .retry import OnRetryFn, RetryPolicy, SleepFn, call_with_retries

T = TypeVar("T")

MAX_PAGE_SIZE = 1000

_DEFAULT_API_RETRY = RetryPolicy(
    attempts=5,
    first_delay_secs=0.5,
    max_delay_secs=15.0,
    jitter=0.0,
)


def clamp_page_size(value: int) -> int:
    return min(MAX_PAGE_SIZE, max(1, int(value)))


def _parse_time(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value.strip():
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(s)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def run_info_from_dict(data: Mapping[str, Any]) -> ActorRunInfo:
    run_id = str(data.get("id") or "").strip()
    if not run_id:
        raise ApifyError(f"Apify run response did not include an id: {dict(data)}")

    return ActorRunInfo(
        run_id=run_id,
        status=RunStatus.from_apify(data.get("status")),
        dataset_id=(str(data.get("defaultDatasetId") or "").strip() or None),
        key_value_store_id=(str(data.get("defaultKeyValueStoreId") or "").strip() or None),
        started_at=_parse_time(data.get("startedAt")),
        finished_at=_parse_time(data.get("finishedAt")),
    )


class ApifyRestTransport:
    """
    Runs the scraping Actor through the Apify API: start, poll, then page the dataset.

    Individual API calls are retried on transient failures; the run as a whole is not.
    """

    name = "rest"

    def __init__(
        self,
        token: str,
        *,
        apify: ApifyConfig,
        client: ApifyClient | None = None,
        retry: RetryPolicy | None = None,
        on_retry: OnRetryFn | None = None,
        sleep_fn: SleepFn | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._apify = apify
        self._retry = retry or _DEFAULT_API_RETRY
        self._on_retry = on_retry
        self._sleep = sleep_fn or time.sleep
        self._clock = clock or time.monotonic

        if client is not None:
            self._client = client
        else:
            # Client-level retries are disabled; _call applies one policy to every request.
            self._client = ApifyClient(
                token=token,
                api_url=apify.base_url,
                max_retries=0,
                timeout_secs=apify.request_timeout_secs,
            )

    @property
    def page_size(self) -> int:
        return clamp_page_size(self._apify.dataset_page_size)

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return call_with_retries(
                fn,
                policy=self._retry,
                classify=transient_apify_reason,
                operation=operation,
                on_retry=self._on_retry,
                sleep_fn=self._sleep,
            )
        except ApifyApiError as e:
            raise ApifyError(f"Apify API call failed ({operation}): {e}") from e
        except ApifyError:
            raise
        except Exception as e:
            raise ApifyError(f"Unexpected error during Apify API call ({operation}): {e}") from e

    def start_run(self, run_input: Mapping[str, Any]) -> ActorRunInfo:
        actor_id = self._apify.actor_id
        data = self._call(
            f"actor.start:{actor_id}",
            lambda: self._client.actor(actor_id).start(run_input=dict(run_input)),
        )
        if not data:
            raise ApifyError(f"Apify did not return a run for Actor {actor_id}")
        return run_info_from_dict(data)

    def get_run(self, run_id: str) -> ActorRunInfo:
        rid = (run_id or "").strip()
        if not rid:
            raise ApifyError("run_id must be a non-empty string")

        data = self._call(f"run.get:{rid}", lambda: self._client.run(rid).get())
        if not data:
            raise ApifyError(f"Apify run not found: {rid}")
        return run_info_from_dict(data)

    def wait_for_run(self, run: ActorRunInfo, *, timeout_secs: int) -> ActorRunInfo:
        """Poll until the run reaches a terminal status; raise ActorRunTimeoutError past the deadline."""
        deadline = self._clock() + max(1, int(timeout_secs))
        current = run

        while not current.status.is_terminal:
            if self._clock() > deadline:
                raise ActorRunTimeoutError(
                    f"Apify run {run.run_id} did not finish within {timeout_secs}s"
                )
            self._sleep(max(self._apify.poll_interval_secs, 1.0))
            current = self.get_run(run.run_id)

        return current

    def fetch_dataset_items(
        self,
        dataset_id: str,
        *,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        ds = (dataset_id or "").strip()
        if not ds:
            raise ApifyError("dataset_id must be a non-empty string")

        wanted = None if limit is None else max(0, int(limit))
        items: list[dict[str, Any]] = []
        offset = 0

        while wanted is None or len(items) < wanted:
            size = self.page_size if wanted is None else min(self.page_size, wanted - len(items))
            page = self._call(
                f"dataset.list_items:{ds}@{offset}",
                lambda: self._client.dataset(ds).list_items(offset=offset, limit=size, clean=True),
            )
            batch = list(getattr(page, "items", None) or [])
            items.extend(batch)
            offset += len(batch)

            total = getattr(page, "total", None)
            if not batch or len(batch) < size:
                break
            if isinstance(total, int) and offset >= total:
                break

        return items

    def get_input_record(self, store_id: str | None, key: str = "INPUT") -> dict[str, Any]:
        """Read a JSON record from a key-value store; a missing store or record yields {}."""
        sid = (store_id or "").strip()
        if not sid:
            return {}

        record = self._call(
            f"key_value_store.get_record:{sid}/{key}",
            lambda: self._client.key_value_store(sid).get_record(key),
        )
        if not record:
            return {}
        value = record.get("value") if isinstance(record, Mapping) else None
        return dict(value) if isinstance(value, Mapping) else {}

    def run(
        self,
        run_input: Mapping[str, Any],
        *,
        timeout_secs: int | None = None,
        dataset_limit: int | None = None,
    ) -> list[dict[str, Any]]:
        started = self.start_run(run_input)
        finished = self.wait_for_run(
            started, timeout_secs=timeout_secs or self._apify.run_timeout_secs
        )

        if finished.status is not RunStatus.SUCCEEDED:
            raise ActorRunFailedError(
                f"Apify run {finished.run_id} ended with status {finished.status.value}",
                status=finished.status.value,
            )

        if not finished.dataset_id:
            return []
        return self.fetch_dataset_items(finished.dataset_id, limit=dataset_limit)
