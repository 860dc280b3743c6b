from __future__ import annotations

import unittest
from types import SimpleNamespace
from typing import Any

from apify_client.errors import ApifyApiError

from ig_events.apify_client import ApifyRestTransport, clamp_page_size
from ig_events.apify_retry import transient_apify_reason
from ig_events.config_schema import ApifyConfig
from ig_events.errors import ActorRunFailedError, ActorRunTimeoutError, ApifyError
from ig_events.models import RunStatus
from ig_events.retry import RetryAttempt, RetryPolicy


class _StatusApiError(ApifyApiError):
    """ApifyApiError carrying only an HTTP status; skips the SDK's response-based constructor."""

    status_code: int | None = None

    def __new__(cls, status_code: int) -> "_StatusApiError":
        return Exception.__new__(cls)

    def __init__(self, status_code: int) -> None:
        Exception.__init__(self, f"HTTP {status_code}")
        self.status_code = status_code


def _api_error(status_code: int) -> ApifyApiError:
    return _StatusApiError(status_code)


class _FakeActor:
    def __init__(self, run: dict[str, Any]) -> None:
        self._run = run
        self.inputs: list[Any] = []

    def start(self, *, run_input: Any = None) -> dict[str, Any]:
        self.inputs.append(run_input)
        return self._run


class _FakeRun:
    def __init__(self, responses: list[Any]) -> None:
        self._responses = responses
        self.calls = 0

    def get(self) -> Any:
        self.calls += 1
        value = self._responses[min(self.calls, len(self._responses)) - 1]
        if isinstance(value, BaseException):
            raise value
        return value


class _FakeDataset:
    def __init__(self, items: list[dict[str, Any]]) -> None:
        self._items = items
        self.calls: list[dict[str, Any]] = []

    def list_items(self, *, offset: int = 0, limit: int | None = None, clean: bool | None = None) -> Any:
        self.calls.append({"offset": offset, "limit": limit, "clean": clean})
        page = self._items[offset : offset + (limit or len(self._items))]
        return SimpleNamespace(items=page, total=len(self._items))


class _FakeKeyValueStore:
    def __init__(self, records: dict[str, Any]) -> None:
        self._records = records

    def get_record(self, key: str) -> Any:
        return self._records.get(key)


class _FakeApifyClient:
    def __init__(
        self,
        *,
        start: dict[str, Any] | None = None,
        runs: list[Any] | None = None,
        items: list[dict[str, Any]] | None = None,
        records: dict[str, Any] | None = None,
    ) -> None:
        self.actor_client = _FakeActor(start or {"id": "run_1", "status": "READY"})
        self.run_client = _FakeRun(runs or [])
        self.dataset_client = _FakeDataset(items or [])
        self.kvs_client = _FakeKeyValueStore(records or {})
        self.actor_ids: list[str] = []

    def actor(self, actor_id: str) -> _FakeActor:
        self.actor_ids.append(actor_id)
        return self.actor_client

    def run(self, run_id: str) -> _FakeRun:
        return self.run_client

    def dataset(self, dataset_id: str) -> _FakeDataset:
        return self.dataset_client

    def key_value_store(self, store_id: str) -> _FakeKeyValueStore:
        return self.kvs_client


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, secs: float) -> None:
        self.sleeps.append(secs)
        self.now += secs


def _transport(fake: _FakeApifyClient, clock: _Clock, **apify: Any) -> ApifyRestTransport:
    return ApifyRestTransport(
        "token",
        apify=ApifyConfig(**apify),
        client=fake,  # type: ignore[arg-type]
        retry=RetryPolicy(attempts=3, first_delay_secs=0.0, max_delay_secs=0.0, jitter=0.0),
        sleep_fn=clock.sleep,
        clock=clock,
    )


class TestApifyRestTransport(unittest.TestCase):
    def test_run_polls_then_pages_dataset(self) -> None:
        items = [{"shortCode": f"P{i}"} for i in range(5)]
        fake = _FakeApifyClient(
            runs=[
                {"id": "run_1", "status": "RUNNING"},
                {"id": "run_1", "status": "SUCCEEDED", "defaultDatasetId": "ds_1"},
            ],
            items=items,
        )
        clock = _Clock()
        transport = _transport(fake, clock, dataset_page_size=2, poll_interval_secs=0.1)

        got = transport.run({"username": ["club"]}, timeout_secs=60)

        self.assertEqual(got, items)
        self.assertEqual(fake.actor_ids, ["apify/instagram-post-scraper"])
        self.assertEqual(fake.actor_client.inputs, [{"username": ["club"]}])
        # Poll interval is never shorter than one second.
        self.assertEqual(clock.sleeps, [1.0, 1.0])
        self.assertEqual([c["offset"] for c in fake.dataset_client.calls], [0, 2, 4])
        self.assertTrue(all(c["clean"] for c in fake.dataset_client.calls))

    def test_failed_run_raises_with_status(self) -> None:
        fake = _FakeApifyClient(runs=[{"id": "run_1", "status": "FAILED", "defaultDatasetId": "ds"}])
        with self.assertRaises(ActorRunFailedError) as ctx:
            _transport(fake, _Clock()).run({})
        self.assertEqual(ctx.exception.status, RunStatus.FAILED.value)

    def test_run_times_out_past_deadline(self) -> None:
        fake = _FakeApifyClient(runs=[{"id": "run_1", "status": "RUNNING"}])
        clock = _Clock()
        with self.assertRaises(ActorRunTimeoutError):
            _transport(fake, clock).run({}, timeout_secs=3)
        self.assertGreater(clock.now, 3)

    def test_dataset_limit_trims_page_requests(self) -> None:
        fake = _FakeApifyClient(items=[{"id": str(i)} for i in range(10)])
        transport = _transport(fake, _Clock(), dataset_page_size=2)

        got = transport.fetch_dataset_items("ds_1", limit=3)

        self.assertEqual([i["id"] for i in got], ["0", "1", "2"])
        self.assertEqual([c["limit"] for c in fake.dataset_client.calls], [2, 1])

    def test_transient_errors_are_retried(self) -> None:
        fake = _FakeApifyClient(
            runs=[ConnectionError("reset"), {"id": "run_9", "status": "SUCCEEDED"}]
        )
        events: list[RetryAttempt] = []
        transport = ApifyRestTransport(
            "token",
            apify=ApifyConfig(),
            client=fake,  # type: ignore[arg-type]
            retry=RetryPolicy(attempts=3, first_delay_secs=0.0, max_delay_secs=0.0, jitter=0.0),
            on_retry=events.append,
            sleep_fn=lambda _: None,
        )

        info = transport.get_run("run_9")

        self.assertEqual(info.status, RunStatus.SUCCEEDED)
        self.assertEqual(fake.run_client.calls, 2)
        self.assertEqual([e.reason for e in events], ["network_error"])

    def test_permanent_errors_are_wrapped_without_retry(self) -> None:
        fake = _FakeApifyClient(runs=[ValueError("bad id")])
        with self.assertRaises(ApifyError):
            _transport(fake, _Clock()).get_run("run_1")
        self.assertEqual(fake.run_client.calls, 1)

    def test_input_record(self) -> None:
        fake = _FakeApifyClient(records={"INPUT": {"key": "INPUT", "value": {"username": ["a"]}}})
        transport = _transport(fake, _Clock())

        self.assertEqual(transport.get_input_record("kvs_1"), {"username": ["a"]})
        self.assertEqual(transport.get_input_record("kvs_1", "OTHER"), {})
        self.assertEqual(transport.get_input_record(None), {})


class TestApifyHelpers(unittest.TestCase):
    def test_clamp_page_size(self) -> None:
        self.assertEqual(clamp_page_size(0), 1)
        self.assertEqual(clamp_page_size(250), 250)
        self.assertEqual(clamp_page_size(50_000), 1000)

    def test_transient_reason(self) -> None:
        self.assertEqual(transient_apify_reason(_api_error(503)), "http_503")
        self.assertEqual(transient_apify_reason(_api_error(429)), "http_429")
        self.assertIsNone(transient_apify_reason(_api_error(404)))
        self.assertEqual(transient_apify_reason(TimeoutError()), "network_error")
        self.assertIsNone(transient_apify_reason(ValueError("nope")))


if __name__ == "__main__":
    unittest.main()
