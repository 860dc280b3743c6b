from __future__ import annotations

import io
import json
import unittest
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

from ig_events.batch_runner import BatchActorRunner, build_run_input, select_new_posts
from ig_events.config_schema import ApifyConfig
from ig_events.errors import ApifyError, RunnerInfraError
from ig_events.models import Account, ActorRunInfo, RawPost, RunStatus
from ig_events.run_log import RunLogger

_BASE = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _item(handle: str, code: str, days_ago: int) -> dict[str, Any]:
    ts = _BASE - timedelta(days=days_ago)
    return {"shortCode": code, "ownerUsername": handle, "timestamp": ts.isoformat()}


def _post(code: str, days_ago: int) -> RawPost:
    return RawPost(
        post_id=code,
        timestamp=_BASE - timedelta(days=days_ago),
        permalink=f"https://www.instagram.com/p/{code}/",
    )


class _FakeTransport:
    def __init__(self, name: str, handler: Callable[[Mapping[str, Any]], list[dict[str, Any]]]) -> None:
        self.name = name
        self._handler = handler
        self.calls: list[dict[str, Any]] = []

    def run(
        self,
        run_input: Mapping[str, Any],
        *,
        timeout_secs: int | None = None,
        dataset_limit: int | None = None,
    ) -> list[dict[str, Any]]:
        self.calls.append({"input": dict(run_input), "dataset_limit": dataset_limit})
        return self._handler(run_input)


class _FakeRest(_FakeTransport):
    def __init__(self, handler: Callable[[Mapping[str, Any]], list[dict[str, Any]]], **snapshot: Any) -> None:
        super().__init__("rest", handler)
        self._snapshot = snapshot

    def get_run(self, run_id: str) -> ActorRunInfo:
        return self._snapshot["run"]

    def fetch_dataset_items(self, dataset_id: str, *, limit: int | None = None) -> list[dict[str, Any]]:
        items = self._snapshot["items"]
        return items if limit is None else items[:limit]

    def get_input_record(self, store_id: str | None, key: str = "INPUT") -> dict[str, Any]:
        err = self._snapshot.get("input_error")
        if err is not None:
            raise err
        return self._snapshot.get("input", {})


def _echo(run_input: Mapping[str, Any]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for handle in run_input.get("username", []):
        out += [_item(handle, f"{handle}-{i}", i) for i in range(3)]
    return out


def _never(run_input: Mapping[str, Any]) -> list[dict[str, Any]]:
    raise AssertionError("transport should not be called")


def _events(stream: io.StringIO) -> list[str]:
    return [json.loads(line)["event"] for line in stream.getvalue().splitlines()]


class TestBatchActorRunner(unittest.TestCase):
    def test_one_run_per_batch_and_known_ids_skipped(self) -> None:
        sub = _FakeTransport("subprocess", _echo)
        runner = BatchActorRunner(rest=_FakeRest(_never), subprocess=sub, apify=ApifyConfig(batch_size=5))

        result = runner.fetch_posts(
            [Account("alpha", known_post_ids=frozenset({"alpha-1"})), Account("@beta"), Account("ALPHA")],
            limit_per_account=5,
        )

        self.assertEqual(len(sub.calls), 1)
        self.assertEqual(sub.calls[0]["input"]["username"], ["alpha", "beta"])
        self.assertEqual(result.runner, "subprocess")
        self.assertEqual(result.errors, {})
        self.assertEqual([p.post_id for p in result.posts["alpha"]], ["alpha-0", "alpha-2"])
        self.assertEqual([p.post_id for p in result.posts["beta"]], ["beta-0", "beta-1", "beta-2"])
        self.assertTrue(all(p.account == "beta" for p in result.posts["beta"]))

    def test_items_for_unrequested_accounts_are_dropped(self) -> None:
        def handler(run_input: Mapping[str, Any]) -> list[dict[str, Any]]:
            return [_item("alpha", "a1", 0), _item("stranger", "s1", 0)]

        runner = BatchActorRunner(rest=_FakeRest(handler), apify=ApifyConfig())
        result = runner.fetch_posts([Account("alpha")], limit_per_account=5)

        self.assertEqual(list(result.posts), ["alpha"])
        self.assertEqual([p.post_id for p in result.posts["alpha"]], ["a1"])
        self.assertEqual(result.runner, "rest")

    def test_subprocess_infra_failure_downgrades_for_good(self) -> None:
        def broken(run_input: Mapping[str, Any]) -> list[dict[str, Any]]:
            raise RunnerInfraError("No module named 'apify_client'")

        sub = _FakeTransport("subprocess", broken)
        rest = _FakeRest(_echo)
        stream = io.StringIO()
        runner = BatchActorRunner(
            rest=rest, subprocess=sub, apify=ApifyConfig(batch_size=1), logger=RunLogger(stream=stream)
        )

        result = runner.fetch_posts([Account("a"), Account("b")], limit_per_account=1)

        self.assertEqual(len(sub.calls), 1)
        self.assertEqual(len(rest.calls), 2)
        self.assertEqual(sorted(result.posts), ["a", "b"])
        self.assertEqual(result.runner, "rest")

        info = runner.runtime_info()
        self.assertTrue(info.prefer_subprocess)
        self.assertTrue(info.subprocess_failed)
        self.assertFalse(info.using_subprocess)
        self.assertEqual(_events(stream).count("apify_runner_downgraded"), 1)

    def test_run_failures_on_subprocess_do_not_downgrade(self) -> None:
        def failing(run_input: Mapping[str, Any]) -> list[dict[str, Any]]:
            raise ApifyError("Actor runner failed: boom")

        runner = BatchActorRunner(
            rest=_FakeRest(_never), subprocess=_FakeTransport("subprocess", failing), apify=ApifyConfig()
        )
        result = runner.fetch_posts([Account("solo")], limit_per_account=3)

        self.assertIn("solo", result.errors)
        self.assertFalse(runner.runtime_info().subprocess_failed)

    def test_failed_batch_is_bisected_down_to_the_bad_account(self) -> None:
        def handler(run_input: Mapping[str, Any]) -> list[dict[str, Any]]:
            if "bad" in run_input["username"]:
                raise ApifyError("profile does not exist")
            return _echo(run_input)

        rest = _FakeRest(handler)
        stream = io.StringIO()
        runner = BatchActorRunner(rest=rest, apify=ApifyConfig(batch_size=4), logger=RunLogger(stream=stream))

        result = runner.fetch_posts([Account(h) for h in ("a", "bad", "c", "d")], limit_per_account=2)

        self.assertEqual(list(result.errors), ["bad"])
        self.assertIn("profile does not exist", result.errors["bad"])
        self.assertEqual(sorted(result.posts), ["a", "c", "d"])
        self.assertEqual(
            [c["input"]["username"] for c in rest.calls],
            [["a", "bad", "c", "d"], ["a", "bad"], ["a"], ["bad"], ["c", "d"]],
        )
        self.assertIn("apify_batch_bisected", _events(stream))
        self.assertIn("apify_account_failed", _events(stream))

    def test_batched_results_match_individual_runs(self) -> None:
        accounts = [
            Account("a", known_post_ids=frozenset({"a-1", "a-2"})),
            Account("b"),
            Account("c", known_post_ids=frozenset({"c-0"})),
        ]

        batched = BatchActorRunner(rest=_FakeRest(_echo), apify=ApifyConfig(batch_size=3))
        single = BatchActorRunner(rest=_FakeRest(_echo), apify=ApifyConfig(batch_size=1))

        together = batched.fetch_posts(accounts, limit_per_account=2)
        apart = single.fetch_posts(accounts, limit_per_account=2)

        self.assertEqual(together.posts, apart.posts)
        self.assertEqual(together.posts["a"][0].post_id, "a-0")
        self.assertEqual([p.post_id for p in together.posts["c"]], ["c-1", "c-2"])

    def test_test_fetch_derives_username_from_url(self) -> None:
        rest = _FakeRest(_echo)
        runner = BatchActorRunner(rest=rest, apify=ApifyConfig())

        result = runner.test_fetch("https://www.instagram.com/club/", limit=2)

        self.assertEqual(result.input["directUrls"], ["https://www.instagram.com/club/"])
        self.assertEqual(result.input["username"], ["club"])
        self.assertEqual(result.input["resultsLimit"], 2)
        self.assertEqual(len(result.items), 3)
        self.assertEqual([p.post_id for p in result.posts], ["club-0", "club-1"])
        self.assertEqual(result.runner, "rest")

        with self.assertRaises(ApifyError):
            runner.test_fetch("   ")

    def test_run_snapshot_tolerates_missing_input(self) -> None:
        rest = _FakeRest(
            _never,
            run=ActorRunInfo(run_id="r1", status=RunStatus.SUCCEEDED, dataset_id="ds", key_value_store_id="kvs"),
            items=[_item("club", "x", 1), _item("club", "y", 0)],
            input_error=ApifyError("forbidden"),
        )
        snapshot = BatchActorRunner(rest=rest, apify=ApifyConfig()).fetch_run_snapshot("r1")

        self.assertEqual(snapshot.input, {})
        self.assertEqual([p.post_id for p in snapshot.posts], ["y", "x"])

    def test_run_snapshot_requires_dataset(self) -> None:
        rest = _FakeRest(_never, run=ActorRunInfo(run_id="r1", status=RunStatus.SUCCEEDED), items=[])
        with self.assertRaises(ApifyError):
            BatchActorRunner(rest=rest, apify=ApifyConfig()).fetch_run_snapshot("r1")


class TestSelection(unittest.TestCase):
    def test_stops_after_consecutive_known_posts(self) -> None:
        posts = [_post("p1", 5), _post("p5", 1), _post("p4", 2), _post("p3", 3), _post("p2", 4), _post("p0", 6)]
        known = frozenset({"p4", "p2", "p1"})

        picked = select_new_posts(posts, known, limit=10, stop_after=2)

        self.assertEqual([p.post_id for p in picked], ["p5", "p3"])

    def test_dedupes_and_truncates(self) -> None:
        posts = [_post("a", 0), _post("a", 0), _post("b", 1), _post("c", 2)]
        picked = select_new_posts(posts, frozenset(), limit=2, stop_after=2)
        self.assertEqual([p.post_id for p in picked], ["a", "b"])

    def test_build_run_input(self) -> None:
        run_input = build_run_input(["@club", "venue"], 10)
        self.assertEqual(
            run_input["directUrls"],
            ["https://www.instagram.com/club/", "https://www.instagram.com/venue/"],
        )
        self.assertEqual(run_input["username"], ["club", "venue"])
        self.assertEqual(run_input["resultsLimit"], 10)


if __name__ == "__main__":
    unittest.main()
