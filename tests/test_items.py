from __future__ import annotations

import unittest
from datetime import datetime, timezone

from ig_events.items import (
    FlatItem,
    NestedItem,
    UnrecognizedItem,
    handle_from_url,
    parse_item,
    parse_timestamp,
    posts_from_items,
    raw_post_from_object,
    resolve_account,
)


class TestParseItem(unittest.TestCase):
    def test_nested_profile_item(self) -> None:
        item = {
            "username": "Night.Market",
            "latestPosts": [{"shortCode": "A1"}, "junk", {"shortCode": "A2"}],
        }
        parsed = parse_item(item)
        self.assertIsInstance(parsed, NestedItem)
        assert isinstance(parsed, NestedItem)
        self.assertEqual(parsed.account, "Night.Market")
        self.assertEqual([p["shortCode"] for p in parsed.posts], ["A1", "A2"])

    def test_flat_post_item(self) -> None:
        parsed = parse_item({"id": 123, "ownerUsername": "@club"})
        self.assertIsInstance(parsed, FlatItem)
        assert isinstance(parsed, FlatItem)
        self.assertEqual(parsed.account, "club")

    def test_error_item_and_non_objects(self) -> None:
        err = parse_item({"error": "not_found", "errorDescription": "Profile missing"})
        self.assertIsInstance(err, UnrecognizedItem)
        assert isinstance(err, UnrecognizedItem)
        self.assertEqual(err.reason, "actor_error_item")

        junk = parse_item(["not", "an", "object"])
        assert isinstance(junk, UnrecognizedItem)
        self.assertEqual(junk.reason, "not_an_object")

        empty = parse_item({"caption": "no id here"})
        assert isinstance(empty, UnrecognizedItem)
        self.assertEqual(empty.reason, "no_post_fields")


class TestResolveAccount(unittest.TestCase):
    def test_restricted_to_requested_handles(self) -> None:
        requested = {"night.market": "Night.Market"}

        self.assertEqual(resolve_account({"ownerUsername": "NIGHT.MARKET"}, requested), "Night.Market")
        self.assertIsNone(resolve_account({"ownerUsername": "someone_else"}, requested))

    def test_falls_back_to_input_url(self) -> None:
        obj = {"ownerUsername": "unrelated", "inputUrl": "https://www.instagram.com/night.market/"}
        self.assertEqual(resolve_account(obj, {"night.market": "night.market"}), "night.market")
        self.assertEqual(resolve_account(obj), "unrelated")

    def test_handle_from_url(self) -> None:
        self.assertEqual(handle_from_url("https://www.instagram.com/Some.Club/"), "Some.Club")
        self.assertIsNone(handle_from_url("https://example.com/some.club"))
        self.assertIsNone(handle_from_url("https://instagram.com/"))
        self.assertIsNone(handle_from_url(None))


class TestTimestamps(unittest.TestCase):
    def test_parses_epoch_and_iso(self) -> None:
        expected = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
        self.assertEqual(parse_timestamp(int(expected.timestamp())), expected)
        self.assertEqual(parse_timestamp(str(int(expected.timestamp()))), expected)
        self.assertEqual(parse_timestamp("2024-05-01T10:00:00Z"), expected)
        self.assertEqual(parse_timestamp("2024-05-01T10:00:00"), expected)

    def test_rejects_garbage(self) -> None:
        self.assertIsNone(parse_timestamp(None))
        self.assertIsNone(parse_timestamp(True))
        self.assertIsNone(parse_timestamp("yesterday"))


class TestRawPosts(unittest.TestCase):
    def test_converts_post_object(self) -> None:
        fixed = datetime(2024, 1, 1, tzinfo=timezone.utc)
        post = raw_post_from_object(
            {
                "shortCode": "Cxyz",
                "caption": "  Live music Friday  ",
                "images": [{"url": "https://cdn.example/1.jpg"}],
                "productType": "clips_reel",
                "videoUrl": "https://cdn.example/1.mp4",
            },
            "venue",
            now_fn=lambda: fixed,
        )
        assert post is not None
        self.assertEqual(post.post_id, "Cxyz")
        self.assertEqual(post.timestamp, fixed)
        self.assertEqual(post.caption, "Live music Friday")
        self.assertEqual(post.image_url, "https://cdn.example/1.jpg")
        self.assertEqual(post.permalink, "https://www.instagram.com/reel/Cxyz/")
        self.assertTrue(post.is_video)
        self.assertEqual(post.account, "venue")

    def test_without_id_is_skipped(self) -> None:
        self.assertIsNone(raw_post_from_object({"caption": "x"}))

    def test_posts_from_mixed_items_newest_first(self) -> None:
        items = [
            {
                "username": "club",
                "latestPosts": [
                    {"shortCode": "old", "timestamp": "2024-01-01T00:00:00Z"},
                    {"shortCode": "new", "timestamp": "2024-03-01T00:00:00Z"},
                ],
            },
            {"shortCode": "mid", "ownerUsername": "club", "timestamp": "2024-02-01T00:00:00Z"},
            {"shortCode": "new", "ownerUsername": "club", "timestamp": "2024-03-01T00:00:00Z"},
            {"error": "rate limited"},
        ]

        posts = posts_from_items(items)
        self.assertEqual([p.post_id for p in posts], ["new", "mid", "old"])
        self.assertTrue(all(p.account == "club" for p in posts))

        self.assertEqual([p.post_id for p in posts_from_items(items, limit=2)], ["new", "mid"])


if __name__ == "__main__":
    unittest.main()
