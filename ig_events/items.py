from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Iterator, Mapping, Union
from urllib.parse import urlsplit

from .models import RawPost, normalize_handle


@dataclass(frozen=True)
class NestedItem:
    """A profile-shaped item carrying an embedded list of post objects (latestPosts)."""

    account: str | None
    posts: tuple[Mapping[str, Any], ...]


@dataclass(frozen=True)
class FlatItem:
    """An item that is itself one post."""

    account: str | None
    post: Mapping[str, Any]


@dataclass(frozen=True)
class UnrecognizedItem:
    raw: Any
    reason: str


DatasetItem = Union[NestedItem, FlatItem, UnrecognizedItem]

_NESTED_KEYS = ("latestPosts", "latest_posts")


def _coerce_str(value: Any) -> str | None:
    if isinstance(value, str):
        s = value.strip()
        return s if s else None
    return None


def _coerce_id(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    return _coerce_str(value)


def post_id_of(obj: Mapping[str, Any]) -> str | None:
    return (
        _coerce_id(obj.get("shortCode"))
        or _coerce_id(obj.get("shortcode"))
        or _coerce_id(obj.get("id"))
    )


def handle_from_url(url: str | None) -> str | None:
    """Return the last path segment of an instagram.com profile URL."""
    u = _coerce_str(url)
    if not u or "instagram.com" not in u.casefold():
        return None

    try:
        parts = urlsplit(u)
    except ValueError:
        return None

    segs = [s for s in (parts.path or "").split("/") if s]
    if not segs:
        return None
    return normalize_handle(segs[-1]) or None


def _explicit_account(obj: Mapping[str, Any]) -> str | None:
    name = (
        _coerce_str(obj.get("ownerUsername"))
        or _coerce_str(obj.get("owner_username"))
        or _coerce_str(obj.get("username"))
    )
    if name is None:
        owner = obj.get("owner")
        if isinstance(owner, Mapping):
            name = _coerce_str(owner.get("username"))
    return normalize_handle(name) or None


def _input_url_account(obj: Mapping[str, Any]) -> str | None:
    return handle_from_url(_coerce_str(obj.get("inputUrl")) or _coerce_str(obj.get("input_url")))


def resolve_account(
    obj: Mapping[str, Any],
    requested: Mapping[str, str] | None = None,
) -> str | None:
    """
    Resolve the owning account of an item.

    requested maps casefolded handles to the handle as the caller spelled it; when given,
    only handles from the original request are accepted.
    """
    for candidate in (_explicit_account(obj), _input_url_account(obj)):
        if not candidate:
            continue
        if requested is None:
            return candidate
        match = requested.get(candidate.casefold())
        if match is not None:
            return match
    return None


def parse_item(item: Any, requested: Mapping[str, str] | None = None) -> DatasetItem:
    if not isinstance(item, Mapping):
        return UnrecognizedItem(raw=item, reason="not_an_object")

    if _coerce_str(item.get("error")) and post_id_of(item) is None:
        return UnrecognizedItem(raw=item, reason="actor_error_item")

    for key in _NESTED_KEYS:
        nested = item.get(key)
        if isinstance(nested, list):
            posts = tuple(p for p in nested if isinstance(p, Mapping))
            return NestedItem(account=resolve_account(item, requested), posts=posts)

    if post_id_of(item) is not None:
        return FlatItem(account=resolve_account(item, requested), post=item)

    return UnrecognizedItem(raw=item, reason="no_post_fields")


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    s = _coerce_str(value)
    if not s:
        return None
    if s.isdigit():
        return parse_timestamp(int(s))
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(s)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _image_url(obj: Mapping[str, Any]) -> str | None:
    url = (
        _coerce_str(obj.get("displayUrl"))
        or _coerce_str(obj.get("display_url"))
        or _coerce_str(obj.get("thumbnailUrl"))
    )
    if url:
        return url

    images = obj.get("images")
    if isinstance(images, list) and images:
        first = images[0]
        if isinstance(first, Mapping):
            return _coerce_str(first.get("url")) or _coerce_str(first.get("displayUrl"))
        return _coerce_str(first)
    return None


def raw_post_from_object(
    obj: Mapping[str, Any],
    account: str | None = None,
    *,
    now_fn: Callable[[], datetime] | None = None,
) -> RawPost | None:
    """Convert one post-like object into a RawPost; None when it carries no id."""
    post_id = post_id_of(obj)
    if not post_id:
        return None

    timestamp = parse_timestamp(obj.get("timestamp"))
    if timestamp is None:
        timestamp = parse_timestamp(obj.get("takenAtTimestamp"))
    if timestamp is None:
        timestamp = (now_fn or (lambda: datetime.now(timezone.utc)))()

    product_type = (
        _coerce_str(obj.get("productType")) or _coerce_str(obj.get("type")) or ""
    ).casefold()
    path_segment = "reel" if "reel" in product_type else "p"
    permalink = (
        _coerce_str(obj.get("url"))
        or _coerce_str(obj.get("permalink"))
        or f"https://www.instagram.com/{path_segment}/{post_id}/"
    )

    video_url = _coerce_str(obj.get("videoUrl"))
    owner = _explicit_account(obj) or account

    return RawPost(
        post_id=post_id,
        timestamp=timestamp,
        permalink=permalink,
        caption=_coerce_str(obj.get("caption")) or "",
        image_url=_image_url(obj),
        video_url=video_url,
        is_video=obj.get("type") == "Video" or video_url is not None,
        account=owner,
    )


def iter_post_objects(
    items: Iterable[Any],
    requested: Mapping[str, str] | None = None,
) -> Iterator[tuple[str | None, Mapping[str, Any]]]:
    """Flatten nested and flat items into (account, post object) pairs."""
    for item in items:
        parsed = parse_item(item, requested)
        if isinstance(parsed, NestedItem):
            for post in parsed.posts:
                own = resolve_account(post, requested) if requested is not None else None
                yield own or parsed.account, post
        elif isinstance(parsed, FlatItem):
            yield parsed.account, parsed.post


def posts_from_items(items: Iterable[Any], *, limit: int | None = None) -> list[RawPost]:
    """Convert any mix of dataset items into posts, newest first."""
    posts: list[RawPost] = []
    seen: set[str] = set()

    for account, obj in iter_post_objects(items):
        post = raw_post_from_object(obj, account)
        if post is None or post.post_id in seen:
            continue
        seen.add(post.post_id)
        posts.append(post)

    posts.sort(key=lambda p: p.timestamp, reverse=True)
    if limit is not None:
        return posts[: max(0, int(limit))]
    return posts
