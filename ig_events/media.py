from __future__ import annotations

import re
from pathlib import Path, PurePosixPath
from urllib.parse import urlsplit

import requests

from .run_log import RunLogger

_BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36"
    ),
    "Accept": "image/avif,image/webp,image/apng,image/svg+xml,image/*,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Referer": "https://www.instagram.com/",
    "Sec-Fetch-Dest": "image",
    "Sec-Fetch-Mode": "no-cors",
    "Sec-Fetch-Site": "cross-site",
}

_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9_.-]+")
_KNOWN_EXTS = {".jpg", ".jpeg", ".png", ".webp", ".gif", ".heic"}


def image_filename(post_id: str, url: str) -> str:
    ext = PurePosixPath(urlsplit(url).path).suffix.casefold()
    if ext not in _KNOWN_EXTS:
        ext = ".jpg"
    stem = _SAFE_NAME_RE.sub("_", post_id).strip("._") or "post"
    return f"{stem}{ext}"


class ImageDownloader:
    """
    Saves post images under image_dir as <post id><ext>.

    CDN image URLs expire and reject non-browser clients, so requests carry browser headers.
    """

    def __init__(
        self,
        image_dir: str | Path,
        *,
        timeout_secs: float = 30.0,
        session: requests.Session | None = None,
        logger: RunLogger | None = None,
    ) -> None:
        self._dir = Path(image_dir)
        self._timeout = float(timeout_secs)
        self._session = session or requests.Session()
        self._logger = logger or RunLogger.disabled()

    @property
    def image_dir(self) -> Path:
        return self._dir

    def download(self, url: str, post_id: str) -> str | None:
        """Return the stored file name relative to image_dir, or None when the download failed."""
        filename = image_filename(post_id, url)
        target = self._dir / filename
        partial = target.with_suffix(target.suffix + ".part")

        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            with self._session.get(
                url, headers=_BROWSER_HEADERS, timeout=self._timeout, stream=True
            ) as response:
                response.raise_for_status()
                with partial.open("wb") as fh:
                    for chunk in response.iter_content(chunk_size=64 * 1024):
                        if chunk:
                            fh.write(chunk)
            partial.replace(target)
        except (requests.RequestException, OSError) as e:
            partial.unlink(missing_ok=True)
            self._logger.warning(
                "image_download_failed",
                post_id=post_id,
                url=url,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None

        return filename
