from __future__ import annotations

import json
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, TextIO

_MESSAGE_LIMIT = 2000
_TRACEBACK_LIMIT = 8000


def _clip(text: str, limit: int) -> str:
    s = str(text or "")
    return s if len(s) <= limit else s[: limit - 1] + "…"


class _Sink:
    """Shared, lock-guarded line writer behind a logger and its bound children."""

    def __init__(self, *, path: Path | None, stream: TextIO | None, overwrite: bool) -> None:
        self.path = path
        self.stream = stream
        self.overwrite = overwrite
        self.lock = Lock()
        self.owns_stream = False

    def write(self, line: str) -> None:
        with self.lock:
            if self.stream is None:
                if self.path is None:
                    return
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self.stream = self.path.open(
                    "w" if self.overwrite else "a", encoding="utf-8", newline="\n"
                )
                self.owns_stream = True
            self.stream.write(line + "\n")
            self.stream.flush()

    def close(self) -> None:
        with self.lock:
            if self.stream is not None and self.owns_stream:
                self.stream.close()
                self.stream = None


class RunLogger:
    """
    JSON-lines logger for ingestion and extraction jobs.

    Every line is one object: ts, level, event, session_id, bound context and data.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        *,
        stream: TextIO | None = None,
        overwrite: bool = False,
        session_id: str | None = None,
        _sink: _Sink | None = None,
        _context: dict[str, Any] | None = None,
    ) -> None:
        self._sink = _sink or _Sink(
            path=Path(path) if path is not None else None,
            stream=stream,
            overwrite=overwrite,
        )
        self._session_id = (session_id or "").strip() or uuid.uuid4().hex
        self._context = dict(_context or {})

    @classmethod
    def open(cls, path: str | Path, *, overwrite: bool = False) -> "RunLogger":
        return cls(path, overwrite=overwrite)

    @classmethod
    def disabled(cls) -> "RunLogger":
        return cls()

    @property
    def session_id(self) -> str:
        return self._session_id

    def bind(self, **context: Any) -> "RunLogger":
        """Child logger writing to the same sink with extra fields on every line."""
        merged = {**self._context, **{k: v for k, v in context.items() if v is not None}}
        return RunLogger(session_id=self._session_id, _sink=self._sink, _context=merged)

    def close(self) -> None:
        self._sink.close()

    def __enter__(self) -> "RunLogger":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def info(self, event: str, **data: Any) -> None:
        self.log("INFO", event, **data)

    def warning(self, event: str, **data: Any) -> None:
        self.log("WARN", event, **data)

    def error(self, event: str, **data: Any) -> None:
        self.log("ERROR", event, **data)

    def exception(self, event: str, *, exc: BaseException, **data: Any) -> None:
        trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        err = {
            "type": type(exc).__name__,
            "message": _clip(str(exc), _MESSAGE_LIMIT),
            "traceback": _clip(trace, _TRACEBACK_LIMIT),
        }
        self.log("ERROR", event, error=err, **data)

    def log(self, level: str, event: str, **data: Any) -> None:
        record: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": (level or "INFO").strip().upper(),
            "event": (event or "").strip() or "event",
            "session_id": self._session_id,
        }
        record.update(self._context)
        if data:
            record["data"] = data

        self._sink.write(
            json.dumps(
                record,
                ensure_ascii=False,
                sort_keys=True,
                separators=(",", ":"),
                default=str,
            )
        )
