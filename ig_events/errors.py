from __future__ import annotations

from typing import Any


class ConfigError(RuntimeError):
    """Raised when configuration, credentials, or provider selection is missing or invalid."""


class ApifyError(RuntimeError):
    """Raised when an Apify Actor run, transport, or dataset read fails."""


class ActorRunFailedError(ApifyError):
    """Raised when an Actor run reaches a terminal status other than succeeded."""

    def __init__(self, message: str, *, status: str | None = None) -> None:
        super().__init__(message)
        self.status = status


class ActorRunTimeoutError(ApifyError):
    """Raised when an Actor run does not finish before its deadline."""


class RunnerInfraError(ApifyError):
    """Raised when the subprocess runner cannot be used at all (missing binary, deps, bad output)."""


class ExtractorError(RuntimeError):
    """Raised when an AI provider call fails or its response cannot be parsed."""


class ExtractionError(RuntimeError):
    """
    Raised when a post is not in a state that allows extraction.

    kind is machine-readable: not_found, image_unavailable, already_extracted.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.details: dict[str, Any] = dict(details or {})


class StorageError(RuntimeError):
    """Raised when reading or writing state in SQLite fails."""
