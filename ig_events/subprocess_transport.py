from __future__ import annotations

import json
import subprocess
import sys
from typing import Any, Callable, Mapping, Sequence

from .apify_client import clamp_page_size
from .config_schema import DEFAULT_APIFY_API_URL, ApifyConfig
from .errors import ActorRunFailedError, ActorRunTimeoutError, ApifyError, RunnerInfraError

RunFn = Callable[..., "subprocess.CompletedProcess[str]"]

MISSING_DEPENDENCY_SIGNATURES = (
    "no module named",
    "modulenotfounderror",
    "cannot find module",
    "err_module_not_found",
)


def default_runner_command() -> list[str]:
    return [sys.executable, "-m", "ig_events.actor_runner"]


def looks_like_missing_dependency(text: str) -> bool:
    lowered = (text or "").casefold()
    return any(sig in lowered for sig in MISSING_DEPENDENCY_SIGNATURES)


def _structured_error(text: str) -> dict[str, Any] | None:
    s = (text or "").strip()
    if not s:
        return None
    # The structured error is the last JSON object line; earlier lines may be warnings.
    for line in reversed(s.splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict) and ("name" in obj or "message" in obj):
            return obj
    return None


def error_from_failure(returncode: int, stdout: str, stderr: str) -> ApifyError:
    """Map a failed runner process onto the matching exception."""
    diagnostic = (stderr or "").strip() or (stdout or "").strip()
    if looks_like_missing_dependency(diagnostic):
        return RunnerInfraError(
            "Actor runner dependencies are missing (install apify-client for the runner "
            f"interpreter): {diagnostic[-500:]}"
        )

    payload = _structured_error(diagnostic)
    if payload is None:
        return ApifyError(
            f"Actor runner failed with exit code {returncode}: "
            f"{diagnostic[-1000:] or 'no diagnostic output'}"
        )

    name = str(payload.get("name") or "")
    message = str(payload.get("message") or diagnostic)
    if name == ActorRunTimeoutError.__name__:
        return ActorRunTimeoutError(f"Actor runner: {message}")
    if name == ActorRunFailedError.__name__:
        return ActorRunFailedError(f"Actor runner: {message}", status=payload.get("status"))
    status_code = payload.get("statusCode")
    suffix = f" (HTTP {status_code})" if status_code else ""
    return ApifyError(f"Actor runner failed: {message}{suffix}")


class SubprocessTransport:
    """
    Runs the Actor through an external runner process.

    Run input goes to stdin as JSON; the dataset comes back on stdout as one JSON array.
    """

    name = "subprocess"

    def __init__(
        self,
        token: str,
        *,
        apify: ApifyConfig,
        command: Sequence[str] | None = None,
        run_fn: RunFn | None = None,
    ) -> None:
        self._token = token
        self._apify = apify
        self._command = list(command or apify.runner_command or default_runner_command())
        self._run_fn = run_fn or subprocess.run

    @property
    def command(self) -> list[str]:
        return list(self._command)

    def build_args(self, *, wait_secs: int, dataset_limit: int | None) -> list[str]:
        args = [
            *self._command,
            "--token",
            self._token,
            "--actor",
            self._apify.actor_id,
            "--timeout-secs",
            str(self._apify.request_timeout_secs),
            "--wait-secs",
            str(wait_secs),
            "--page-size",
            str(clamp_page_size(self._apify.dataset_page_size)),
        ]
        if dataset_limit is not None:
            args += ["--limit", str(int(dataset_limit))]
        if self._apify.base_url != DEFAULT_APIFY_API_URL:
            args += ["--base-url", self._apify.base_url]
        return args

    def run(
        self,
        run_input: Mapping[str, Any],
        *,
        timeout_secs: int | None = None,
        dataset_limit: int | None = None,
    ) -> list[dict[str, Any]]:
        wait_secs = max(int(timeout_secs or self._apify.run_timeout_secs), 1)
        args = self.build_args(wait_secs=wait_secs, dataset_limit=dataset_limit)

        try:
            proc = self._run_fn(
                args,
                input=json.dumps(dict(run_input)),
                capture_output=True,
                text=True,
                encoding="utf-8",
                timeout=wait_secs + self._apify.runner_timeout_buffer_secs,
                check=False,
            )
        except FileNotFoundError as e:
            raise RunnerInfraError(f"Actor runner command not found: {self._command[0]}") from e
        except subprocess.TimeoutExpired as e:
            raise ActorRunTimeoutError(
                f"Actor runner did not finish within {wait_secs}s "
                f"(+{self._apify.runner_timeout_buffer_secs}s buffer)"
            ) from e
        except OSError as e:
            raise RunnerInfraError(f"Actor runner could not be launched: {e}") from e

        if proc.returncode != 0:
            raise error_from_failure(proc.returncode, proc.stdout or "", proc.stderr or "")

        out = (proc.stdout or "").strip()
        if not out:
            return []

        try:
            items = json.loads(out)
        except json.JSONDecodeError as e:
            raise RunnerInfraError("Actor runner returned malformed JSON output") from e

        if not isinstance(items, list):
            raise ApifyError("Actor runner produced unexpected output format (expected a JSON array)")
        return items
