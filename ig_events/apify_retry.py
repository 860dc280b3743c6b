from __future__ import annotations

from apify_client.errors import ApifyApiError

_STATUS_ATTRS = ("status_code", "statusCode", "http_status")


def status_code_of(exc: BaseException) -> int | None:
    for attr in _STATUS_ATTRS:
        value = getattr(exc, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
    return None


def _is_network_failure(exc: BaseException) -> bool:
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    # httpx/requests transport errors without importing either stack.
    kind = type(exc).__name__.casefold()
    return any(word in kind for word in ("timeout", "connect", "network", "remoteprotocol"))


def transient_apify_reason(exc: BaseException) -> str | None:
    """
    Reason string when an Apify API call failure is worth retrying, else None.

    Network failures, HTTP 408, HTTP 429 and HTTP 5xx are transient. Any other
    API error (401, 403, 404, invalid input) is permanent.
    """
    if isinstance(exc, ApifyApiError):
        code = status_code_of(exc)
        if code is not None and (code in (408, 429) or code >= 500):
            return f"http_{code}"
        return None

    if _is_network_failure(exc):
        return "network_error"
    return None
