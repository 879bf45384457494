"""Human-readable provider errors.

Non-200 responses are mapped to a reason by status code unless the body
carries an error message of its own; transport failures are rewritten into
short hints about what is probably wrong.
"""

from __future__ import annotations

import json

import httpx

_STATUS_REASONS: dict[int, str] = {
    401: "authentication failed, check your API key",
    403: "access denied, your API key may not have the required permissions",
    404: "model or endpoint not found",
    429: "rate limited, too many requests, please wait",
    500: "internal server error on the provider side",
    502: "provider service temporarily unavailable",
    503: "provider service temporarily unavailable",
    529: "provider is overloaded, please try again later",
}

# (substring of the raw error, friendly text); first match wins
_NETWORK_HINTS: tuple[tuple[str, str], ...] = (
    ("connection refused", "connection refused (is the service running?)"),
    ("no such host", "host not found (check the URL)"),
    ("name or service not known", "host not found (check the URL)"),
    ("nodename nor servname", "host not found (check the URL)"),
    ("timed out", "connection timed out (service may be starting up)"),
    ("timeout", "connection timed out (service may be starting up)"),
    ("deadline exceeded", "connection timed out (service may be starting up)"),
    ("eof", "connection closed unexpectedly"),
    ("server disconnected", "connection closed unexpectedly"),
    ("reset by peer", "connection reset by server"),
)


class ProviderError(RuntimeError):
    """A provider call failed.

    ``transient`` marks failures worth retrying (rate limits, 5xx, network).
    """

    def __init__(self, message: str, *, status_code: int | None = None, transient: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient


def is_transient_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def parse_provider_error(status_code: int, body: bytes | str) -> str:
    """Extract a readable reason from an error response body."""
    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        data = None

    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if data.get("message"):
            return str(data["message"])

    if status_code in _STATUS_REASONS:
        return _STATUS_REASONS[status_code]
    snippet = text[:200] + ("..." if len(text) > 200 else "")
    return f"HTTP {status_code}: {snippet}"


def friendly_network_error(exc: BaseException) -> str:
    """Rewrite a transport exception into a short hint."""
    if isinstance(exc, httpx.TimeoutException):
        return "connection timed out (service may be starting up)"
    raw = str(exc) or type(exc).__name__
    lowered = raw.lower()
    for needle, hint in _NETWORK_HINTS:
        if needle in lowered:
            return hint
    if isinstance(exc, httpx.ConnectError):
        return f"could not connect: {raw}"
    return raw


def provider_error_from_response(provider: str, status_code: int, body: bytes | str) -> ProviderError:
    reason = parse_provider_error(status_code, body)
    return ProviderError(
        f"provider {provider}: {reason}",
        status_code=status_code,
        transient=is_transient_status(status_code),
    )


def provider_error_from_exception(provider: str, exc: BaseException) -> ProviderError:
    return ProviderError(f"provider {provider}: {friendly_network_error(exc)}", transient=True)
