"""Classification helpers for provider/API errors."""

from __future__ import annotations

import re
from enum import Enum
from typing import Optional

_RETRY_AFTER_RE = re.compile(
    r"(?:retry\s+after|retry\s+in)\s+([0-9]+(?:\.[0-9]+)?)",
    re.IGNORECASE,
)


class ProviderErrorKind(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    OVERLOADED = "overloaded"
    AUTH_ERROR = "auth"
    BAD_REQUEST = "bad_request"
    CONNECTION = "connection"
    ERROR = "error"


def classify_error(exc: Exception, status_code: Optional[int] = None) -> ProviderErrorKind:
    """Bucket a provider failure for logs and metrics."""
    status = status_code
    if status is None:
        try:
            raw = getattr(exc, "status_code", None)
            if raw is not None:
                status = int(raw)
        except (TypeError, ValueError):
            status = None

    message = f"{type(exc).__name__}: {exc}".lower()

    if isinstance(exc, TimeoutError) or any(
        marker in message for marker in ("timeout", "timed out", "etimedout")
    ):
        return ProviderErrorKind.TIMEOUT

    if status in {401, 403} or any(
        marker in message
        for marker in (
            "invalid api key",
            "invalid x-api-key",
            "authentication_error",
            "permission denied",
            "unauthorized",
        )
    ):
        return ProviderErrorKind.AUTH_ERROR

    if status == 429 or any(marker in message for marker in ("rate limit", "rate_limit_error", "retry after")):
        return ProviderErrorKind.RATE_LIMITED

    if status in {500, 502, 503, 504, 529} or any(
        marker in message for marker in ("overloaded", "service unavailable", "temporarily unavailable")
    ):
        return ProviderErrorKind.OVERLOADED

    if status is not None and 400 <= status < 500:
        return ProviderErrorKind.BAD_REQUEST

    if any(
        marker in message
        for marker in (
            "connection reset",
            "econnreset",
            "connection refused",
            "connection aborted",
            "network",
            "ssl",
        )
    ):
        return ProviderErrorKind.CONNECTION

    return ProviderErrorKind.ERROR


def extract_retry_after_seconds(exc: Exception) -> Optional[float]:
    """Best-effort retry-after extraction from exception attributes/text."""
    direct = getattr(exc, "retry_after", None)
    if isinstance(direct, (int, float)) and direct > 0:
        return float(direct)

    match = _RETRY_AFTER_RE.search(str(exc))
    if match:
        value = float(match.group(1))
        if value > 0:
            return value
    return None
