"""Error taxonomy for the AI gateway."""

from __future__ import annotations

import datetime as dt
import math
from typing import Optional


class GatewayError(RuntimeError):
    """Base class for AI gateway errors."""


class MalformedRequestError(GatewayError, ValueError):
    """Raised when a caller hands the gateway an invalid request.

    This is the only gateway error that reaches callers as a hard failure.
    """


class RateLimitExceededError(GatewayError):
    """Caller exhausted the quota of its subscription tier for this period."""

    def __init__(
        self,
        message: str = "Usage quota exceeded for this period.",
        *,
        caller_id: str = "",
        tier: str = "",
        remaining: float = 0,
        limit: float = 0,
        reset_at: Optional[dt.datetime] = None,
        upgrade_url: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.caller_id = caller_id
        self.tier = tier
        self.remaining = remaining
        self.limit = limit
        self.reset_at = reset_at
        self.upgrade_url = upgrade_url

    @property
    def upgrade_required(self) -> bool:
        return self.upgrade_url is not None and not math.isinf(self.limit)

    def to_dict(self) -> dict:
        return {
            "error": "rate_limit_exceeded",
            "message": str(self),
            "tier": self.tier,
            "remaining": None if math.isinf(self.remaining) else int(self.remaining),
            "limit": None if math.isinf(self.limit) else int(self.limit),
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
            "upgrade_required": self.upgrade_required,
            "upgrade_url": self.upgrade_url,
        }


class CircuitOpenError(GatewayError):
    """The breaker rejected the call; served as fallback, never retried."""

    def __init__(
        self,
        message: str = "AI provider temporarily unavailable.",
        *,
        endpoint: str = "",
        retry_in_seconds: float = 0.0,
    ) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.retry_in_seconds = retry_in_seconds


class BudgetExhaustedError(GatewayError):
    """Daily spend reached the configured ceiling."""

    def __init__(self, message: str = "Daily AI budget exhausted.", *, spent=None, ceiling=None) -> None:
        super().__init__(message)
        self.spent = spent
        self.ceiling = ceiling


class ProviderTransportError(GatewayError):
    """Timeout, connection failure or non-success status from the provider."""

    def __init__(
        self,
        message: str = "Provider transport error.",
        *,
        provider: str = "ai",
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        kind: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.retry_after = retry_after
        self.kind = kind


class ProviderTimeoutError(ProviderTransportError):
    """Provider call exceeded the gateway timeout."""


class ProviderRateLimitedError(GatewayError):
    """Outbound requests-per-minute limit for the endpoint is reached."""

    def __init__(
        self,
        message: str = "AI provider request rate limit reached.",
        *,
        endpoint: str = "",
        rpm: int = 0,
    ) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.rpm = rpm
