"""Per-caller monthly usage quota by subscription tier."""

from __future__ import annotations

import datetime as dt
import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from matchgate.core.services.ai.errors import MalformedRequestError, RateLimitExceededError
from matchgate.core.storage.counter_store import CounterStore, InMemoryCounterStore

logger = logging.getLogger(__name__)

UNLIMITED = math.inf


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def month_key(now: dt.datetime) -> str:
    return now.astimezone(dt.timezone.utc).strftime("%Y-%m")


def next_month_start(now: dt.datetime) -> dt.datetime:
    current = now.astimezone(dt.timezone.utc)
    if current.month == 12:
        return dt.datetime(current.year + 1, 1, 1, tzinfo=dt.timezone.utc)
    return dt.datetime(current.year, current.month + 1, 1, tzinfo=dt.timezone.utc)


def parse_tier_limits(raw: str) -> Dict[str, float]:
    """Parse ``"free=2,pro=inf"`` into ``{"free": 2, "pro": inf}``."""
    limits: Dict[str, float] = {}
    for item in str(raw or "").split(","):
        if not item.strip():
            continue
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise ValueError(f"invalid tier limit entry: {item!r}")
        text = value.strip().lower()
        if text in {"inf", "unlimited", "-1"}:
            limits[name.strip().lower()] = UNLIMITED
            continue
        limit = int(text)
        if limit < 0:
            raise ValueError(f"tier limit cannot be negative: {item!r}")
        limits[name.strip().lower()] = limit
    return limits


@dataclass(frozen=True)
class RateLimitCounter:
    caller_id: str
    period: str
    used: int
    limit: float
    reset_at: dt.datetime


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: float
    reset_at: dt.datetime
    limit: float
    used: int
    tier: str
    caller_id: str

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "remaining": None if math.isinf(self.remaining) else int(self.remaining),
            "limit": None if math.isinf(self.limit) else int(self.limit),
            "used": self.used,
            "reset_at": self.reset_at.isoformat(),
            "tier": self.tier,
        }


class QuotaRateLimiter:
    """Checks and consumes one unit of a caller's tier quota atomically.

    Unbounded tiers run through the same path with ``limit = inf``.
    """

    def __init__(
        self,
        limits: Dict[str, float],
        *,
        store: Optional[CounterStore] = None,
        key_prefix: str = "ai:quota",
        upgrade_url: Optional[str] = None,
        now_fn: Callable[[], dt.datetime] = _utc_now,
    ) -> None:
        self._limits = {str(k).lower(): v for k, v in (limits or {}).items()}
        self._store = store if store is not None else InMemoryCounterStore()
        self._key_prefix = key_prefix
        self._upgrade_url = upgrade_url
        self._now_fn = now_fn

    def limit_for(self, tier: str) -> float:
        key = str(tier or "").strip().lower()
        if key not in self._limits:
            raise MalformedRequestError(f"Unknown subscription tier: {tier!r}")
        return self._limits[key]

    def _key(self, caller_id: str, period: str) -> str:
        return f"{self._key_prefix}:{caller_id}:{period}"

    def check_and_consume(self, caller_id: str, tier: str) -> RateLimitDecision:
        limit = self.limit_for(tier)
        now = self._now_fn()
        period = month_key(now)
        reset_at = next_month_start(now)
        allowed, used = self._store.consume(self._key(caller_id, period), limit=limit, reset_at=reset_at, now=now)
        decision = RateLimitDecision(
            allowed=allowed,
            remaining=max(0, limit - used),
            reset_at=reset_at,
            limit=limit,
            used=used,
            tier=str(tier).lower(),
            caller_id=str(caller_id),
        )
        if not allowed:
            logger.info("quota exhausted caller=%s tier=%s used=%d reset_at=%s", caller_id, tier, used, reset_at)
        return decision

    def unmetered(self, caller_id: str, tier: str) -> RateLimitDecision:
        """Allowed decision that consumed nothing, used when the counters are unreachable."""
        limit = self.limit_for(tier)
        return RateLimitDecision(
            allowed=True,
            remaining=limit,
            reset_at=next_month_start(self._now_fn()),
            limit=limit,
            used=0,
            tier=str(tier).lower(),
            caller_id=str(caller_id),
        )

    def peek(self, caller_id: str, tier: str) -> RateLimitCounter:
        limit = self.limit_for(tier)
        now = self._now_fn()
        period = month_key(now)
        used = self._store.peek(self._key(caller_id, period), now=now)
        return RateLimitCounter(
            caller_id=str(caller_id),
            period=period,
            used=used,
            limit=limit,
            reset_at=next_month_start(now),
        )

    def denial_error(self, decision: RateLimitDecision) -> RateLimitExceededError:
        return RateLimitExceededError(
            f"Monthly AI quota for the '{decision.tier}' plan is used up "
            f"({decision.used}/{int(decision.limit)}). It resets at {decision.reset_at.isoformat()}.",
            caller_id=decision.caller_id,
            tier=decision.tier,
            remaining=decision.remaining,
            limit=decision.limit,
            reset_at=decision.reset_at,
            upgrade_url=self._upgrade_url,
        )
