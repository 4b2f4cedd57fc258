"""Wire an AIGateway from settings/env vars."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional, Tuple

from matchgate.core.config import settings
from matchgate.core.services.ai.budget_alerts import LoggingBudgetNotifier, parse_thresholds
from matchgate.core.services.ai.circuit_breaker import CircuitBreaker
from matchgate.core.services.ai.cost_ledger import CostLedger, CostModel
from matchgate.core.services.ai.gateway import AIGateway
from matchgate.core.services.ai.gateway_metrics import GatewayMetrics
from matchgate.core.services.ai.provider_client import AnthropicClient, ProviderClient
from matchgate.core.services.ai.provider_rate_limiter import (
    ProviderRateLimiter,
    RedisSlidingWindowRateLimiter,
    SlidingWindowRateLimiter,
)
from matchgate.core.services.ai.rate_limiter import QuotaRateLimiter, parse_tier_limits
from matchgate.core.services.ai.request_policy import build_request_policies
from matchgate.core.services.ai.response_cache import ResponseCache
from matchgate.core.storage.counter_store import CounterStore, InMemoryCounterStore, RedisCounterStore
from matchgate.core.storage.kv_store import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore
from matchgate.core.storage.ledger_store import InMemoryLedgerStore, LedgerStore, SqlLedgerStore

logger = logging.getLogger(__name__)


def _build_stores() -> Tuple[KeyValueStore, CounterStore]:
    url = str(getattr(settings, "REDIS_CACHE_URL", "") or "").strip()
    if not url:
        logger.info("REDIS_CACHE_URL not set, using in-process cache and quota counters")
        return InMemoryKeyValueStore(), InMemoryCounterStore()
    kv = RedisKeyValueStore(url)
    return kv, RedisCounterStore(client=kv.client)


def _build_ledger_store() -> LedgerStore:
    url = str(getattr(settings, "LEDGER_DATABASE_URL", "") or "").strip()
    if not url:
        logger.info("LEDGER_DATABASE_URL not set, cost records are kept in memory")
        return InMemoryLedgerStore()
    return SqlLedgerStore(url)


def _build_provider_rate_limiter(kv_store: KeyValueStore) -> Optional[ProviderRateLimiter]:
    rpm = int(getattr(settings, "AI_RATE_LIMIT_PER_MINUTE", 0) or 0)
    if rpm <= 0:
        logger.info("AI_RATE_LIMIT_PER_MINUTE is 0, outbound provider calls are not rate limited")
        return None
    if isinstance(kv_store, RedisKeyValueStore):
        return RedisSlidingWindowRateLimiter(rpm, client=kv_store.client)
    return SlidingWindowRateLimiter(rpm)


def build_default_gateway(provider: Optional[ProviderClient] = None) -> AIGateway:
    kv_store, counter_store = _build_stores()

    breaker = CircuitBreaker(
        failures_threshold=int(getattr(settings, "CB_FAILURES", 5)),
        window_seconds=float(getattr(settings, "CB_WINDOW_SEC", 60)),
        open_seconds=float(getattr(settings, "CB_OPEN_SEC", 30)),
        half_open_max_probes=int(getattr(settings, "CB_HALF_OPEN_MAX_PROBES", 1)),
    )
    cache = ResponseCache(
        kv_store,
        prefix=settings.CACHE_KEY_PREFIX,
        schema_version=settings.CACHE_SCHEMA_VERSION,
    )
    ledger = CostLedger(
        _build_ledger_store(),
        daily_budget=Decimal(settings.AI_DAILY_BUDGET),
        thresholds=parse_thresholds(settings.AI_BUDGET_ALERT_THRESHOLDS),
        cost_model=CostModel(
            per_1k_input=Decimal(settings.AI_COST_PER_1K_INPUT_TOKENS),
            per_1k_output=Decimal(settings.AI_COST_PER_1K_OUTPUT_TOKENS),
        ),
        notifiers=[LoggingBudgetNotifier()],
        utc_offset_hours=settings.AI_ACCOUNTING_UTC_OFFSET_HOURS,
    )
    rate_limiter = QuotaRateLimiter(
        parse_tier_limits(settings.RATE_LIMIT_TIER_LIMITS),
        store=counter_store,
        upgrade_url=settings.RATE_LIMIT_UPGRADE_URL or None,
    )
    client = provider if provider is not None else AnthropicClient()
    if isinstance(client, AnthropicClient) and not client.is_configured():
        logger.warning("ANTHROPIC_API_KEY is not configured; every call will be served as fallback")

    return AIGateway(
        provider=client,
        breaker=breaker,
        cache=cache,
        ledger=ledger,
        rate_limiter=rate_limiter,
        policies=build_request_policies(),
        metrics=GatewayMetrics(),
        provider_rate_limiter=_build_provider_rate_limiter(kv_store),
        timeout_seconds=float(getattr(settings, "AI_PROVIDER_TIMEOUT_SECONDS", 20)),
        max_workers=int(getattr(settings, "AI_PROVIDER_MAX_WORKERS", 8)),
        budget_hard_stop=bool(getattr(settings, "AI_BUDGET_HARD_STOP", True)),
    )
