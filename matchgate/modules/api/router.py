"""
Admin API - read-only views over the AI gateway.

Exposes breaker state, cache hit rate, daily cost aggregates, budget status
and gateway metrics under `/api/admin/gateway/*`.
"""

from __future__ import annotations

import logging
import threading
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from matchgate.core.services.ai import AIGateway, build_default_gateway
from matchgate.modules.api.models import (
    BreakersOut,
    BudgetStatusOut,
    CacheStatsOut,
    CostsOut,
    DailyCostOut,
    TopCallerOut,
)

_logger = logging.getLogger(__name__)

router = APIRouter()

_gateway: Optional[AIGateway] = None
_gateway_lock = threading.Lock()


def get_gateway() -> AIGateway:
    """Process-wide gateway, built from settings on first use."""
    global _gateway
    with _gateway_lock:
        if _gateway is None:
            _gateway = build_default_gateway()
            _logger.info("AI gateway initialized")
        return _gateway


def shutdown_gateway() -> None:
    global _gateway
    with _gateway_lock:
        if _gateway is not None:
            _gateway.close()
            _gateway = None


@router.get("/admin/gateway/breakers", response_model=BreakersOut)
def gateway_breakers(gateway: AIGateway = Depends(get_gateway)):
    """Circuit state per provider endpoint."""
    return {"endpoints": gateway.breaker_snapshot()}


@router.get("/admin/gateway/cache", response_model=CacheStatsOut)
def gateway_cache(gateway: AIGateway = Depends(get_gateway)):
    """Today's cache hit rate plus lifetime counters."""
    return gateway.cache_payload()


@router.get("/admin/gateway/costs", response_model=CostsOut)
def gateway_costs(
    days: int = Query(7, ge=1, le=90),
    top: int = Query(10, ge=0, le=100),
    gateway: AIGateway = Depends(get_gateway),
):
    """Per-day cost aggregates, oldest first, and the biggest spenders."""
    daily = gateway.daily_costs(days)
    total = sum((Decimal(item["total_amount"]) for item in daily), Decimal("0"))
    callers = [
        TopCallerOut(
            caller_id=str(item["caller_id"]),
            total_amount=str(item["total_amount"]),
            total_requests=int(item["total_requests"]),
        )
        for item in gateway.ledger.top_callers(days=days, limit=top)
    ]
    return CostsOut(
        days=days,
        total_amount=str(total),
        daily=[DailyCostOut(**item) for item in daily],
        top_callers=callers,
    )


@router.get("/admin/gateway/budget", response_model=BudgetStatusOut)
def gateway_budget(gateway: AIGateway = Depends(get_gateway)):
    """Spend against today's ceiling and the thresholds already alerted."""
    ledger = gateway.ledger
    payload: Dict[str, Any] = dict(ledger.budget_status())
    payload["hard_stop"] = gateway.budget_hard_stop
    payload["exhausted"] = ledger.budget_exhausted()
    payload["recent_alerts"] = [alert.to_dict() for alert in ledger.alert_history(limit=20)]
    return payload


@router.get("/admin/gateway/metrics")
def gateway_metrics(gateway: AIGateway = Depends(get_gateway)):
    """In-memory gateway counters for the current UTC day."""
    payload = gateway.metrics.snapshot()
    payload["breakers"] = gateway.breaker_snapshot()
    payload["provider_rpm"] = gateway.provider_rate_snapshot()
    return payload
