"""Single entry point for outbound AI-provider calls.

``invoke`` runs: validation -> tier quota -> response cache -> budget guard
-> provider rpm guard -> circuit breaker -> provider call (bounded timeout)
-> outcome bookkeeping.
Only ``MalformedRequestError`` escapes; quota denials come back as
``status="denied"`` and every provider-side problem is turned into flagged
fallback content.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from matchgate.core.services.ai.circuit_breaker import CircuitBreaker, Decision
from matchgate.core.services.ai.cost_ledger import CostLedger
from matchgate.core.services.ai.error_classifier import classify_error, extract_retry_after_seconds
from matchgate.core.services.ai.errors import (
    BudgetExhaustedError,
    CircuitOpenError,
    GatewayError,
    MalformedRequestError,
    ProviderRateLimitedError,
    ProviderTimeoutError,
    ProviderTransportError,
)
from matchgate.core.services.ai.fallback_content import build_fallback
from matchgate.core.services.ai.fingerprint import is_valid_fingerprint
from matchgate.core.services.ai.gateway_metrics import GatewayMetrics
from matchgate.core.services.ai.provider_client import ProviderClient, ProviderCompletion
from matchgate.core.services.ai.provider_rate_limiter import ProviderRateLimiter
from matchgate.core.services.ai.rate_limiter import QuotaRateLimiter, RateLimitDecision
from matchgate.core.services.ai.request_policy import RequestPolicy
from matchgate.core.services.ai.response_cache import ResponseCache

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_DEGRADED = "degraded"
STATUS_DENIED = "denied"


@dataclass
class GatewayRequest:
    caller_id: str
    tier: str
    fingerprint: str
    request_type: str
    prompt: str
    max_tokens: Optional[int] = None
    system: Optional[str] = None
    fallback_context: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayResult:
    content: str
    status: str  # ok | degraded | denied
    request_type: str
    fingerprint: str
    endpoint: str = ""
    served_from_cache: bool = False
    served_as_fallback: bool = False
    is_generic: bool = False
    source: str = "provider"
    fallback_reason: Optional[str] = None
    rate_limit: Optional[RateLimitDecision] = None
    error: Optional[GatewayError] = None
    input_units: int = 0
    output_units: int = 0
    cost: Optional[Decimal] = None
    model: str = ""

    @property
    def denied(self) -> bool:
        return self.status == STATUS_DENIED

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "content": self.content,
            "status": self.status,
            "request_type": self.request_type,
            "fingerprint": self.fingerprint,
            "served_from_cache": self.served_from_cache,
            "served_as_fallback": self.served_as_fallback,
            "is_generic": self.is_generic,
            "source": self.source,
            "fallback_reason": self.fallback_reason,
            "rate_limit": self.rate_limit.to_dict() if self.rate_limit else None,
            "input_units": self.input_units,
            "output_units": self.output_units,
            "cost": str(self.cost) if self.cost is not None else None,
        }
        if self.error is not None:
            to_dict = getattr(self.error, "to_dict", None)
            payload["error"] = to_dict() if callable(to_dict) else {"error": type(self.error).__name__, "message": str(self.error)}
        return payload


class AIGateway:
    """Quota, cache, breaker, provider call, fallback and cost bookkeeping."""

    def __init__(
        self,
        *,
        provider: ProviderClient,
        breaker: CircuitBreaker,
        cache: ResponseCache,
        ledger: CostLedger,
        rate_limiter: QuotaRateLimiter,
        policies: Dict[str, RequestPolicy],
        metrics: Optional[GatewayMetrics] = None,
        provider_rate_limiter: Optional[ProviderRateLimiter] = None,
        timeout_seconds: float = 20.0,
        max_workers: int = 8,
        budget_hard_stop: bool = True,
        time_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        if not policies:
            raise ValueError("AIGateway needs at least one request policy")
        self._provider = provider
        self._breaker = breaker
        self._cache = cache
        self._ledger = ledger
        self._rate_limiter = rate_limiter
        self._policies = dict(policies)
        self._metrics = metrics or GatewayMetrics()
        self._provider_rate_limiter = provider_rate_limiter
        self._timeout_seconds = max(0.001, float(timeout_seconds))
        self._budget_hard_stop = bool(budget_hard_stop)
        self._time_fn = time_fn
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, int(max_workers)),
            thread_name_prefix="ai-provider",
        )

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    @property
    def ledger(self) -> CostLedger:
        return self._ledger

    @property
    def rate_limiter(self) -> QuotaRateLimiter:
        return self._rate_limiter

    @property
    def metrics(self) -> GatewayMetrics:
        return self._metrics

    @property
    def provider_rate_limiter(self) -> Optional[ProviderRateLimiter]:
        return self._provider_rate_limiter

    @property
    def budget_hard_stop(self) -> bool:
        return self._budget_hard_stop

    def _validate(self, req: GatewayRequest) -> RequestPolicy:
        if not isinstance(req.caller_id, str) or not req.caller_id.strip():
            raise MalformedRequestError("caller_id is required.")
        if not is_valid_fingerprint(req.fingerprint):
            raise MalformedRequestError(f"Invalid fingerprint: {req.fingerprint!r}")
        policy = self._policies.get(req.request_type)
        if policy is None:
            raise MalformedRequestError(f"Unsupported request type: {req.request_type!r}")
        if not isinstance(req.prompt, str) or not req.prompt.strip():
            raise MalformedRequestError("prompt is required.")
        if req.max_tokens is not None and (not isinstance(req.max_tokens, int) or req.max_tokens <= 0):
            raise MalformedRequestError(f"max_tokens must be a positive integer, got {req.max_tokens!r}")
        self._rate_limiter.limit_for(req.tier)
        return policy

    def _log_structured(self, payload: Dict[str, Any]) -> None:
        logger.info("ai_gateway_call %s", json.dumps(payload, ensure_ascii=False, default=str))

    def _elapsed_ms(self, started: float) -> int:
        return int(round((self._time_fn() - started) * 1000))

    def _fallback(
        self,
        req: GatewayRequest,
        *,
        endpoint: str,
        quota: RateLimitDecision,
        reason: str,
        error: GatewayError,
    ) -> GatewayResult:
        fallback = build_fallback(req.request_type, reason, req.fallback_context)
        self._metrics.record_fallback(reason)
        logger.warning(
            "serving fallback for %s (caller=%s reason=%s): %s",
            req.fingerprint,
            req.caller_id,
            reason,
            error,
        )
        return GatewayResult(
            content=fallback.content,
            status=STATUS_DEGRADED,
            request_type=req.request_type,
            fingerprint=req.fingerprint,
            endpoint=endpoint,
            served_as_fallback=True,
            is_generic=fallback.is_generic,
            source=fallback.source,
            fallback_reason=reason,
            rate_limit=quota,
            error=error,
        )

    @staticmethod
    def _cached_content(value: Any) -> Optional[Dict[str, Any]]:
        if isinstance(value, dict) and isinstance(value.get("content"), str):
            return value
        return None

    def _budget_exhausted(self) -> bool:
        if not self._budget_hard_stop:
            return False
        try:
            return self._ledger.budget_exhausted()
        except Exception:
            logger.warning("could not read budget status, allowing call", exc_info=True)
            return False

    def _consume_quota(self, req: GatewayRequest) -> RateLimitDecision:
        try:
            return self._rate_limiter.check_and_consume(req.caller_id, req.tier)
        except MalformedRequestError:
            raise
        except Exception:
            self._metrics.record_quota_error()
            logger.warning("quota check failed for caller=%s, allowing call", req.caller_id, exc_info=True)
            return self._rate_limiter.unmetered(req.caller_id, req.tier)

    def _provider_slot_available(self, endpoint: str) -> bool:
        if self._provider_rate_limiter is None:
            return True
        try:
            return self._provider_rate_limiter.try_acquire(endpoint)
        except Exception:
            logger.warning("provider rpm check failed for %s, allowing call", endpoint, exc_info=True)
            return True

    def _call_provider(self, req: GatewayRequest, policy: RequestPolicy) -> ProviderCompletion:
        max_tokens = req.max_tokens or policy.max_output_tokens
        future = self._executor.submit(self._provider.complete, req.prompt, max_tokens, system=req.system)
        try:
            return future.result(timeout=self._timeout_seconds)
        except FuturesTimeoutError as exc:
            future.cancel()
            raise ProviderTimeoutError(
                f"Provider call exceeded {self._timeout_seconds:g}s timeout.",
                provider=getattr(self._provider, "name", "ai"),
            ) from exc

    def _store_in_cache(self, req: GatewayRequest, policy: RequestPolicy, completion: ProviderCompletion) -> None:
        try:
            self._cache.put(
                req.fingerprint,
                {"content": completion.text, "model": completion.model},
                policy.cache_ttl_seconds,
            )
        except Exception:
            logger.exception("failed to cache response for %s", req.fingerprint)

    def _record_cost(
        self,
        req: GatewayRequest,
        endpoint: str,
        completion: ProviderCompletion,
        latency_ms: int,
    ) -> Optional[Decimal]:
        if completion.input_units <= 0 and completion.output_units <= 0:
            return None
        try:
            amount = self._ledger.price(completion.input_units, completion.output_units)
            self._ledger.record(
                req.caller_id,
                req.request_type,
                completion.input_units,
                completion.output_units,
                amount,
                endpoint=endpoint,
                model=completion.model,
                latency_ms=latency_ms,
            )
            self._ledger.evaluate_budget()
            return amount
        except Exception:
            logger.exception("failed to record ai cost for caller=%s", req.caller_id)
            return None

    def invoke(self, req: GatewayRequest) -> GatewayResult:
        """Serve one AI request through the full resilience sequence."""
        policy = self._validate(req)
        endpoint = policy.endpoint

        quota = self._consume_quota(req)
        if not quota.allowed:
            self._metrics.record_quota_denied()
            return GatewayResult(
                content="",
                status=STATUS_DENIED,
                request_type=req.request_type,
                fingerprint=req.fingerprint,
                endpoint=endpoint,
                source="quota",
                rate_limit=quota,
                error=self._rate_limiter.denial_error(quota),
            )

        cached = self._cached_content(self._cache.get(req.fingerprint))
        if cached is not None:
            self._metrics.record_cache_hit()
            return GatewayResult(
                content=cached["content"],
                status=STATUS_OK,
                request_type=req.request_type,
                fingerprint=req.fingerprint,
                endpoint=endpoint,
                served_from_cache=True,
                source="cache",
                rate_limit=quota,
                model=str(cached.get("model") or ""),
            )
        self._metrics.record_cache_miss()

        if self._budget_exhausted():
            error = BudgetExhaustedError(spent=self._ledger.period_spend(), ceiling=self._ledger.ceiling)
            return self._fallback(req, endpoint=endpoint, quota=quota, reason="budget_exhausted", error=error)

        if not self._provider_slot_available(endpoint):
            rpm = self._provider_rate_limiter.rpm
            error = ProviderRateLimitedError(
                f"Provider rate limit of {rpm} requests per minute reached for {endpoint}.",
                endpoint=endpoint,
                rpm=rpm,
            )
            return self._fallback(req, endpoint=endpoint, quota=quota, reason="rate_limited", error=error)

        decision = self._breaker.allow(endpoint)
        if decision == Decision.REJECT:
            wait = self._breaker.seconds_until_probe(endpoint)
            error = CircuitOpenError(
                f"Circuit breaker is open for {endpoint}; next probe in {int(round(wait))}s.",
                endpoint=endpoint,
                retry_in_seconds=wait,
            )
            return self._fallback(req, endpoint=endpoint, quota=quota, reason="circuit_open", error=error)
        probe = decision == Decision.PROCEED_AS_PROBE

        started = self._time_fn()
        try:
            completion = self._call_provider(req, policy)
        except Exception as exc:
            latency_ms = self._elapsed_ms(started)
            kind = classify_error(exc)
            self._breaker.record_failure(endpoint, probe=probe, reason=kind.value)
            self._metrics.record_failure(endpoint, kind=kind.value, message=str(exc), latency_ms=latency_ms)
            self._log_structured(
                {
                    "request_id": req.metadata.get("request_id"),
                    "caller_id": req.caller_id,
                    "request_type": req.request_type,
                    "endpoint": endpoint,
                    "probe": probe,
                    "status_code": getattr(exc, "status_code", None),
                    "latency_ms": latency_ms,
                    "error_type": kind.value,
                    "retry_after": extract_retry_after_seconds(exc),
                    "error": str(exc)[:220],
                }
            )
            if isinstance(exc, ProviderTransportError):
                error = exc
                error.kind = error.kind or kind.value
            else:
                error = ProviderTransportError(
                    str(exc)[:240],
                    provider=getattr(self._provider, "name", "ai"),
                    kind=kind.value,
                )
            return self._fallback(req, endpoint=endpoint, quota=quota, reason="provider_error", error=error)

        latency_ms = self._elapsed_ms(started)
        self._breaker.record_success(endpoint, probe=probe)
        self._metrics.record_success(endpoint, latency_ms=latency_ms)
        self._store_in_cache(req, policy, completion)
        cost = self._record_cost(req, endpoint, completion, latency_ms)
        self._log_structured(
            {
                "request_id": req.metadata.get("request_id"),
                "caller_id": req.caller_id,
                "request_type": req.request_type,
                "endpoint": endpoint,
                "probe": probe,
                "status_code": 200,
                "latency_ms": latency_ms,
                "tokens_in": completion.input_units,
                "tokens_out": completion.output_units,
                "cost": str(cost) if cost is not None else None,
            }
        )
        return GatewayResult(
            content=completion.text,
            status=STATUS_OK,
            request_type=req.request_type,
            fingerprint=req.fingerprint,
            endpoint=endpoint,
            rate_limit=quota,
            input_units=completion.input_units,
            output_units=completion.output_units,
            cost=cost,
            model=completion.model,
        )

    async def ainvoke(self, req: GatewayRequest) -> GatewayResult:
        """Async wrapper for event-loop callers."""
        return await asyncio.to_thread(self.invoke, req)

    def breaker_snapshot(self) -> Dict[str, Dict[str, object]]:
        return self._breaker.snapshot()

    def provider_rate_snapshot(self) -> Optional[Dict[str, Any]]:
        if self._provider_rate_limiter is None:
            return None
        endpoints = sorted({policy.endpoint for policy in self._policies.values()})
        try:
            usage = {endpoint: self._provider_rate_limiter.window_usage(endpoint) for endpoint in endpoints}
        except Exception:
            logger.warning("could not read provider rpm window", exc_info=True)
            usage = {}
        return {"rpm_limit": self._provider_rate_limiter.rpm, "window_usage": usage}

    def cache_payload(self) -> Dict[str, Any]:
        payload = self._metrics.cache_payload()
        payload["lifetime"] = self._cache.stats()
        return payload

    def daily_costs(self, days: int) -> List[Dict[str, Any]]:
        return [item.to_dict() for item in self._ledger.daily_breakdown(days)]

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        closer = getattr(self._provider, "close", None)
        if callable(closer):
            closer()
