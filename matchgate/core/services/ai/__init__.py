"""AI gateway package for MatchGate.

Every outbound call to the AI provider goes through ``AIGateway.invoke``,
which applies tier quotas, response caching, the provider rpm guard, the
circuit breaker, fallback content and cost accounting.
"""

from matchgate.core.services.ai.circuit_breaker import CircuitBreaker, CircuitStatus, Decision
from matchgate.core.services.ai.cost_ledger import CostLedger, CostModel
from matchgate.core.services.ai.errors import (
    BudgetExhaustedError,
    CircuitOpenError,
    GatewayError,
    MalformedRequestError,
    ProviderRateLimitedError,
    ProviderTimeoutError,
    ProviderTransportError,
    RateLimitExceededError,
)
from matchgate.core.services.ai.factory import build_default_gateway
from matchgate.core.services.ai.fingerprint import (
    compute_fingerprint,
    match_explanation_fingerprint,
    match_set_fingerprint,
)
from matchgate.core.services.ai.gateway import AIGateway, GatewayRequest, GatewayResult
from matchgate.core.services.ai.provider_rate_limiter import SlidingWindowRateLimiter
from matchgate.core.services.ai.rate_limiter import QuotaRateLimiter
from matchgate.core.services.ai.response_cache import ResponseCache

__all__ = [
    "AIGateway",
    "GatewayRequest",
    "GatewayResult",
    "build_default_gateway",
    "CircuitBreaker",
    "CircuitStatus",
    "Decision",
    "ResponseCache",
    "CostLedger",
    "CostModel",
    "QuotaRateLimiter",
    "SlidingWindowRateLimiter",
    "compute_fingerprint",
    "match_explanation_fingerprint",
    "match_set_fingerprint",
    "GatewayError",
    "MalformedRequestError",
    "RateLimitExceededError",
    "CircuitOpenError",
    "BudgetExhaustedError",
    "ProviderTransportError",
    "ProviderRateLimitedError",
    "ProviderTimeoutError",
]
