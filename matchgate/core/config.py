from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()  # Load .env file if present


def _get(key: str, default: str = "") -> str:
    return os.getenv(key, default)


def _get_bool(key: str, default: bool = False) -> bool:
    raw = _get(key, "1" if default else "0").strip().lower()
    return raw in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    APP_NAME: str = _get("APP_NAME", "MatchGate")
    APP_ENV: str = _get("APP_ENV", "dev")
    MATCHGATE_PORT: int = int(_get("MATCHGATE_PORT", "8001"))

    # Anthropic provider
    ANTHROPIC_API_KEY: str = _get("ANTHROPIC_API_KEY", "")
    ANTHROPIC_BASE_URL: str = _get("ANTHROPIC_BASE_URL", "https://api.anthropic.com/v1")
    ANTHROPIC_MODEL: str = _get("ANTHROPIC_MODEL", "claude-sonnet-4-5-20250929")
    ANTHROPIC_VERSION: str = _get("ANTHROPIC_VERSION", "2023-06-01")
    ANTHROPIC_MAX_TOKENS: int = int(_get("ANTHROPIC_MAX_TOKENS", "4096"))
    ANTHROPIC_TEMPERATURE: float = float(_get("ANTHROPIC_TEMPERATURE", "0.7"))

    # Provider call bounds
    AI_PROVIDER_TIMEOUT_SECONDS: float = float(_get("AI_PROVIDER_TIMEOUT_SECONDS", "20"))
    AI_PROVIDER_MAX_WORKERS: int = int(_get("AI_PROVIDER_MAX_WORKERS", "8"))
    # Outbound requests per minute across all callers, 0 disables
    AI_RATE_LIMIT_PER_MINUTE: int = int(_get("AI_RATE_LIMIT_PER_MINUTE", "50"))

    # Circuit breaker
    CB_FAILURES: int = int(_get("CB_FAILURES", "5"))
    CB_WINDOW_SEC: float = float(_get("CB_WINDOW_SEC", "60"))
    CB_OPEN_SEC: float = float(_get("CB_OPEN_SEC", "30"))
    CB_HALF_OPEN_MAX_PROBES: int = int(_get("CB_HALF_OPEN_MAX_PROBES", "1"))

    # Response cache
    REDIS_CACHE_URL: str = _get("REDIS_CACHE_URL", "")
    CACHE_KEY_PREFIX: str = _get("CACHE_KEY_PREFIX", "ai:gateway")
    CACHE_SCHEMA_VERSION: str = _get("CACHE_SCHEMA_VERSION", "2.0")
    CACHE_TTL_MATCH_SET: int = int(_get("CACHE_TTL_MATCH_SET", str(24 * 60 * 60)))
    CACHE_TTL_MATCH_EXPLANATION: int = int(_get("CACHE_TTL_MATCH_EXPLANATION", str(6 * 60 * 60)))
    CACHE_TTL_QA_CHAT: int = int(_get("CACHE_TTL_QA_CHAT", str(60 * 60)))

    # Per-request-type output limits
    MAX_OUTPUT_TOKENS_MATCH_SET: int = int(_get("MAX_OUTPUT_TOKENS_MATCH_SET", "2048"))
    MAX_OUTPUT_TOKENS_MATCH_EXPLANATION: int = int(_get("MAX_OUTPUT_TOKENS_MATCH_EXPLANATION", "1024"))
    MAX_OUTPUT_TOKENS_QA_CHAT: int = int(_get("MAX_OUTPUT_TOKENS_QA_CHAT", "1024"))

    # Cost ledger and budget (amounts in KRW)
    LEDGER_DATABASE_URL: str = _get("LEDGER_DATABASE_URL", "")
    AI_DAILY_BUDGET: str = _get("AI_DAILY_BUDGET", "50000")
    AI_BUDGET_ALERT_THRESHOLDS: str = _get("AI_BUDGET_ALERT_THRESHOLDS", "50,80,95")
    AI_BUDGET_HARD_STOP: bool = _get_bool("AI_BUDGET_HARD_STOP", True)
    AI_COST_PER_1K_INPUT_TOKENS: str = _get("AI_COST_PER_1K_INPUT_TOKENS", "3.90")
    AI_COST_PER_1K_OUTPUT_TOKENS: str = _get("AI_COST_PER_1K_OUTPUT_TOKENS", "19.50")
    AI_ACCOUNTING_UTC_OFFSET_HOURS: int = int(_get("AI_ACCOUNTING_UTC_OFFSET_HOURS", "9"))

    # Subscription tier quotas (monthly, "inf" = unbounded)
    RATE_LIMIT_TIER_LIMITS: str = _get("RATE_LIMIT_TIER_LIMITS", "free=2,pro=inf,team=inf")
    RATE_LIMIT_UPGRADE_URL: str = _get("RATE_LIMIT_UPGRADE_URL", "/pricing")


settings = Settings()
