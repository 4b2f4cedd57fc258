"""Request-type specific policy for the AI gateway."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from matchgate.core.config import settings

MATCH_SET = "match_set"
MATCH_EXPLANATION = "match_explanation"
QA_CHAT = "qa_chat"

DEFAULT_ENDPOINT = "anthropic:messages"


@dataclass(frozen=True)
class RequestPolicy:
    cache_ttl_seconds: int
    max_output_tokens: int
    endpoint: str = DEFAULT_ENDPOINT


def build_request_policies() -> Dict[str, RequestPolicy]:
    """Build runtime policies from settings/env vars."""
    return {
        MATCH_SET: RequestPolicy(
            cache_ttl_seconds=max(60, int(getattr(settings, "CACHE_TTL_MATCH_SET", 86400))),
            max_output_tokens=max(100, int(getattr(settings, "MAX_OUTPUT_TOKENS_MATCH_SET", 2048))),
        ),
        MATCH_EXPLANATION: RequestPolicy(
            cache_ttl_seconds=max(60, int(getattr(settings, "CACHE_TTL_MATCH_EXPLANATION", 21600))),
            max_output_tokens=max(100, int(getattr(settings, "MAX_OUTPUT_TOKENS_MATCH_EXPLANATION", 1024))),
        ),
        QA_CHAT: RequestPolicy(
            cache_ttl_seconds=max(60, int(getattr(settings, "CACHE_TTL_QA_CHAT", 3600))),
            max_output_tokens=max(100, int(getattr(settings, "MAX_OUTPUT_TOKENS_QA_CHAT", 1024))),
        ),
    }
