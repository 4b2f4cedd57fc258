"""Generic fallback answers served when the provider path is unavailable.

Fallback text is flagged (``is_generic``/``source``) so the UI can render it
as degraded, and the gateway never writes it to the response cache.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from matchgate.core.services.ai.request_policy import MATCH_EXPLANATION, MATCH_SET, QA_CHAT

_RETRY_NOTE = (
    "*Note: the AI service is temporarily unavailable. This is a generic answer; "
    "please try again later for a detailed analysis.*"
)


@dataclass(frozen=True)
class FallbackContent:
    content: str
    reason: str
    is_generic: bool = True
    source: str = "fallback"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "reason": self.reason,
            "is_generic": self.is_generic,
            "source": self.source,
        }


def _text(context: Mapping[str, Any], key: str, default: str) -> str:
    value = context.get(key)
    text = str(value).strip() if value is not None else ""
    return text or default


def _match_explanation(context: Mapping[str, Any]) -> str:
    program = _text(context, "program_title", "this program")
    organization = _text(context, "organization_name", "your organization")
    status = _text(context, "program_status", "ACTIVE").upper()
    score = context.get("match_score")
    score_line = f"- Match score: {score} / 100" if score is not None else "- Your profile matched this program's criteria"

    if status == "EXPIRED":
        steps = (
            "1. This call has closed; watch for next year's announcement of similar programs\n"
            "2. Use the eligibility and TRL requirements to plan what to strengthen\n"
            "3. Start drafting the business plan early (3-4 weeks of work)"
        )
    elif status == "ARCHIVED":
        steps = (
            "1. This program was discontinued; check the dashboard for active alternatives\n"
            "2. Look for programs with a similar category and TRL range\n"
            "3. Complete your organization profile to improve future matches"
        )
    else:
        steps = (
            "1. Review the program announcement in detail (eligibility, TRL requirements)\n"
            "2. Prepare the required certifications and documents\n"
            "3. Check the application deadline and leave enough preparation time"
        )

    return (
        f"**Match Result**: {program}\n\n"
        "**Selection Reasons**:\n"
        f"- {organization} aligns with the program's objectives\n"
        f"{score_line}\n\n"
        f"**Next Steps**:\n{steps}\n\n"
        f"{_RETRY_NOTE}"
    )


def _match_set(context: Mapping[str, Any]) -> str:
    count = context.get("candidate_count")
    lead = (
        f"We found {count} candidate programs for your profile, ranked by the standard score."
        if count
        else "Your matches are ranked by the standard score."
    )
    return (
        f"{lead} Personalized AI ranking notes are not available right now.\n\n"
        f"{_RETRY_NOTE}"
    )


def _qa_chat(context: Mapping[str, Any]) -> str:
    return (
        "I can't answer right now because the AI assistant is temporarily unavailable. "
        "Please check the program announcement for eligibility details or try again in a few minutes.\n\n"
        f"{_RETRY_NOTE}"
    )


_BUILDERS = {
    MATCH_EXPLANATION: _match_explanation,
    MATCH_SET: _match_set,
    QA_CHAT: _qa_chat,
}


def build_fallback(request_type: str, reason: str, context: Optional[Mapping[str, Any]] = None) -> FallbackContent:
    builder = _BUILDERS.get(request_type)
    ctx = context or {}
    if builder is None:
        content = f"The AI service is temporarily unavailable.\n\n{_RETRY_NOTE}"
    else:
        content = builder(ctx)
    return FallbackContent(content=content, reason=reason)
