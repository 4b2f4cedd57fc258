"""Deterministic request fingerprints.

A fingerprint is derived only from the inputs that change the meaning of a
request (profile version, program id, scoring version...). Any change to
those inputs yields a new key, so cached answers never need to be hunted
down and invalidated when source data moves on.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any, Mapping

from matchgate.core.services.ai.errors import MalformedRequestError

FINGERPRINT_RE = re.compile(r"^[A-Za-z0-9_.:\-]{1,200}$")
_REQUEST_TYPE_RE = re.compile(r"^[a-z][a-z0-9_]{0,63}$")
_DIGEST_CHARS = 32


def _check_part(name: str, value: Any) -> None:
    if value is None:
        raise MalformedRequestError(f"Fingerprint input '{name}' is missing.")
    if isinstance(value, str) and not value.strip():
        raise MalformedRequestError(f"Fingerprint input '{name}' is empty.")


def compute_fingerprint(request_type: str, parts: Mapping[str, Any]) -> str:
    """Return ``<request_type>:<digest>`` for the given semantic inputs."""
    if not isinstance(request_type, str) or not _REQUEST_TYPE_RE.match(request_type):
        raise MalformedRequestError(f"Invalid request type for fingerprint: {request_type!r}")
    if not parts:
        raise MalformedRequestError("Fingerprint needs at least one input.")
    for name, value in parts.items():
        _check_part(str(name), value)

    try:
        canonical = json.dumps(
            {"type": request_type, "parts": dict(parts)},
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except (TypeError, ValueError) as exc:
        raise MalformedRequestError(f"Fingerprint inputs are not serializable: {exc}") from exc

    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:_DIGEST_CHARS]
    return f"{request_type}:{digest}"


def match_explanation_fingerprint(
    *,
    organization_id: str,
    profile_version: Any,
    program_id: str,
    scoring_version: Any,
) -> str:
    return compute_fingerprint(
        "match_explanation",
        {
            "organization_id": organization_id,
            "profile_version": profile_version,
            "program_id": program_id,
            "scoring_version": scoring_version,
        },
    )


def match_set_fingerprint(
    *,
    organization_id: str,
    profile_version: Any,
    program_catalog_version: Any,
    scoring_version: Any,
) -> str:
    return compute_fingerprint(
        "match_set",
        {
            "organization_id": organization_id,
            "profile_version": profile_version,
            "program_catalog_version": program_catalog_version,
            "scoring_version": scoring_version,
        },
    )


def is_valid_fingerprint(value: Any) -> bool:
    return isinstance(value, str) and bool(FINGERPRINT_RE.match(value))
