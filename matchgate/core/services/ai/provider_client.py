"""Anthropic Messages API client used by the gateway."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import requests  # type: ignore[import-untyped]

from matchgate.core.config import settings
from matchgate.core.services.ai.errors import ProviderTimeoutError, ProviderTransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderCompletion:
    text: str
    input_units: int
    output_units: int
    model: str = ""
    stop_reason: str = ""


class ProviderClient(Protocol):
    name: str

    def complete(self, prompt: str, max_tokens: int, *, system: Optional[str] = None) -> ProviderCompletion: ...


class AnthropicClient:
    """Synchronous Messages API client; any failure surfaces as ProviderTransportError."""

    name = "anthropic"

    def __init__(self) -> None:
        self._session: Optional[requests.Session] = None
        self._session_lock = threading.Lock()

    def _build_headers(self) -> Dict[str, str]:
        return {
            "x-api-key": settings.ANTHROPIC_API_KEY,
            "anthropic-version": settings.ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    def _get_session(self) -> requests.Session:
        with self._session_lock:
            if self._session is None:
                self._session = requests.Session()
                self._session.headers.update(self._build_headers())
                logger.info("AnthropicClient session created")
            return self._session

    def close(self) -> None:
        with self._session_lock:
            if self._session is not None:
                self._session.close()
                self._session = None

    def is_configured(self) -> bool:
        key = str(settings.ANTHROPIC_API_KEY or "").strip()
        return bool(key) and key != "your_api_key_here"

    def complete(
        self,
        prompt: str,
        max_tokens: int,
        *,
        system: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ProviderCompletion:
        if not self.is_configured():
            raise ProviderTransportError("ANTHROPIC_API_KEY is not configured", provider=self.name)

        url = f"{settings.ANTHROPIC_BASE_URL.rstrip('/')}/messages"
        payload: Dict[str, Any] = {
            "model": settings.ANTHROPIC_MODEL,
            "max_tokens": int(max_tokens or settings.ANTHROPIC_MAX_TOKENS),
            "temperature": float(settings.ANTHROPIC_TEMPERATURE),
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            payload["system"] = system
        request_timeout = timeout or float(getattr(settings, "AI_PROVIDER_TIMEOUT_SECONDS", 20))

        try:
            response = self._get_session().post(url, json=payload, timeout=request_timeout)
        except requests.Timeout as exc:
            self.close()
            raise ProviderTimeoutError("Timeout connecting to Anthropic.", provider=self.name) from exc
        except requests.RequestException as exc:
            self.close()
            raise ProviderTransportError(
                f"Anthropic request failed: {str(exc)[:200]}",
                provider=self.name,
            ) from exc

        status_code = int(response.status_code)
        if status_code >= 400:
            message = self._extract_error_message(response) or f"Anthropic API error {status_code}"
            raise ProviderTransportError(
                message,
                provider=self.name,
                status_code=status_code,
                retry_after=self._extract_retry_after_seconds(response),
            )

        data = self._safe_json(response)
        if not isinstance(data, dict):
            raise ProviderTransportError("Anthropic returned a non-JSON body", provider=self.name, status_code=status_code)

        text = self._extract_text(data)
        if not text.strip():
            raise ProviderTransportError("Anthropic returned empty content", provider=self.name, status_code=status_code)

        usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        return ProviderCompletion(
            text=text,
            input_units=int(usage.get("input_tokens") or 0),
            output_units=int(usage.get("output_tokens") or 0),
            model=str(data.get("model") or settings.ANTHROPIC_MODEL),
            stop_reason=str(data.get("stop_reason") or ""),
        )

    @staticmethod
    def _safe_json(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    @staticmethod
    def _extract_text(payload: Dict[str, Any]) -> str:
        blocks = payload.get("content")
        if not isinstance(blocks, list):
            return ""
        chunks = [
            block["text"]
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
        ]
        return "\n".join(chunks).strip()

    @staticmethod
    def _extract_error_message(response: requests.Response) -> str:
        payload = AnthropicClient._safe_json(response)
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict):
                message = error.get("message")
                if isinstance(message, str) and message.strip():
                    kind = str(error.get("type") or "").strip()
                    return f"{kind}: {message.strip()}"[:240] if kind else message.strip()[:240]
            for key in ("message", "detail"):
                value = payload.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()[:240]
        return str(getattr(response, "text", "") or "").strip()[:240]

    @staticmethod
    def _extract_retry_after_seconds(response: requests.Response) -> Optional[float]:
        header = response.headers.get("retry-after") if response.headers else None
        if header:
            try:
                value = float(header)
            except ValueError:
                return None
            if value > 0:
                return value
        return None
