"""Generation provider abstraction used by the worker."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from config import settings
from services.errors import ProviderError, ProviderUnavailable

logger = logging.getLogger(__name__)

RESULT_KEYS = ("content", "text", "result", "imageUrl", "pdfUrl", "transcription")


def normalize_result(raw: Any) -> Optional[Dict[str, Any]]:
    """Coerce provider output into a JSON object.

    Strings that look like JSON are parsed; other strings become ``{"content": ...}``.
    """
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        text = raw.strip()
        if text[:1] in ("{", "["):
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = None
            if isinstance(parsed, dict):
                return parsed
            if parsed is not None:
                return {"content": parsed}
        return {"content": raw}
    return {"content": raw}


def extract_result(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Pick the result out of a provider response or callback body."""
    found = {key: payload[key] for key in RESULT_KEYS if payload.get(key) not in (None, "")}
    if not found:
        return None
    if set(found) == {"result"}:
        return normalize_result(found["result"])
    if set(found) <= {"content", "text"}:
        return normalize_result(found.get("content", found.get("text")))
    return found


class GenerationProvider(ABC):
    """Produces content for one generation request.

    ``generate`` returns the result payload, or None when the provider accepted
    the work and will report completion through the callback webhook.
    """

    name: str

    @abstractmethod
    async def generate(
        self,
        *,
        request_id: str,
        generation_type: str,
        params: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class HttpGenerationProvider(GenerationProvider):
    """Forwards requests to an external generation service over HTTP."""

    name = "http"

    def __init__(self, base_url: str, *, timeout_seconds: float, client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds))
        return self._client

    async def generate(
        self,
        *,
        request_id: str,
        generation_type: str,
        params: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        body = {"generationRequestId": request_id, "generationType": generation_type, "params": params}
        try:
            response = await self._get_client().post(f"{self.base_url}/{generation_type}", json=body)
        except httpx.TimeoutException as exc:
            raise ProviderError("Generation provider timed out", original_error=exc) from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailable("Generation provider unreachable", original_error=exc) from exc

        if response.status_code >= 500 or response.status_code == 429:
            raise ProviderUnavailable(f"Generation provider returned {response.status_code}")
        if response.status_code >= 400:
            raise ProviderError(f"Generation provider rejected request ({response.status_code})")

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError("Generation provider returned invalid JSON", original_error=exc) from exc
        if not isinstance(payload, dict):
            raise ProviderError("Generation provider returned an unexpected payload")

        if payload.get("success") is False:
            raise ProviderError(str(payload.get("error") or "Generation failed"))
        if str(payload.get("status", "")).lower() in ("accepted", "queued", "pending"):
            logger.info("Provider accepted generation %s asynchronously", request_id)
            return None

        result = extract_result(payload)
        if result is None:
            raise ProviderError("Generation provider returned an empty result")
        return result

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def build_provider() -> GenerationProvider:
    if not settings.GENERATION_PROVIDER_URL:
        raise ProviderUnavailable("GENERATION_PROVIDER_URL is not configured")
    return HttpGenerationProvider(
        settings.GENERATION_PROVIDER_URL,
        timeout_seconds=settings.GENERATION_PROVIDER_TIMEOUT_SECONDS,
    )
