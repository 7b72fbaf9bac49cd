from __future__ import annotations

import time
from typing import Any

import httpx

from inboxrag.core.config import get_settings
from inboxrag.core.errors import GenerationError, ProviderConfigError
from inboxrag.providers.generation.base import GenerationRequest, GenerationResult
from inboxrag.services.knowledge.chunking import estimate_tokens
from inboxrag.services.telemetry import record_external_call


_SYSTEM_PROMPT = (
    "You answer customer messages for a business. "
    "Use the provided knowledge when it is relevant and say so when you do not know."
)


def build_messages(request: GenerationRequest) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = [{"role": "system", "content": _SYSTEM_PROMPT}]
    if request.context:
        messages.append({"role": "system", "content": request.context})
    for turn in request.history:
        messages.append({"role": "user", "content": turn.inbound_text})
        messages.append({"role": "assistant", "content": turn.reply_text})
    messages.append({"role": "user", "content": request.text})
    return messages


class HttpGenerationProvider:
    """Calls an OpenAI-compatible ``/chat/completions`` endpoint."""

    name = "http"

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client
        if not self._settings.generation_api_url:
            raise ProviderConfigError("GENERATION_API_URL is required for the http generation provider")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        timeout_s = self._settings.generation_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        headers = {}
        if self._settings.generation_api_key:
            headers["Authorization"] = f"Bearer {self._settings.generation_api_key}"
        payload = {
            "model": self._settings.generation_model,
            "messages": build_messages(request),
        }
        start = time.monotonic()
        try:
            response = await self._get_client().post(
                self._settings.generation_api_url, json=payload, headers=headers
            )
        except httpx.HTTPError as exc:
            record_external_call(
                integration="generation.http",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise GenerationError("generation request failed") from exc

        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code in {401, 403}:
            record_external_call(integration="generation.http", latency_ms=latency_ms, success=False)
            raise ProviderConfigError("generation provider rejected credentials")
        if response.status_code >= 400:
            record_external_call(integration="generation.http", latency_ms=latency_ms, success=False)
            raise GenerationError(f"generation provider error: {response.status_code}")

        record_external_call(integration="generation.http", latency_ms=latency_ms, success=True)
        body = response.json()
        try:
            text = body["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise GenerationError("generation response missing content") from exc
        usage = body.get("usage") or {}
        return GenerationResult(
            text=text,
            tokens_in=int(usage.get("prompt_tokens") or estimate_tokens(request.context + request.text)),
            tokens_out=int(usage.get("completion_tokens") or estimate_tokens(text)),
        )
