from __future__ import annotations

import time

import httpx

from inboxrag.core.config import EMBED_DIM, get_settings
from inboxrag.core.errors import EmbeddingError, ProviderConfigError
from inboxrag.services.resilience import RetryPolicy, retry_async
from inboxrag.services.telemetry import record_external_call


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


class HttpEmbeddingProvider:
    """Calls an OpenAI-compatible ``/embeddings`` endpoint."""

    name = "http"

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client
        if not self._settings.embedding_api_url:
            raise ProviderConfigError("EMBEDDING_API_URL is required for the http embedding provider")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        timeout_s = self._settings.embedding_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        headers = {}
        if self._settings.embedding_api_key:
            headers["Authorization"] = f"Bearer {self._settings.embedding_api_key}"
        payload = {
            "model": self._settings.embedding_model,
            "input": texts,
            "dimensions": EMBED_DIM,
        }
        client = self._get_client()
        policy = RetryPolicy(
            timeout_ms=self._settings.embedding_timeout_ms,
            max_attempts=2,
            backoff_ms=200,
        )

        async def _call() -> httpx.Response:
            response = await client.post(self._settings.embedding_api_url, json=payload, headers=headers)
            if response.status_code >= 500:
                error = EmbeddingError(f"embedding provider error: {response.status_code}")
                setattr(error, "status_code", response.status_code)
                raise error
            return response

        start = time.monotonic()
        try:
            response = await retry_async(_call, policy=policy, retryable=_retryable)
        except (httpx.HTTPError, TimeoutError) as exc:
            record_external_call(
                integration="embeddings.http",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise EmbeddingError("embedding request failed") from exc
        except EmbeddingError:
            record_external_call(
                integration="embeddings.http",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise

        if response.status_code in {401, 403}:
            raise ProviderConfigError("embedding provider rejected credentials")
        if response.status_code >= 400:
            raise EmbeddingError(f"embedding provider error: {response.status_code}")

        record_external_call(
            integration="embeddings.http",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        data = sorted(response.json().get("data", []), key=lambda item: item.get("index", 0))
        vectors = [list(map(float, item["embedding"])) for item in data]
        if len(vectors) != len(texts):
            raise EmbeddingError("embedding provider returned a different number of vectors")
        for vector in vectors:
            if len(vector) != EMBED_DIM:
                raise EmbeddingError(f"embedding dimension mismatch: {len(vector)} != {EMBED_DIM}")
        return vectors
