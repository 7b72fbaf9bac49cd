from __future__ import annotations

from inboxrag.providers.generation.base import GenerationRequest, GenerationResult
from inboxrag.services.knowledge.chunking import estimate_tokens


class FakeGenerationProvider:
    name = "fake"

    def __init__(self, response: str = "This is a fake response.") -> None:
        # Deterministic response keeps tests stable without external calls.
        self._response = response
        self.requests: list[GenerationRequest] = []

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        prompt_tokens = estimate_tokens(request.context) + estimate_tokens(request.text)
        return GenerationResult(
            text=self._response,
            tokens_in=prompt_tokens,
            tokens_out=estimate_tokens(self._response),
        )
