from __future__ import annotations

import math

import pytest

from inboxrag.core.config import EMBED_DIM
from inboxrag.providers.embeddings.hashing import HashEmbeddingProvider, embed_text


def test_embed_text_is_deterministic_and_normalized() -> None:
    first = embed_text("Opening hours are 9am to 6pm")
    second = embed_text("opening HOURS are 9am to 6pm")

    assert len(first) == EMBED_DIM
    assert first == second
    assert math.isclose(math.sqrt(sum(v * v for v in first)), 1.0, rel_tol=1e-9)


def test_empty_text_is_zero_vector() -> None:
    assert embed_text("  ...  ") == [0.0] * EMBED_DIM


@pytest.mark.asyncio
async def test_provider_embeds_in_order() -> None:
    provider = HashEmbeddingProvider()

    vectors = await provider.embed(["alpha", "beta"])

    assert vectors == [embed_text("alpha"), embed_text("beta")]
