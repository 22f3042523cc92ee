# =============================================================================
# Embedding Service — Batch Vector Generation (Provider-Agnostic)
# =============================================================================
#
# Generates query embeddings for hybrid retrieval using any OpenAI-compatible
# embedding API (OpenAI, Alibaba Cloud DashScope, ...).
#
# DESIGN DECISION: Sync SDK call run in a worker thread.
# embed_batch() is a plain function over the sync OpenAI client;
# embed_texts() hands it to asyncio.to_thread() so the search loop can
# await it (and time it out) without blocking the event loop.
#
# DESIGN DECISION: One call per iteration. All query variants of an
# iteration (at most 6) are embedded in a single batch and count as a
# single tool call against the loop budget.
#
# TOKEN LIMITS:
# - Each text: max 8,191 tokens (queries are far shorter)
# - Sub-batches of settings.embedding_batch_size texts per API call
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from openai import OpenAI

from app.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Embedding Client — Lazy Singleton
# ---------------------------------------------------------------------------
# API key resolution order:
#   1. OPENAI_API_KEY (explicit embedding key)
#   2. LLM_API_KEY (shared key, e.g. one DashScope key for LLM + embeddings)
# ---------------------------------------------------------------------------

_client: OpenAI | None = None


def _get_client() -> OpenAI:
    """Lazily initialize and cache the embedding client."""
    global _client
    if _client is None:
        resolved_key = settings.openai_api_key or settings.llm_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for embeddings. "
                "Set OPENAI_API_KEY or LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        if settings.embedding_base_url:
            client_kwargs["base_url"] = settings.embedding_base_url

        _client = OpenAI(**client_kwargs)

        logger.info(
            "Initialized embedding client (model=%s, base_url=%s)",
            settings.embedding_model,
            settings.embedding_base_url or "https://api.openai.com/v1",
        )
    return _client


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def embed_batch(
    texts: Sequence[str],
    batch_size: int | None = None,
) -> list[list[float]]:
    """
    Generate embeddings for a batch of texts.

    Returns embeddings in the SAME ORDER as the input texts.

    Raises:
        ValueError: If no API key is configured.
        openai.APIError: If the API call fails.
    """
    if not texts:
        return []

    client = _get_client()
    _batch_size = batch_size or settings.embedding_batch_size

    all_embeddings: list[list[float]] = [[] for _ in texts]

    for i in range(0, len(texts), _batch_size):
        batch = list(texts[i : i + _batch_size])

        create_kwargs: dict = {
            "model": settings.embedding_model,
            "input": batch,
        }
        if settings.embedding_dimensions:
            create_kwargs["dimensions"] = settings.embedding_dimensions

        response = client.embeddings.create(**create_kwargs)

        # Place by response index; the API's ordering is not relied upon.
        for item in response.data:
            all_embeddings[i + item.index] = item.embedding

    logger.info(
        "Generated %d query embeddings (model=%s)",
        len(texts), settings.embedding_model,
    )
    return all_embeddings


async def embed_texts(texts: Sequence[str]) -> list[list[float]]:
    """Async wrapper used by the search loop."""
    return await asyncio.to_thread(embed_batch, list(texts))
