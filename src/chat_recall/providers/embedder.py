"""Embedding capability and its OpenAI-compatible adapter."""

from typing import Protocol

import numpy as np
import openai

from chat_recall.config import EmbeddingConfig
from chat_recall.errors import FatalConfigurationError, classify_provider_error
from chat_recall.logging import get_logger

logger = get_logger("embedder")


class Embedder(Protocol):
    """Turns texts into fixed-length vectors, one per input, in input order."""

    async def embed(self, texts: list[str]) -> list[list[float]]: ...


def l2_normalize(vectors: list[list[float]]) -> list[list[float]]:
    """Scale each vector to unit length so dot product equals cosine similarity."""
    if not vectors:
        return []
    matrix = np.asarray(vectors, dtype=np.float32)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return (matrix / norms).tolist()


class OpenAIEmbedder:
    """Embeds texts through an OpenAI-compatible embeddings endpoint.

    Inputs are sent in sub-batches of ``batch_size``; vendor errors are
    mapped onto the chat-recall taxonomy so callers can tell a rate limit
    from a hard failure.
    """

    def __init__(self, config: EmbeddingConfig, client: openai.AsyncOpenAI | None = None) -> None:
        if client is None and not config.api_key:
            raise FatalConfigurationError("embedding.api_key is not set")
        self._config = config
        self._client = client or openai.AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            max_retries=0,
        )

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        vectors: list[list[float]] = []
        batch_size = max(1, self._config.batch_size)
        for start in range(0, len(texts), batch_size):
            chunk = texts[start:start + batch_size]
            try:
                response = await self._client.embeddings.create(model=self._config.model, input=chunk)
            except Exception as e:
                classified = classify_provider_error(e)
                if classified is e:
                    raise
                raise classified from e

            # The API does not promise response order; index does
            ordered = sorted(response.data, key=lambda item: item.index)
            if len(ordered) != len(chunk):
                raise RuntimeError(
                    f"Embedding count mismatch: expected={len(chunk)} got={len(ordered)}"
                )
            vectors.extend(l2_normalize([item.embedding for item in ordered]))

        logger.debug("Embedded texts: count=%d model=%s", len(texts), self._config.model)
        return vectors
