"""Embedding helpers using OpenAI text-embedding-3-small."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Sequence

from openai import OpenAI, OpenAIError

from src.config import settings
from src.ingestion.models import Chunk

logger = logging.getLogger(__name__)


class EmbeddingError(RuntimeError):
    """A batch request to the embedding service failed."""

    def __init__(self, message: str, batch_start: int) -> None:
        super().__init__(message)
        self.batch_start = batch_start


class EmbeddingClient:
    """Batched, order-preserving wrapper around the OpenAI embeddings API.

    Constructed by the caller and passed to whatever needs embeddings; there
    is no module-level client.  Each text is truncated to *max_chars* before
    it is sent, which keeps requests under the model's token limit.
    Vectors are requested at *dimensions* so they match the vector column.
    Failed batches raise :class:`EmbeddingError`; retrying is up to the caller.
    """

    def __init__(
        self,
        client: OpenAI | None = None,
        model: str | None = None,
        batch_size: int | None = None,
        max_chars: int | None = None,
        dimensions: int | None = None,
    ) -> None:
        self._client = client or OpenAI(api_key=settings.openai_api_key)
        self.model = model or settings.embedding_model
        self.batch_size = batch_size or settings.embedding_batch_size
        self.max_chars = max_chars or settings.embedding_max_chars
        self.dimensions = dimensions or settings.embedding_dimensions

    def embed(self, text: str) -> list[float]:
        """Embed a single string."""
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed *texts*, returning one vector per input in input order.

        Args:
            texts: Strings to embed.

        Returns:
            A list of embedding vectors, ``len(result) == len(texts)``.

        Raises:
            EmbeddingError: If any batch request fails.
        """
        vectors: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = [t[: self.max_chars] for t in texts[start : start + self.batch_size]]
            try:
                response = self._client.embeddings.create(
                    input=batch, model=self.model, dimensions=self.dimensions
                )
            except OpenAIError as exc:
                raise EmbeddingError(
                    f"Embedding batch at offset {start} failed: {exc}", batch_start=start
                ) from exc

            # The API tags each item with its position in the request; order is not guaranteed.
            items = sorted(response.data, key=lambda item: item.index)
            if len(items) != len(batch):
                raise EmbeddingError(
                    f"Expected {len(batch)} embeddings at offset {start}, got {len(items)}",
                    batch_start=start,
                )
            vectors.extend(item.embedding for item in items)

        logger.debug("Embedded %d texts (batch size %d)", len(texts), self.batch_size)
        return vectors

    def embed_chunks(self, chunks: Sequence[Chunk]) -> list[Chunk]:
        """Return copies of *chunks* with their ``vector`` attached."""
        vectors = self.embed_batch([c.text for c in chunks])
        return [
            dataclasses.replace(chunk, vector=vector)
            for chunk, vector in zip(chunks, vectors, strict=True)
        ]
