"""Similarity-threshold retrieval over stored document and transcript chunks."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from supabase import Client

from src.config import settings
from src.ingestion.embeddings import EmbeddingClient
from src.ingestion.models import Chunk, DocumentInput, SectionType, TranscriptChunk
from src.ingestion.storage import match_chunks

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetrievalResult:
    """A stored chunk and its cosine similarity to the query."""

    chunk: Chunk
    similarity: float


def _document_chunk(row: dict[str, Any]) -> Chunk:
    return Chunk(
        owner_key=str(row.get("briefing_id") or ""),
        source_name=row.get("document_name") or "",
        sequence_index=int(row.get("chunk_index") or 0),
        text=row.get("content") or "",
    )


def _transcript_chunk(row: dict[str, Any]) -> TranscriptChunk:
    try:
        section_type = SectionType(row.get("section_type") or SectionType.OTHER)
    except ValueError:
        section_type = SectionType.OTHER
    return TranscriptChunk(
        owner_key=str(row.get("transcript_id") or ""),
        source_name=row.get("company") or "",
        sequence_index=int(row.get("chunk_index") or 0),
        text=row.get("content") or "",
        section_type=section_type,
        speaker=row.get("speaker"),
    )


class Retriever:
    """Embed a query and fetch the most similar stored chunks above a threshold.

    Retrieval is best-effort context enrichment: any failure of the
    embedding step or the similarity backend yields an empty result.
    """

    def __init__(self, embedder: EmbeddingClient, client: Client) -> None:
        self._embedder = embedder
        self._client = client

    def search(
        self,
        query_text: str,
        top_k: int | None = None,
        similarity_threshold: float | None = None,
        scope_key: str | None = None,
    ) -> list[RetrievalResult]:
        """Search stored document chunks, optionally restricted to one owning run."""
        return self._search(
            "match_document_chunks",
            _document_chunk,
            query_text,
            settings.rag_match_count if top_k is None else top_k,
            settings.rag_similarity_threshold if similarity_threshold is None else similarity_threshold,
            scope_key,
        )

    def search_transcripts(
        self,
        query_text: str,
        top_k: int | None = None,
        similarity_threshold: float | None = None,
        scope_key: str | None = None,
    ) -> list[RetrievalResult]:
        """Search stored transcript chunks (results carry section and speaker)."""
        return self._search(
            "match_transcript_chunks",
            _transcript_chunk,
            query_text,
            settings.transcript_match_count if top_k is None else top_k,
            settings.transcript_similarity_threshold
            if similarity_threshold is None
            else similarity_threshold,
            scope_key,
        )

    def _search(
        self,
        function: str,
        to_chunk: Callable[[dict[str, Any]], Chunk],
        query_text: str,
        top_k: int,
        threshold: float,
        scope_key: str | None,
    ) -> list[RetrievalResult]:
        if top_k <= 0 or not query_text.strip():
            return []

        try:
            embedding = self._embedder.embed(query_text)
        except Exception:
            logger.warning("Query embedding unavailable; skipping retrieval", exc_info=True)
            return []

        try:
            rows = match_chunks(self._client, function, embedding, top_k, threshold, scope_key)
        except Exception:
            logger.warning("Similarity search via %s failed", function, exc_info=True)
            return []

        results = [
            RetrievalResult(chunk=to_chunk(row), similarity=float(row["similarity"]))
            for row in rows
            if row.get("similarity") is not None and float(row["similarity"]) >= threshold
        ]
        results.sort(key=lambda r: r.similarity, reverse=True)
        return results[:top_k]


def build_history_query(documents: Sequence[DocumentInput], digest_chars: int | None = None) -> str:
    """Digest of new documents used as the historical-context query."""
    limit = settings.history_digest_chars if digest_chars is None else digest_chars
    return " ".join(d.content[:limit] for d in documents)


def format_historical_context(results: Sequence[RetrievalResult]) -> str:
    """Render retrieved chunks as a prompt block; empty string when nothing was found."""
    if not results:
        return ""
    lines = [
        f"[{r.chunk.source_name}] (relevance: {r.similarity * 100:.0f}%): {r.chunk.text}"
        for r in results
    ]
    return (
        "\n\nHISTORICAL CONTEXT (from previous briefings, use to identify trends):\n"
        + "\n\n".join(lines)
    )


def format_transcript_excerpts(results: Sequence[RetrievalResult]) -> str:
    """Render transcript search results for the Q&A prompt."""
    parts: list[str] = []
    for r in results:
        chunk = r.chunk
        speaker = getattr(chunk, "speaker", None) or "Unknown"
        section = getattr(chunk, "section_type", SectionType.OTHER)
        parts.append(
            f"[Speaker: {speaker}, Section: {section}, "
            f"Relevance: {r.similarity * 100:.0f}%]\n{chunk.text}"
        )
    return "\n\n---\n\n".join(parts)
