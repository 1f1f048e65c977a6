"""Ingestion pipelines: chunk -> embed -> store, for reports and transcripts."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from supabase import Client

from src.ingestion.chunking import chunk_documents, chunk_transcript
from src.ingestion.embeddings import EmbeddingClient
from src.ingestion.models import Chunk, DocumentInput, TranscriptQuestion
from src.ingestion.parsers import extract_questions, extract_speakers
from src.ingestion.storage import store_chunks, store_transcript, store_transcript_chunks
from src.pipeline_config import ChunkingStrategy, PipelineConfig

logger = logging.getLogger(__name__)


@dataclass
class TranscriptIngestResult:
    """Outcome of ingesting one earnings-call transcript."""

    transcript_id: str
    num_chunks: int = 0
    speakers: list[str] = field(default_factory=list)
    questions: list[TranscriptQuestion] = field(default_factory=list)


def _chunk(
    owner_key: str, documents: Sequence[DocumentInput], config: PipelineConfig
) -> list[Chunk]:
    """Chunk *documents* with the strategy selected in *config*."""
    if config.chunking_strategy == ChunkingStrategy.TRANSCRIPT:
        chunks: list[Chunk] = []
        for doc in documents:
            chunks.extend(
                chunk_transcript(owner_key, doc.name, doc.content, config.chunk_size, config.overlap)
            )
        return chunks
    return chunk_documents(owner_key, documents, config.chunk_size, config.overlap)


def index_documents(
    owner_key: str,
    documents: Sequence[DocumentInput],
    *,
    embedder: EmbeddingClient,
    client: Client,
    config: PipelineConfig | None = None,
) -> int:
    """Chunk, embed, and store *documents* under *owner_key* for future retrieval.

    Every call appends rows; re-indexing the same documents is not deduplicated.
    Storage batches that fail are logged and skipped, since the index only
    enriches later runs.

    Args:
        owner_key: Record the chunks are associated with (the analysis run id).
        documents: Parsed documents to index.
        embedder: Embedding client used for all chunks.
        client: Supabase client.
        config: Chunk size, overlap and storage batch size.

    Returns:
        Number of chunks attempted (not necessarily all persisted).

    Raises:
        EmbeddingError: If the embedding service fails; nothing is stored then.
    """
    config = config or PipelineConfig()
    chunks = _chunk(owner_key, documents, config)
    if not chunks:
        return 0

    embedded = embedder.embed_chunks(chunks)
    stored = store_chunks(client, embedded, batch_size=config.storage_batch_size)
    if stored < len(chunks):
        logger.warning("Indexed %d/%d chunks for %s", stored, len(chunks), owner_key)
    else:
        logger.info("Indexed %d chunks for %s", stored, owner_key)
    return len(chunks)


def ingest_transcript(
    company: str,
    fiscal_year: int,
    fiscal_quarter: int,
    raw_text: str,
    source: str | None = None,
    *,
    embedder: EmbeddingClient,
    client: Client,
    config: PipelineConfig | None = None,
) -> TranscriptIngestResult:
    """Store a transcript, then chunk it with speaker/section awareness and index it.

    The transcript row is kept even if chunking or embedding fails; the
    failure is logged and ``num_chunks`` is reported as 0.
    """
    config = config or PipelineConfig()
    transcript_id = store_transcript(client, company, fiscal_year, fiscal_quarter, raw_text, source)
    result = TranscriptIngestResult(
        transcript_id=transcript_id,
        speakers=extract_speakers(raw_text),
        questions=extract_questions(raw_text),
    )

    try:
        chunks = chunk_transcript(
            transcript_id, company, raw_text, config.chunk_size, config.overlap
        )
        if chunks:
            embedded = embedder.embed_chunks(chunks)
            store_transcript_chunks(client, embedded, batch_size=config.storage_batch_size)
            result.num_chunks = len(chunks)
    except Exception:
        logger.exception("Transcript chunking/embedding failed for %s", transcript_id)

    return result
