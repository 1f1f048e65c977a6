"""Supabase storage helpers for chunks, transcripts, and analysis runs."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, cast

from postgrest import CountMethod
from supabase import Client, create_client

from src.config import settings

if TYPE_CHECKING:
    from src.analysis.models import MaterialityResult, QuestionsResult, TrendsResult
    from src.ingestion.models import Chunk, DocumentInput, TranscriptChunk

logger = logging.getLogger(__name__)

DOCUMENT_CHUNKS_TABLE = "document_chunks"
TRANSCRIPT_CHUNKS_TABLE = "transcript_chunks"
RUNS_TABLE = "briefings"
TRANSCRIPTS_TABLE = "earnings_transcripts"
COMPARISONS_TABLE = "transcript_comparisons"


def get_supabase_client() -> Client:
    """Create and return a Supabase client from the application settings."""
    return create_client(settings.supabase_url, settings.supabase_key)


def insert_batched(
    client: Client,
    table: str,
    rows: Sequence[dict[str, Any]],
    batch_size: int = 50,
) -> int:
    """Insert *rows* in batches, logging and skipping batches that fail.

    Returns:
        Number of rows in batches that were accepted by the store.
    """
    stored = 0
    for i in range(0, len(rows), batch_size):
        batch = list(rows[i : i + batch_size])
        try:
            client.table(table).insert(batch).execute()
        except Exception:
            logger.exception("Insert into %s failed for rows %d-%d", table, i, i + len(batch) - 1)
            continue
        stored += len(batch)
    return stored


# ---------------------------------------------------------------------------
# Chunks
# ---------------------------------------------------------------------------


def store_chunks(client: Client, chunks: Sequence[Chunk], batch_size: int = 50) -> int:
    """Store embedded document chunks (batched by *batch_size*)."""
    rows = [
        {
            "briefing_id": chunk.owner_key,
            "document_name": chunk.source_name,
            "chunk_index": chunk.sequence_index,
            "content": chunk.text,
            "embedding": chunk.vector,
        }
        for chunk in chunks
    ]
    return insert_batched(client, DOCUMENT_CHUNKS_TABLE, rows, batch_size)


def store_transcript_chunks(
    client: Client, chunks: Sequence[TranscriptChunk], batch_size: int = 50
) -> int:
    """Store embedded transcript chunks with their section and speaker tags."""
    rows = [
        {
            "transcript_id": chunk.owner_key,
            "content": chunk.text,
            "section_type": str(chunk.section_type),
            "speaker": chunk.speaker,
            "chunk_index": chunk.sequence_index,
            "embedding": chunk.vector,
        }
        for chunk in chunks
    ]
    return insert_batched(client, TRANSCRIPT_CHUNKS_TABLE, rows, batch_size)


def count_chunks(client: Client, owner_key: str) -> int:
    """Number of document chunks stored under *owner_key*."""
    result = (
        client.table(DOCUMENT_CHUNKS_TABLE)
        .select("id", count=CountMethod.exact)
        .eq("briefing_id", owner_key)
        .execute()
    )
    return result.count or 0


def match_chunks(
    client: Client,
    function: str,
    embedding: list[float],
    match_count: int,
    threshold: float,
    scope_key: str | None = None,
) -> list[dict[str, Any]]:
    """Nearest-neighbour (cosine) query via a pgvector RPC function.

    Each returned row carries the chunk columns plus a ``similarity`` score.
    """
    params: dict[str, Any] = {
        "query_embedding": embedding,
        "match_threshold": threshold,
        "match_count": match_count,
    }
    if function == "match_document_chunks":
        params["filter_briefing_id"] = scope_key
    elif scope_key is not None:
        params["filter_transcript_id"] = scope_key
    result = client.rpc(function, params).execute()
    # Supabase .data is typed as JSON (broad union); cast to concrete type.
    return cast(list[dict[str, Any]], result.data or [])


# ---------------------------------------------------------------------------
# Transcripts
# ---------------------------------------------------------------------------


def store_transcript(
    client: Client,
    company: str,
    fiscal_year: int,
    fiscal_quarter: int,
    raw_text: str,
    source: str | None = None,
) -> str:
    """Store an earnings-call transcript and return the generated ID."""
    result = (
        client.table(TRANSCRIPTS_TABLE)
        .insert(
            {
                "company": company,
                "fiscal_year": fiscal_year,
                "fiscal_quarter": fiscal_quarter,
                "raw_text": raw_text,
                "word_count": len(raw_text.split()),
                "source": source or "manual upload",
            }
        )
        .execute()
    )
    return str(result.data[0]["id"])


def list_transcripts(client: Client, limit: int = 100) -> list[dict[str, Any]]:
    """Transcript metadata, latest fiscal period first (raw text omitted)."""
    result = (
        client.table(TRANSCRIPTS_TABLE)
        .select("id, company, fiscal_year, fiscal_quarter, word_count, source, created_at")
        .order("fiscal_year", desc=True)
        .order("fiscal_quarter", desc=True)
        .limit(limit)
        .execute()
    )
    return cast(list[dict[str, Any]], result.data)


def get_transcript(client: Client, transcript_id: str) -> dict[str, Any] | None:
    result = client.table(TRANSCRIPTS_TABLE).select("*").eq("id", transcript_id).execute()
    rows = cast(list[dict[str, Any]], result.data)
    return rows[0] if rows else None


def get_transcript_comparison(
    client: Client, transcript_a_id: str, transcript_b_id: str
) -> dict[str, Any] | None:
    """Most recent cached comparison of exactly this (A, B) pair, if any."""
    result = (
        client.table(COMPARISONS_TABLE)
        .select("*")
        .eq("transcript_a_id", transcript_a_id)
        .eq("transcript_b_id", transcript_b_id)
        .order("created_at", desc=True)
        .limit(1)
        .execute()
    )
    rows = cast(list[dict[str, Any]], result.data)
    return rows[0] if rows else None


def store_transcript_comparison(
    client: Client, transcript_a_id: str, transcript_b_id: str, analysis: str
) -> None:
    client.table(COMPARISONS_TABLE).insert(
        {
            "transcript_a_id": transcript_a_id,
            "transcript_b_id": transcript_b_id,
            "analysis": analysis,
        }
    ).execute()


# ---------------------------------------------------------------------------
# Analysis runs
# ---------------------------------------------------------------------------


def create_run(
    client: Client,
    document_count: int,
    total_words: int,
    series: str | None = None,
    phase_status: dict[str, str] | None = None,
) -> str:
    """Insert a new analysis run row and return its ID."""
    result = (
        client.table(RUNS_TABLE)
        .insert(
            {
                "title": "Executive Briefing",
                "document_count": document_count,
                "total_words": total_words,
                "series": series,
                "phase_status": phase_status or {},
            }
        )
        .execute()
    )
    return str(result.data[0]["id"])


def update_run(client: Client, run_id: str, fields: dict[str, Any]) -> None:
    client.table(RUNS_TABLE).update(fields).eq("id", run_id).execute()


def store_materiality(client: Client, run_id: str, result: MaterialityResult) -> None:
    """Persist the materiality result on the run row."""
    update_run(
        client,
        run_id,
        {
            "title": result.briefing_title,
            "executive_summary": result.executive_summary,
            "raw_response": result.model_dump(mode="json"),
        },
    )


def store_bullets(client: Client, run_id: str, result: MaterialityResult) -> None:
    """Persist one row per ranked bullet of a materiality result."""
    if result.bullets:
        client.table("bullets").insert(
            [
                {
                    "briefing_id": run_id,
                    "rank": b.rank,
                    "materiality_score": b.materiality_score,
                    "category": b.category,
                    "finding": b.finding,
                    "source_document": b.source_document,
                    "so_what": b.so_what,
                    "action_needed": b.action_needed,
                }
                for b in result.bullets
            ]
        ).execute()


def store_documents(client: Client, run_id: str, documents: Sequence[DocumentInput]) -> None:
    """Persist metadata of the documents analysed in a run."""
    client.table("documents").insert(
        [
            {
                "briefing_id": run_id,
                "file_name": d.name,
                "file_type": d.type or "unknown",
                "file_size": d.size or 0,
                "word_count": d.word_count,
                "page_count": d.page_count,
            }
            for d in documents
        ]
    ).execute()


def store_questions(client: Client, run_id: str, result: QuestionsResult) -> None:
    if result.predicted_questions:
        client.table("analyst_questions").insert(
            [
                {
                    "briefing_id": run_id,
                    "rank": q.rank,
                    "question": q.question,
                    "triggered_by": q.triggered_by,
                    "suggested_response": q.suggested_response,
                    "difficulty": q.difficulty,
                    "likely_asker_type": q.likely_asker_type,
                }
                for q in result.predicted_questions
            ]
        ).execute()
    update_run(client, run_id, {"analyst_questions_response": result.model_dump(mode="json")})


def store_trends(client: Client, run_id: str, previous_run_id: str, result: TrendsResult) -> None:
    trends = result.trend_analysis
    client.table("trend_comparisons").insert(
        {
            "current_briefing_id": run_id,
            "previous_briefing_id": previous_run_id,
            "improved": [t.model_dump(mode="json") for t in trends.improved],
            "deteriorated": [t.model_dump(mode="json") for t in trends.deteriorated],
            "new_items": [t.model_dump(mode="json") for t in trends.new_items],
            "resolved": [t.model_dump(mode="json") for t in trends.resolved],
            "overall_trajectory": result.overall_trajectory,
        }
    ).execute()
    update_run(client, run_id, {"trend_response": result.model_dump(mode="json")})


def get_run(client: Client, run_id: str) -> dict[str, Any] | None:
    result = client.table(RUNS_TABLE).select("*").eq("id", run_id).execute()
    rows = cast(list[dict[str, Any]], result.data)
    return rows[0] if rows else None


def list_runs(client: Client, limit: int = 50) -> list[dict[str, Any]]:
    """Runs ordered by creation date (newest first)."""
    result = (
        client.table(RUNS_TABLE)
        .select("id, created_at, title, executive_summary, document_count, series, phase_status")
        .order("created_at", desc=True)
        .limit(limit)
        .execute()
    )
    return cast(list[dict[str, Any]], result.data)


def get_previous_run(
    client: Client, run_id: str, series: str | None = None
) -> dict[str, Any] | None:
    """Most recent run other than *run_id* that has a materiality result.

    Scoped to *series* when given.  Subject to ordinary read-after-write
    visibility: two runs of one series finishing together may both miss
    each other.
    """
    query = (
        client.table(RUNS_TABLE)
        .select("id, raw_response, created_at")
        .neq("id", run_id)
        .not_.is_("raw_response", "null")
    )
    if series:
        query = query.eq("series", series)
    result = query.order("created_at", desc=True).limit(1).execute()
    rows = cast(list[dict[str, Any]], result.data)
    return rows[0] if rows else None
