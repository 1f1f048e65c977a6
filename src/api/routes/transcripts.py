"""Transcript endpoints: ingest, list, and compare earnings-call transcripts, and answer questions over them."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from anthropic import APIStatusError
from fastapi import APIRouter, HTTPException

from src.analysis.prompts import quarter_label
from src.api.dependencies import build_retriever, get_embedder, get_generator
from src.api.models import (
    AnalystQuestion,
    Citation,
    TranscriptCompareRequest,
    TranscriptCompareResponse,
    TranscriptIngestRequest,
    TranscriptIngestResponse,
    TranscriptSearchRequest,
    TranscriptSearchResponse,
    TranscriptSummary,
)
from src.ingestion.pipeline import ingest_transcript
from src.ingestion.storage import (
    get_supabase_client,
    get_transcript,
    get_transcript_comparison,
    list_transcripts,
    store_transcript_comparison,
)
from src.retrieval.generation import answer_from_transcripts, compare_transcripts

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/api/transcripts", response_model=list[TranscriptSummary])
async def get_transcripts() -> list[TranscriptSummary]:
    """List stored transcripts, latest fiscal year and quarter first."""
    rows = await asyncio.to_thread(list_transcripts, get_supabase_client())
    return [
        TranscriptSummary(
            id=str(row["id"]),
            company=row.get("company") or "",
            fiscal_year=row.get("fiscal_year"),
            fiscal_quarter=row.get("fiscal_quarter"),
            word_count=row.get("word_count"),
            source=row.get("source"),
            created_at=row.get("created_at"),
        )
        for row in rows
    ]


@router.post("/api/transcripts", response_model=TranscriptIngestResponse)
async def create_transcript(request: TranscriptIngestRequest) -> TranscriptIngestResponse:
    """Store a transcript and index it with speaker/section-aware chunking."""
    if not request.raw_text.strip() or not request.company.strip():
        raise HTTPException(status_code=400, detail="Missing required fields")

    result = await asyncio.to_thread(
        ingest_transcript,
        request.company,
        request.fiscal_year or datetime.now().year,
        request.fiscal_quarter,
        request.raw_text,
        request.source,
        embedder=get_embedder(),
        client=get_supabase_client(),
    )
    return TranscriptIngestResponse(
        transcript_id=result.transcript_id,
        num_chunks=result.num_chunks,
        speakers=result.speakers,
        questions=[AnalystQuestion(speaker=q.speaker, question=q.question) for q in result.questions],
    )


@router.post("/api/transcripts/compare", response_model=TranscriptCompareResponse)
async def compare(request: TranscriptCompareRequest) -> TranscriptCompareResponse:
    """Compare two quarters' calls, reusing a cached analysis of the same pair."""
    if request.transcript_a_id == request.transcript_b_id:
        raise HTTPException(status_code=400, detail="Two different transcript IDs required")

    client = get_supabase_client()
    transcript_a, transcript_b = await asyncio.gather(
        asyncio.to_thread(get_transcript, client, request.transcript_a_id),
        asyncio.to_thread(get_transcript, client, request.transcript_b_id),
    )
    if transcript_a is None or transcript_b is None:
        raise HTTPException(status_code=404, detail="One or both transcripts not found")

    title = f"{quarter_label(transcript_a)} vs {quarter_label(transcript_b)}"
    cached = await asyncio.to_thread(
        get_transcript_comparison, client, request.transcript_a_id, request.transcript_b_id
    )
    if cached is not None:
        return TranscriptCompareResponse(
            transcript_a_id=request.transcript_a_id,
            transcript_b_id=request.transcript_b_id,
            title=title,
            analysis=cached["analysis"],
            cached=True,
        )

    try:
        analysis = await asyncio.to_thread(
            compare_transcripts, get_generator(), transcript_a, transcript_b
        )
    except APIStatusError as exc:
        raise HTTPException(status_code=503, detail=f"LLM unavailable: {exc.message}") from exc

    try:
        await asyncio.to_thread(
            store_transcript_comparison,
            client,
            request.transcript_a_id,
            request.transcript_b_id,
            analysis,
        )
    except Exception:
        logger.exception("Caching comparison %s failed", title)

    return TranscriptCompareResponse(
        transcript_a_id=request.transcript_a_id,
        transcript_b_id=request.transcript_b_id,
        title=title,
        analysis=analysis,
    )


@router.post("/api/transcripts/search", response_model=TranscriptSearchResponse)
async def search_transcripts(request: TranscriptSearchRequest) -> TranscriptSearchResponse:
    """Retrieve relevant transcript excerpts and answer the question with citations."""
    retriever = build_retriever()
    results = await asyncio.to_thread(
        retriever.search_transcripts,
        request.query,
        request.top_k,
        request.threshold,
        request.transcript_id,
    )
    if not results:
        return TranscriptSearchResponse(
            answer="No relevant transcript excerpts found for your query.",
            citations=[],
        )

    try:
        answer = await asyncio.to_thread(
            answer_from_transcripts, get_generator(), request.query, results
        )
    except APIStatusError as exc:
        # Upstream overload (529) or other API error: answer with 503, not a bare 500.
        raise HTTPException(status_code=503, detail=f"LLM unavailable: {exc.message}") from exc

    return TranscriptSearchResponse(
        answer=answer["answer"],
        citations=[Citation(**c) for c in answer["citations"]],
    )
