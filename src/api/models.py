"""Pydantic request/response schemas for the Earnings Intelligence API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from src.ingestion.models import DocumentInput


class DocumentPayload(BaseModel):
    """An already-parsed document as sent by the upload client."""

    name: str
    content: str
    type: str | None = None
    size: int | None = None
    page_count: int | None = Field(default=None, alias="pageCount")

    model_config = {"populate_by_name": True}

    def to_input(self) -> DocumentInput:
        return DocumentInput(
            name=self.name,
            content=self.content,
            type=self.type,
            size=self.size,
            page_count=self.page_count,
        )


class AnalyzeRequest(BaseModel):
    """Request body for the /api/analyze streaming endpoint."""

    documents: list[DocumentPayload] = []
    series: str | None = None
    previous_run_id: str | None = None


class TranscriptIngestRequest(BaseModel):
    """Request body for the /api/transcripts endpoint."""

    company: str
    raw_text: str
    fiscal_year: int | None = None
    fiscal_quarter: int = 1
    source: str | None = None


class AnalystQuestion(BaseModel):
    speaker: str
    question: str


class TranscriptIngestResponse(BaseModel):
    transcript_id: str
    num_chunks: int
    speakers: list[str] = []
    questions: list[AnalystQuestion] = []


class TranscriptSummary(BaseModel):
    """Transcript metadata for list views."""

    id: str
    company: str
    fiscal_year: int | None = None
    fiscal_quarter: int | None = None
    word_count: int | None = None
    source: str | None = None
    created_at: str | None = None


class TranscriptCompareRequest(BaseModel):
    """Request body for the /api/transcripts/compare endpoint."""

    transcript_a_id: str
    transcript_b_id: str


class TranscriptCompareResponse(BaseModel):
    transcript_a_id: str
    transcript_b_id: str
    title: str
    analysis: str
    cached: bool = False


class TranscriptSearchRequest(BaseModel):
    """Request body for the /api/transcripts/search endpoint."""

    query: str
    transcript_id: str | None = None
    top_k: int | None = None
    threshold: float | None = None


class Citation(BaseModel):
    content: str
    source: str
    similarity: float


class TranscriptSearchResponse(BaseModel):
    answer: str
    citations: list[Citation] = []


class BriefingSummary(BaseModel):
    """Summary representation of an analysis run for list views."""

    id: str
    title: str
    created_at: str | None = None
    executive_summary: str | None = None
    document_count: int = 0
    series: str | None = None
    phase_status: dict[str, str] = {}


class BriefingDetail(BriefingSummary):
    """Full analysis run including every persisted phase result."""

    total_words: int | None = None
    raw_response: dict[str, Any] | None = None
    analyst_questions_response: dict[str, Any] | None = None
    trend_response: dict[str, Any] | None = None
    chunk_count: int = 0
