"""Briefing endpoints: list and inspect persisted analysis runs."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException

from src.api.models import BriefingDetail, BriefingSummary
from src.ingestion.storage import count_chunks, get_run, get_supabase_client, list_runs

router = APIRouter()


def _summary_fields(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": str(row["id"]),
        "title": row.get("title") or "Executive Briefing",
        "created_at": row.get("created_at"),
        "executive_summary": row.get("executive_summary"),
        "document_count": row.get("document_count") or 0,
        "series": row.get("series"),
        "phase_status": row.get("phase_status") or {},
    }


@router.get("/api/briefings", response_model=list[BriefingSummary])
async def list_briefings() -> list[BriefingSummary]:
    """List analysis runs ordered by creation date (newest first)."""
    client = get_supabase_client()
    return [BriefingSummary(**_summary_fields(row)) for row in list_runs(client)]


@router.get("/api/briefings/{run_id}", response_model=BriefingDetail)
async def get_briefing(run_id: str) -> BriefingDetail:
    """Get one run with every persisted phase result.

    A missing phase result means the phase failed or was skipped.
    """
    client = get_supabase_client()
    row = get_run(client, run_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Briefing not found")

    return BriefingDetail(
        **_summary_fields(row),
        total_words=row.get("total_words"),
        raw_response=row.get("raw_response"),
        analyst_questions_response=row.get("analyst_questions_response"),
        trend_response=row.get("trend_response"),
        chunk_count=count_chunks(client, run_id),
    )
