"""Analyze endpoint: stream the multi-phase briefing analysis as Server-Sent Events."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse

from src.analysis.orchestrator import EventSink, start_analysis
from src.api.dependencies import build_orchestrator
from src.api.models import AnalyzeRequest

logger = logging.getLogger(__name__)

router = APIRouter()


async def _sse_stream(sink: EventSink) -> AsyncIterator[str]:
    """Relay sink events as SSE frames.

    When the client disconnects the generator is closed; the sink is then
    detached so the run keeps going (and persisting) without a listener.
    """
    try:
        async for event in sink.events():
            yield event.to_sse()
    finally:
        sink.detach()


@router.post("/api/analyze")
async def analyze(request: AnalyzeRequest) -> StreamingResponse:
    """Run materiality, analyst-question, and trend analysis over uploaded documents.

    The response is ``text/event-stream``: ``phase`` progress events, one
    result event per completed phase (``briefing``, ``questions``,
    ``trends``), and finally either ``done`` or ``error``.
    """
    try:
        orchestrator = build_orchestrator()
    except Exception as exc:
        # Missing Supabase/API configuration is not the client's fault.
        logger.exception("Could not build analysis pipeline")
        raise HTTPException(
            status_code=503, detail=f"Analysis backend unavailable: {exc}"
        ) from exc

    sink, _ = start_analysis(
        orchestrator,
        [d.to_input() for d in request.documents],
        series=request.series,
        previous_run_id=request.previous_run_id,
    )
    return StreamingResponse(
        _sse_stream(sink),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
