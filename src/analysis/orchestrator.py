"""Streaming orchestrator for the multi-phase, retrieval-augmented analysis.

Phases run strictly in order because each prompt depends on an earlier
phase's structured result:

    materiality_analysis -> analyst_questions -> trend_comparison -> background_indexing

Only the first phase is fatal.  Every other failure is caught at the phase
boundary, logged, turned into a progress event, and the pipeline moves on,
so the stream always ends with exactly one ``done`` or one ``error`` event.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from supabase import Client

from src.analysis.models import (
    RESULT_EVENT_NAMES,
    AnalysisRun,
    EventType,
    MaterialityResult,
    PhaseEvent,
    PhaseFailure,
    PhaseName,
    PhaseOutcome,
    PhaseSuccess,
    QuestionsResult,
    TrendsResult,
    progress,
)
from src.analysis.prompts import (
    ANALYST_QUESTIONS_PROMPT,
    MATERIALITY_PROMPT,
    TREND_COMPARISON_PROMPT,
    materiality_message,
    questions_message,
    system_prompt,
    trends_message,
)
from src.config import settings
from src.ingestion.embeddings import EmbeddingClient
from src.ingestion.models import DocumentInput
from src.ingestion.pipeline import index_documents
from src.ingestion.storage import (
    create_run,
    get_previous_run,
    get_run,
    store_bullets,
    store_documents,
    store_materiality,
    store_questions,
    store_trends,
    update_run,
)
from src.pipeline_config import PipelineConfig
from src.retrieval.generation import GenerationClient
from src.retrieval.search import Retriever, build_history_query, format_historical_context

logger = logging.getLogger(__name__)

# Whether a failure of the phase aborts the whole run
FATAL_PHASES: dict[PhaseName, bool] = {
    PhaseName.MATERIALITY: True,
    PhaseName.QUESTIONS: False,
    PhaseName.TRENDS: False,
    PhaseName.INDEXING: False,
}

PHASE_LABELS: dict[PhaseName, str] = {
    PhaseName.MATERIALITY: "Materiality analysis",
    PhaseName.QUESTIONS: "Analyst questions",
    PhaseName.TRENDS: "Trend comparison",
    PhaseName.INDEXING: "Document indexing",
}


class EventSink:
    """Append-only event stream between the orchestrator and a consumer.

    Once a terminal (``done``/``error``) event is accepted, later events are
    dropped.  After :meth:`detach` (the consumer went away) sending is a
    no-op, but the producer keeps running.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[PhaseEvent | None] = asyncio.Queue()
        self._detached = False
        self._terminated = False
        self._closed = False

    @property
    def terminated(self) -> bool:
        return self._terminated

    async def send(self, event: PhaseEvent) -> None:
        if self._terminated:
            logger.debug("Dropping %s event after terminal event", event.name)
            return
        self._terminated = event.is_terminal
        if self._detached:
            return
        self._queue.put_nowait(event)

    def detach(self) -> None:
        self._detached = True

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def events(self) -> AsyncIterator[PhaseEvent]:
        """Yield events until the producer closes the sink."""
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    def drain(self) -> list[PhaseEvent]:
        """Return all queued events without waiting."""
        events: list[PhaseEvent] = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is not None:
                events.append(event)
        return events


@dataclass
class _RunContext:
    documents: Sequence[DocumentInput]
    run: AnalysisRun
    sink: EventSink
    previous_run_id: str | None = None


class AnalysisOrchestrator:
    """Drive one analysis run end to end and emit its events on a sink.

    All collaborators are injected.  Blocking SDK calls run in worker
    threads, so concurrent runs only share the persistence store.
    """

    def __init__(
        self,
        generator: GenerationClient,
        retriever: Retriever,
        embedder: EmbeddingClient,
        client: Client,
        config: PipelineConfig | None = None,
        company: str | None = None,
    ) -> None:
        self._generator = generator
        self._retriever = retriever
        self._embedder = embedder
        self._client = client
        self._config = config or PipelineConfig()
        self._company = company

        self._handlers: dict[PhaseName, Callable[[_RunContext], Awaitable[PhaseOutcome]]] = {
            PhaseName.MATERIALITY: self._materiality,
            PhaseName.QUESTIONS: self._questions,
            PhaseName.TRENDS: self._trends,
            PhaseName.INDEXING: self._indexing,
        }

    async def run(
        self,
        documents: Sequence[DocumentInput],
        sink: EventSink,
        *,
        series: str | None = None,
        previous_run_id: str | None = None,
    ) -> AnalysisRun:
        """Run every phase for *documents*, emitting events on *sink*.

        The sink is always closed on return.

        Args:
            documents: Parsed documents to analyse.
            sink: Destination for progress, result, and terminal events.
            series: Partition key for the prior-run lookup (e.g. a ticker).
            previous_run_id: Pin the run used for trend comparison.

        Returns:
            The in-memory run with per-phase results and statuses.
        """
        run = AnalysisRun(
            series=series,
            document_count=len(documents),
            total_words=sum(d.word_count for d in documents),
        )
        try:
            await self._drive(_RunContext(documents, run, sink, previous_run_id))
        except Exception as exc:
            logger.exception("Analysis run %s failed", run.id)
            run.aborted = True
            await sink.send(PhaseEvent(EventType.ERROR, {"message": str(exc) or "Analysis failed"}))
        finally:
            sink.close()
        return run

    async def _drive(self, ctx: _RunContext) -> None:
        run, sink = ctx.run, ctx.sink

        if not ctx.documents:
            run.aborted = True
            await sink.send(PhaseEvent(EventType.ERROR, {"message": "No documents provided"}))
            return

        await self._create_run(run)

        for phase in PhaseName:
            outcome = await self._execute(phase, ctx)

            if isinstance(outcome, PhaseSuccess):
                run.record(phase, outcome.value)
                await self._save_status(run)
                if phase in RESULT_EVENT_NAMES:
                    payload: dict[str, Any] = {
                        "data": outcome.value.model_dump(mode="json"),
                        "run_id": run.id,
                        **outcome.extra,
                    }
                    await sink.send(PhaseEvent(EventType.RESULT, payload, phase))
                continue

            run.fail(phase, skipped=outcome.skipped)
            await self._save_status(run)
            label = PHASE_LABELS[phase]
            if FATAL_PHASES[phase]:
                run.aborted = True
                await sink.send(
                    PhaseEvent(EventType.ERROR, {"message": f"{label} failed: {outcome.message}"}, phase)
                )
                return
            if outcome.skipped:
                logger.info("%s skipped: %s", label, outcome.message)
            else:
                await sink.send(progress(f"{label} unavailable, continuing...", phase))

        await sink.send(
            PhaseEvent(
                EventType.DONE,
                {
                    "metadata": {
                        "documents_analyzed": run.document_count,
                        "total_words": run.total_words,
                        "analyzed_at": datetime.now(UTC).isoformat(),
                        "run_id": run.id,
                        "phase_status": run.status_json(),
                    }
                },
            )
        )

    async def _execute(self, phase: PhaseName, ctx: _RunContext) -> PhaseOutcome:
        try:
            return await self._handlers[phase](ctx)
        except Exception as exc:
            logger.exception("%s failed for run %s", PHASE_LABELS[phase], ctx.run.id)
            return PhaseFailure(str(exc) or type(exc).__name__)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _materiality(self, ctx: _RunContext) -> PhaseOutcome:
        phase = PhaseName.MATERIALITY
        await ctx.sink.send(progress("Running materiality analysis across all documents...", phase))
        history = await self._historical_context(ctx)

        await ctx.sink.send(progress("Invoking model for materiality analysis...", phase))
        result = await asyncio.to_thread(
            self._generator.generate_structured,
            system_prompt(MATERIALITY_PROMPT, self._company),
            materiality_message(ctx.documents, history),
            MaterialityResult,
        )

        if ctx.run.id:
            await self._persist("materiality result", store_materiality, self._client, ctx.run.id, result)
            await self._persist("materiality bullets", store_bullets, self._client, ctx.run.id, result)
            await self._persist("document metadata", store_documents, self._client, ctx.run.id, ctx.documents)
        return PhaseSuccess(result)

    async def _historical_context(self, ctx: _RunContext) -> str:
        """Best-effort retrieval of similar chunks from earlier runs."""
        await ctx.sink.send(progress("Searching previous briefings for context...", PhaseName.MATERIALITY))
        try:
            results = await asyncio.to_thread(
                self._retriever.search,
                build_history_query(ctx.documents),
                settings.rag_match_count,
                settings.rag_similarity_threshold,
            )
        except Exception:
            logger.warning("Historical context unavailable, continuing without", exc_info=True)
            return ""
        if not results:
            logger.debug("No historical chunks above threshold")
            return ""
        await ctx.sink.send(
            progress(f"Found {len(results)} relevant historical chunks...", PhaseName.MATERIALITY)
        )
        return format_historical_context(results)

    async def _questions(self, ctx: _RunContext) -> PhaseOutcome:
        phase = PhaseName.QUESTIONS
        materiality = ctx.run.phase_results[PhaseName.MATERIALITY]
        if materiality is None:
            return PhaseFailure("No materiality result", skipped=True)

        await ctx.sink.send(progress("Predicting analyst questions for the earnings call...", phase))
        result = await asyncio.to_thread(
            self._generator.generate_structured,
            system_prompt(ANALYST_QUESTIONS_PROMPT, self._company),
            questions_message(materiality),
            QuestionsResult,
        )
        if ctx.run.id:
            await self._persist("analyst questions", store_questions, self._client, ctx.run.id, result)
        return PhaseSuccess(result)

    async def _trends(self, ctx: _RunContext) -> PhaseOutcome:
        phase = PhaseName.TRENDS
        materiality = ctx.run.phase_results[PhaseName.MATERIALITY]
        if ctx.run.id is None or materiality is None:
            return PhaseFailure("Run was not persisted", skipped=True)

        previous = await asyncio.to_thread(self._previous_run, ctx)
        if not previous or not previous.get("raw_response"):
            return PhaseFailure("No previous run to compare with", skipped=True)

        await ctx.sink.send(progress("Comparing with previous period...", phase))
        result = await asyncio.to_thread(
            self._generator.generate_structured,
            system_prompt(TREND_COMPARISON_PROMPT, self._company),
            trends_message(previous["raw_response"], materiality),
            TrendsResult,
        )
        previous_id = str(previous["id"])
        await self._persist("trend comparison", store_trends, self._client, ctx.run.id, previous_id, result)
        return PhaseSuccess(result, extra={"previous_run_id": previous_id})

    def _previous_run(self, ctx: _RunContext) -> dict[str, Any] | None:
        if ctx.previous_run_id:
            return get_run(self._client, ctx.previous_run_id)
        return get_previous_run(self._client, str(ctx.run.id), ctx.run.series)

    async def _indexing(self, ctx: _RunContext) -> PhaseOutcome:
        if ctx.run.id is None:
            return PhaseFailure("Run was not persisted", skipped=True)

        await ctx.sink.send(progress("Indexing documents for future intelligence...", PhaseName.INDEXING))
        count = await asyncio.to_thread(
            index_documents,
            ctx.run.id,
            ctx.documents,
            embedder=self._embedder,
            client=self._client,
            config=self._config,
        )
        logger.info("Indexed %d chunks for run %s", count, ctx.run.id)
        return PhaseSuccess(None, extra={"chunks_indexed": count})

    # ------------------------------------------------------------------
    # Persistence (never fatal)
    # ------------------------------------------------------------------

    async def _create_run(self, run: AnalysisRun) -> None:
        try:
            run.id = await asyncio.to_thread(
                create_run,
                self._client,
                run.document_count,
                run.total_words,
                run.series,
                run.status_json(),
            )
        except Exception:
            logger.exception("Failed to create run row; continuing without persistence")

    async def _save_status(self, run: AnalysisRun) -> None:
        if run.id:
            await self._persist(
                "phase status", update_run, self._client, run.id, {"phase_status": run.status_json()}
            )

    async def _persist(self, what: str, fn: Callable[..., Any], *args: Any) -> bool:
        try:
            await asyncio.to_thread(fn, *args)
        except Exception:
            logger.exception("Failed to save %s", what)
            return False
        return True


# Strong references to in-flight runs so they are not garbage-collected
# while their consumer is gone.
_background_runs: set[asyncio.Task[AnalysisRun]] = set()


def start_analysis(
    orchestrator: AnalysisOrchestrator,
    documents: Sequence[DocumentInput],
    *,
    series: str | None = None,
    previous_run_id: str | None = None,
) -> tuple[EventSink, asyncio.Task[AnalysisRun]]:
    """Start a run as a background task and return the sink it emits on.

    If the consumer stops reading, call ``sink.detach()``: the run still
    completes and persists its results.
    """
    sink = EventSink()
    task = asyncio.create_task(
        orchestrator.run(documents, sink, series=series, previous_run_id=previous_run_id)
    )
    _background_runs.add(task)
    task.add_done_callback(_background_runs.discard)
    return sink, task
