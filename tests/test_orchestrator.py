"""Tests for the streaming analysis orchestrator (no external API keys required).

Each test drives a full run against the in-memory store, a mock embedding
API and a scripted Anthropic client, then inspects the emitted events and
what was persisted.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock

import pytest

from src.analysis.models import (
    AnalysisRun,
    EventType,
    PhaseEvent,
    PhaseName,
    PhaseStatus,
    progress,
)
from src.analysis.orchestrator import AnalysisOrchestrator, EventSink, start_analysis
from src.ingestion.embeddings import EmbeddingClient, EmbeddingError
from src.ingestion.models import DocumentInput
from src.pipeline_config import PipelineConfig
from src.retrieval.search import Retriever

MATERIALITY = "Chief of Staff"
QUESTIONS = "sell-side"
TRENDS = "two executive briefings"

BRIEFING_JSON = json.dumps(
    {
        "briefing_title": "Q3 Briefing",
        "bullets": [
            {
                "rank": 1,
                "materiality_score": 9,
                "category": "Financial",
                "finding": "Revenue up 12%",
                "source_document": "10-Q.txt",
                "so_what": "Beat guidance",
                "action_needed": False,
            }
        ],
        "executive_summary": "Strong quarter.",
    }
)
QUESTIONS_JSON = json.dumps(
    {
        "predicted_questions": [
            {"rank": 1, "question": "What drove margins?", "difficulty": "Hard"}
        ],
        "call_risk_assessment": "Moderate",
    }
)
TRENDS_JSON = json.dumps(
    {
        "trend_analysis": {
            "improved": [{"item": "Revenue", "previous": "$10M", "current": "$12M"}]
        },
        "overall_trajectory": "Improving",
    }
)

HAPPY_SCRIPT: dict[str, list[str | Exception]] = {
    MATERIALITY: [BRIEFING_JSON],
    QUESTIONS: [QUESTIONS_JSON],
    TRENDS: [TRENDS_JSON],
}

DOCUMENTS = [
    DocumentInput(
        name="10-Q.txt",
        content="Revenue grew 12 percent.\n\nGross margin expanded.",
        type="text/plain",
        size=48,
        page_count=1,
    ),
    DocumentInput(name="press.txt", content="Acme reports record quarter."),
]


def _names(events: list[PhaseEvent]) -> list[str]:
    return [e.name for e in events]


def _terminal(events: list[PhaseEvent]) -> list[PhaseEvent]:
    return [e for e in events if e.is_terminal]


@pytest.fixture
def build(fake_db: Any, embedder: EmbeddingClient, generator_factory: Callable[..., Any]):
    """Return a factory ``(script) -> (orchestrator, scripted anthropic)``."""

    def _build(script: dict[str, list[str | Exception]], emb: Any = None):
        generator, anthropic = generator_factory(script)
        emb = emb or embedder
        orchestrator = AnalysisOrchestrator(
            generator=generator,
            retriever=Retriever(emb, fake_db),
            embedder=emb,
            client=fake_db,
            config=PipelineConfig(chunk_size=200, overlap=20, storage_batch_size=10),
            company="Acme",
        )
        return orchestrator, anthropic

    return _build


def _run(
    orchestrator: AnalysisOrchestrator,
    documents: list[DocumentInput],
    detach: bool = False,
    **kwargs: Any,
) -> tuple[AnalysisRun, list[PhaseEvent]]:
    async def go() -> tuple[AnalysisRun, list[PhaseEvent]]:
        sink = EventSink()
        if detach:
            sink.detach()
        run = await orchestrator.run(documents, sink, **kwargs)
        return run, sink.drain()

    return asyncio.run(go())


class TestEventSink:
    def test_drops_events_after_terminal(self) -> None:
        async def go() -> list[PhaseEvent]:
            sink = EventSink()
            await sink.send(progress("working"))
            await sink.send(PhaseEvent(EventType.DONE, {}))
            await sink.send(PhaseEvent(EventType.ERROR, {"message": "late"}))
            await sink.send(progress("late"))
            return sink.drain()

        events = asyncio.run(go())
        assert _names(events) == ["phase", "done"]

    def test_events_iterator_stops_on_close(self) -> None:
        async def go() -> list[str]:
            sink = EventSink()
            await sink.send(progress("one"))
            sink.close()
            sink.close()
            return [e.payload["phase"] async for e in sink.events()]

        assert asyncio.run(go()) == ["one"]

    def test_detached_sink_discards(self) -> None:
        async def go() -> tuple[bool, list[PhaseEvent]]:
            sink = EventSink()
            sink.detach()
            await sink.send(PhaseEvent(EventType.DONE, {}))
            return sink.terminated, sink.drain()

        terminated, events = asyncio.run(go())
        assert terminated is True
        assert events == []


class TestHappyPath:
    def test_first_run_skips_trends(self, build: Any, fake_db: Any) -> None:
        orchestrator, anthropic = build(HAPPY_SCRIPT)
        run, events = _run(orchestrator, DOCUMENTS, series="ACME")

        names = _names(events)
        assert names.count("briefing") == 1
        assert names.count("questions") == 1
        assert "trends" not in names
        assert names[-1] == "done"
        assert len(_terminal(events)) == 1
        assert names.index("briefing") < names.index("questions")

        assert run.phase_status == {
            PhaseName.MATERIALITY: PhaseStatus.DONE,
            PhaseName.QUESTIONS: PhaseStatus.DONE,
            PhaseName.TRENDS: PhaseStatus.SKIPPED,
            PhaseName.INDEXING: PhaseStatus.DONE,
        }
        assert anthropic.calls_for(TRENDS) == []

        (row,) = fake_db.tables["briefings"]
        assert row["id"] == run.id
        assert row["series"] == "ACME"
        assert row["title"] == "Q3 Briefing"
        assert row["raw_response"]["bullets"][0]["finding"] == "Revenue up 12%"
        assert row["analyst_questions_response"]["call_risk_assessment"] == "Moderate"
        assert row["phase_status"]["trend_comparison"] == "skipped"
        assert len(fake_db.tables["bullets"]) == 1
        assert len(fake_db.tables["analyst_questions"]) == 1
        assert [d["file_name"] for d in fake_db.tables["documents"]] == ["10-Q.txt", "press.txt"]
        assert fake_db.tables["document_chunks"]
        assert {r["briefing_id"] for r in fake_db.tables["document_chunks"]} == {run.id}

    def test_result_and_done_payloads(self, build: Any) -> None:
        orchestrator, _ = build(HAPPY_SCRIPT)
        run, events = _run(orchestrator, DOCUMENTS)

        briefing = next(e for e in events if e.name == "briefing")
        assert briefing.payload["data"]["briefing_title"] == "Q3 Briefing"
        assert briefing.payload["run_id"] == run.id

        done = events[-1]
        metadata = done.payload["metadata"]
        assert metadata["documents_analyzed"] == 2
        assert metadata["total_words"] == sum(d.word_count for d in DOCUMENTS)
        assert metadata["run_id"] == run.id
        assert metadata["phase_status"]["background_indexing"] == "done"
        assert metadata["analyzed_at"]

    def test_trends_against_previous_run(self, build: Any, fake_db: Any) -> None:
        previous = fake_db.seed(
            "briefings", series="ACME", raw_response={"bullets": [{"finding": "Revenue up 5%"}]}
        )
        orchestrator, anthropic = build(HAPPY_SCRIPT)
        run, events = _run(orchestrator, DOCUMENTS, series="ACME")

        trends = next(e for e in events if e.name == "trends")
        assert trends.payload["previous_run_id"] == previous["id"]
        assert trends.payload["data"]["overall_trajectory"] == "Improving"
        assert run.phase_status[PhaseName.TRENDS] == PhaseStatus.DONE

        (comparison,) = fake_db.tables["trend_comparisons"]
        assert comparison["current_briefing_id"] == run.id
        assert comparison["previous_briefing_id"] == previous["id"]
        assert "Revenue up 5%" in anthropic.calls_for(TRENDS)[0]["messages"][0]["content"]

    def test_prior_run_lookup_is_scoped_to_series(self, build: Any, fake_db: Any) -> None:
        fake_db.seed("briefings", series="OTHER", raw_response={"bullets": []})
        orchestrator, _ = build(HAPPY_SCRIPT)
        run, events = _run(orchestrator, DOCUMENTS, series="ACME")

        assert "trends" not in _names(events)
        assert run.phase_status[PhaseName.TRENDS] == PhaseStatus.SKIPPED

    def test_pinned_previous_run(self, build: Any, fake_db: Any) -> None:
        older = fake_db.seed("briefings", raw_response={"bullets": [], "executive_summary": "old"})
        fake_db.seed("briefings", raw_response={"bullets": [], "executive_summary": "newer"})
        orchestrator, _ = build(HAPPY_SCRIPT)
        _, events = _run(orchestrator, DOCUMENTS, previous_run_id=older["id"])

        trends = next(e for e in events if e.name == "trends")
        assert trends.payload["previous_run_id"] == older["id"]

    def test_historical_context_is_added_to_prompt(self, build: Any, fake_db: Any) -> None:
        fake_db.rpc_rows["match_document_chunks"] = [
            {
                "briefing_id": "old-run",
                "document_name": "Q2-10-Q.txt",
                "chunk_index": 0,
                "content": "Revenue grew 5 percent.",
                "similarity": 0.9,
            }
        ]
        orchestrator, anthropic = build(HAPPY_SCRIPT)
        _, events = _run(orchestrator, DOCUMENTS)

        message = anthropic.calls_for(MATERIALITY)[0]["messages"][0]["content"]
        assert "HISTORICAL CONTEXT" in message
        assert "[Q2-10-Q.txt] (relevance: 90%): Revenue grew 5 percent." in message
        assert any("1 relevant historical chunks" in e.payload.get("phase", "") for e in events)
        assert "Acme" in anthropic.calls_for(MATERIALITY)[0]["system"]


class TestFailures:
    def test_first_phase_parse_failures_abort(self, build: Any, fake_db: Any) -> None:
        orchestrator, anthropic = build({MATERIALITY: ["Sorry, I cannot produce JSON."]})
        run, events = _run(orchestrator, DOCUMENTS)

        names = _names(events)
        assert names.count("error") == 1
        assert "done" not in names
        assert names[-1] == "error"
        assert events[-1].payload["message"].startswith("Materiality analysis failed:")

        # One attempt plus one corrective retry, then nothing else
        assert len(anthropic.calls) == 2
        assert run.aborted is True
        assert run.phase_status[PhaseName.MATERIALITY] == PhaseStatus.FAILED
        assert run.phase_status[PhaseName.QUESTIONS] == PhaseStatus.PENDING
        assert fake_db.tables["document_chunks"] == []
        assert fake_db.tables["briefings"][0]["phase_status"]["materiality_analysis"] == "failed"

    def test_second_phase_failure_still_completes(self, build: Any, fake_db: Any) -> None:
        orchestrator, _ = build(
            {MATERIALITY: [BRIEFING_JSON], QUESTIONS: [RuntimeError("model overloaded")]}
        )
        run, events = _run(orchestrator, DOCUMENTS)

        names = _names(events)
        assert names[-1] == "done"
        assert len(_terminal(events)) == 1
        assert "questions" not in names
        assert any(
            e.payload.get("phase") == "Analyst questions unavailable, continuing..." for e in events
        )

        (row,) = fake_db.tables["briefings"]
        assert row["raw_response"] is not None
        assert row.get("analyst_questions_response") is None
        assert row["phase_status"]["analyst_questions"] == "failed"
        assert run.phase_results[PhaseName.QUESTIONS] is None
        assert run.phase_status[PhaseName.INDEXING] == PhaseStatus.DONE

    def test_no_documents(self, build: Any, fake_db: Any) -> None:
        orchestrator, anthropic = build(HAPPY_SCRIPT)
        run, events = _run(orchestrator, [])

        assert _names(events) == ["error"]
        assert events[0].payload["message"] == "No documents provided"
        assert anthropic.calls == []
        assert fake_db.tables["briefings"] == []
        assert run.aborted is True

    def test_retrieval_failure_is_not_fatal(self, build: Any, fake_db: Any) -> None:
        fake_db.rpc_error = RuntimeError("match_document_chunks missing")
        orchestrator, anthropic = build(HAPPY_SCRIPT)
        _, events = _run(orchestrator, DOCUMENTS)

        assert _names(events)[-1] == "done"
        message = anthropic.calls_for(MATERIALITY)[0]["messages"][0]["content"]
        assert "HISTORICAL CONTEXT" not in message

    def test_indexing_failure_is_not_fatal(self, build: Any, fake_db: Any) -> None:
        broken = MagicMock()
        broken.embed.side_effect = EmbeddingError("down", batch_start=0)
        broken.embed_chunks.side_effect = EmbeddingError("down", batch_start=0)
        orchestrator, _ = build(HAPPY_SCRIPT, emb=broken)
        run, events = _run(orchestrator, DOCUMENTS)

        assert _names(events)[-1] == "done"
        assert any(
            e.payload.get("phase") == "Document indexing unavailable, continuing..." for e in events
        )
        assert run.phase_status[PhaseName.INDEXING] == PhaseStatus.FAILED
        assert events[-1].payload["metadata"]["phase_status"]["background_indexing"] == "failed"
        assert fake_db.tables["document_chunks"] == []

    def test_run_row_failure_disables_persistence(self, build: Any, fake_db: Any) -> None:
        fake_db.fail_insert("briefings")
        orchestrator, _ = build(HAPPY_SCRIPT)
        run, events = _run(orchestrator, DOCUMENTS)

        assert run.id is None
        assert _names(events)[-1] == "done"
        assert "briefing" in _names(events)
        assert run.phase_status[PhaseName.TRENDS] == PhaseStatus.SKIPPED
        assert run.phase_status[PhaseName.INDEXING] == PhaseStatus.SKIPPED
        assert fake_db.tables["document_chunks"] == []

    def test_result_persistence_failure_is_not_fatal(self, build: Any, fake_db: Any) -> None:
        fake_db.fail_insert("bullets")
        orchestrator, _ = build(HAPPY_SCRIPT)
        run, events = _run(orchestrator, DOCUMENTS)

        assert _names(events)[-1] == "done"
        assert run.phase_status[PhaseName.MATERIALITY] == PhaseStatus.DONE
        (row,) = fake_db.tables["briefings"]
        assert row["raw_response"]["briefing_title"] == "Q3 Briefing"
        assert fake_db.tables["bullets"] == []

    def test_bullets_stored_when_run_update_fails(self, build: Any, fake_db: Any) -> None:
        fake_db.fail_update("briefings")
        orchestrator, _ = build(HAPPY_SCRIPT)
        run, events = _run(orchestrator, DOCUMENTS)

        assert _names(events)[-1] == "done"
        assert run.phase_status[PhaseName.MATERIALITY] == PhaseStatus.DONE
        (row,) = fake_db.tables["briefings"]
        assert "raw_response" not in row
        assert [b["finding"] for b in fake_db.tables["bullets"]] == ["Revenue up 12%"]
        assert [b["briefing_id"] for b in fake_db.tables["bullets"]] == [run.id]
        assert len(fake_db.tables["documents"]) == 2


class TestDetachedConsumer:
    def test_run_completes_without_listener(self, build: Any, fake_db: Any) -> None:
        orchestrator, _ = build(HAPPY_SCRIPT)
        run, events = _run(orchestrator, DOCUMENTS, detach=True)

        assert events == []
        assert run.phase_status[PhaseName.INDEXING] == PhaseStatus.DONE
        assert fake_db.tables["briefings"][0]["analyst_questions_response"] is not None
        assert fake_db.tables["document_chunks"]

    def test_start_analysis_streams_in_background(self, build: Any) -> None:
        orchestrator, _ = build(HAPPY_SCRIPT)

        async def go() -> tuple[list[str], AnalysisRun]:
            sink, task = start_analysis(orchestrator, DOCUMENTS, series="ACME")
            names = [event.name async for event in sink.events()]
            return names, await task

        names, run = asyncio.run(go())
        assert names[-1] == "done"
        assert run.series == "ACME"
