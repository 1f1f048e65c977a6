"""Phase names, structured phase results, stream events, and the analysis run."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict


class PhaseName(StrEnum):
    """Phases of the primary pipeline, in execution order."""

    MATERIALITY = "materiality_analysis"
    QUESTIONS = "analyst_questions"
    TRENDS = "trend_comparison"
    INDEXING = "background_indexing"


class PhaseStatus(StrEnum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


class EventType(StrEnum):
    PHASE = "phase"
    RESULT = "result"
    ERROR = "error"
    DONE = "done"


# ---------------------------------------------------------------------------
# Structured phase results (validated at the generation boundary)
# ---------------------------------------------------------------------------


class Bullet(BaseModel):
    """One ranked material finding."""

    rank: int
    materiality_score: float  # 1-10, models sometimes answer 8.5
    category: str  # Financial | Strategic | Risk | Operational
    finding: str
    source_document: str = ""
    so_what: str = ""
    action_needed: bool = False


class MaterialityResult(BaseModel):
    briefing_title: str = "Executive Briefing"
    generated_at: str | None = None
    document_count: int | None = None
    bullets: list[Bullet]
    executive_summary: str = ""


class PredictedQuestion(BaseModel):
    rank: int
    question: str
    triggered_by: str = ""
    suggested_response: str = ""
    difficulty: str = "Moderate"  # Easy | Moderate | Hard
    likely_asker_type: str = ""


class QuestionsResult(BaseModel):
    predicted_questions: list[PredictedQuestion]
    call_risk_assessment: str = ""


class TrendItem(BaseModel):
    # Models answer metrics as numbers as often as strings ("12%" vs 12).
    model_config = ConfigDict(coerce_numbers_to_str=True)

    item: str
    previous: str | None = None
    current: str | None = None
    change_pct: str | None = None
    significance: str | None = None
    resolution: str | None = None


class TrendAnalysis(BaseModel):
    improved: list[TrendItem] = []
    deteriorated: list[TrendItem] = []
    new_items: list[TrendItem] = []
    resolved: list[TrendItem] = []


class TrendsResult(BaseModel):
    trend_analysis: TrendAnalysis
    overall_trajectory: str = ""


PhaseResult = MaterialityResult | QuestionsResult | TrendsResult

# Wire name of the result event emitted when a phase completes
RESULT_EVENT_NAMES: dict[PhaseName, str] = {
    PhaseName.MATERIALITY: "briefing",
    PhaseName.QUESTIONS: "questions",
    PhaseName.TRENDS: "trends",
}


# ---------------------------------------------------------------------------
# Phase outcomes
# ---------------------------------------------------------------------------

T = TypeVar("T")


@dataclass(frozen=True)
class PhaseSuccess(Generic[T]):
    """A phase produced *value* (``None`` for phases without a result payload)."""

    value: T
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PhaseFailure:
    """A phase did not produce a result.

    ``skipped`` distinguishes "nothing to do" (no prior run to compare with)
    from an actual error.
    """

    message: str
    skipped: bool = False


PhaseOutcome = PhaseSuccess[Any] | PhaseFailure


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PhaseEvent:
    """Transient message emitted on the analysis stream."""

    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    phase_name: PhaseName | None = None

    @property
    def name(self) -> str:
        """Wire event name: result events are named after their phase."""
        if self.type is EventType.RESULT and self.phase_name is not None:
            return RESULT_EVENT_NAMES.get(self.phase_name, str(self.phase_name))
        return str(self.type)

    @property
    def is_terminal(self) -> bool:
        return self.type in (EventType.DONE, EventType.ERROR)

    def to_sse(self) -> str:
        """Format as a Server-Sent Events ``data:`` frame."""
        return f"data: {json.dumps({'type': self.name, **self.payload}, default=str)}\n\n"


def progress(message: str, phase_name: PhaseName | None = None) -> PhaseEvent:
    return PhaseEvent(EventType.PHASE, {"phase": message}, phase_name)


# ---------------------------------------------------------------------------
# Analysis run
# ---------------------------------------------------------------------------


@dataclass
class AnalysisRun:
    """In-memory view of one pipeline run, mirrored to the runs table."""

    id: str | None = None
    series: str | None = None
    document_count: int = 0
    total_words: int = 0
    phase_results: dict[PhaseName, BaseModel | None] = field(
        default_factory=lambda: {phase: None for phase in PhaseName}
    )
    phase_status: dict[PhaseName, PhaseStatus] = field(
        default_factory=lambda: {phase: PhaseStatus.PENDING for phase in PhaseName}
    )
    aborted: bool = False

    def record(self, phase: PhaseName, result: BaseModel | None) -> None:
        self.phase_results[phase] = result
        self.phase_status[phase] = PhaseStatus.DONE

    def fail(self, phase: PhaseName, skipped: bool = False) -> None:
        self.phase_status[phase] = PhaseStatus.SKIPPED if skipped else PhaseStatus.FAILED

    def status_json(self) -> dict[str, str]:
        return {str(phase): str(status) for phase, status in self.phase_status.items()}
