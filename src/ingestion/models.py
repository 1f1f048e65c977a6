"""Data models for the ingestion pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class SectionType(StrEnum):
    """Section of an earnings-call transcript a chunk belongs to."""

    PREPARED_REMARKS = "prepared_remarks"
    QA = "qa"
    OPERATOR = "operator"
    OTHER = "other"


@dataclass(frozen=True)
class DocumentInput:
    """An already-parsed document: normalised UTF-8 text plus file metadata."""

    name: str
    content: str
    type: str | None = None
    size: int | None = None
    page_count: int | None = None

    @property
    def word_count(self) -> int:
        return len(self.content.split())


@dataclass(frozen=True)
class Chunk:
    """A bounded slice of a document, the unit of embedding and retrieval."""

    owner_key: str
    source_name: str
    sequence_index: int
    text: str
    vector: list[float] | None = None


@dataclass(frozen=True)
class TranscriptChunk(Chunk):
    """A transcript chunk tagged with its section and (last known) speaker."""

    section_type: SectionType = SectionType.OTHER
    speaker: str | None = None


@dataclass(frozen=True)
class TranscriptSection:
    """A contiguous region of a transcript with a single section type."""

    section_type: SectionType
    text: str


@dataclass(frozen=True)
class TaggedLine:
    """One transcript line with its speaker-label classification."""

    text: str
    speaker: str | None = None
    role: str | None = None
    is_label: bool = False
    is_operator: bool = False


@dataclass(frozen=True)
class TranscriptQuestion:
    """A question put to management during the Q&A period."""

    speaker: str
    question: str
