"""Earnings-call transcript classification: speaker labels and Q&A sections.

The document parsers proper (PDF, DOCX, plain text extraction) live outside
this package; everything here works on already-normalised UTF-8 text.
Detection is heuristic by nature, so the patterns are kept in one place and
tested against a corpus of transcript styles.
"""

from __future__ import annotations

import re
from collections.abc import Iterator

from src.ingestion.models import SectionType, TaggedLine, TranscriptQuestion, TranscriptSection

# "Jane Doe:", "Jane Doe - CFO:", "Mark O'Neil, Analyst, Goldman Sachs:", "OPERATOR:"
_SPEAKER_RE = re.compile(
    r"^\s*(?P<name>[A-Z][A-Za-z.'\-]*(?:\s+[A-Z][A-Za-z.'\-]*){0,4})"
    r"(?:\s*[-–—,]\s*(?P<role>[^:\n]{1,80}?))?"
    r"\s*:(?:\s|$)"
)

_MAX_SPEAKER_NAME = 60

_OPERATOR_NAMES = {"operator", "moderator"}

# Role text that marks a speaker as sell-side or as management
_ANALYST_ROLE_RE = re.compile(r"\banalyst\b|\bmanaging director\b", re.IGNORECASE)
_MANAGEMENT_ROLE_RE = re.compile(
    r"\b(?:ceo|cfo|coo|president|chairman|chief|officer|treasurer|investor relations)\b",
    re.IGNORECASE,
)

# Phrases that signal the start of the question period
_QA_MARKERS: list[re.Pattern[str]] = [
    re.compile(r"\bquestion[- ]and[- ]answer", re.IGNORECASE),
    re.compile(r"\bQ\s*&\s*A\b", re.IGNORECASE),
    re.compile(r"\boperator\s*:.*?\b(?:question|Q&A)", re.IGNORECASE),
    re.compile(r"\bwe (?:will|can) now (?:open|begin|take)\b.*?\bquestion", re.IGNORECASE),
]


def parse_speaker_label(line: str) -> tuple[str, str | None] | None:
    """Return ``(speaker, role)`` if *line* opens with a speaker label, else None."""
    match = _SPEAKER_RE.match(line)
    if match is None:
        return None
    name = match.group("name").strip()
    if len(name) < 2 or len(name) > _MAX_SPEAKER_NAME:
        return None
    role = match.group("role")
    return name, role.strip() if role else None


def tag_lines(text: str) -> Iterator[TaggedLine]:
    """Classify every line of *text*, yielding one :class:`TaggedLine` per line.

    Lines without a speaker label carry ``speaker=None``; the chunker tracks
    the current speaker across them.
    """
    for line in text.split("\n"):
        label = parse_speaker_label(line)
        if label is None:
            yield TaggedLine(text=line)
            continue
        speaker, role = label
        yield TaggedLine(
            text=line,
            speaker=speaker,
            role=role,
            is_label=True,
            is_operator=speaker.lower() in _OPERATOR_NAMES,
        )


def find_qa_start(text: str) -> int:
    """Return the offset of the line where the Q&A period begins, or -1.

    The earliest match across all markers wins and is snapped back to the
    start of its line so the speaker label stays with the Q&A section.
    """
    positions: list[int] = []
    for marker in _QA_MARKERS:
        match = marker.search(text)
        if match is not None:
            positions.append(match.start())
    if not positions:
        return -1
    idx = min(positions)
    return text.rfind("\n", 0, idx) + 1


def detect_sections(text: str) -> list[TranscriptSection]:
    """Split a transcript into prepared remarks and Q&A.

    Everything before the first Q&A marker is prepared remarks; everything
    from it on is Q&A.  Without a marker the whole text is prepared remarks.
    """
    qa_start = find_qa_start(text)
    if qa_start == -1:
        return [TranscriptSection(SectionType.PREPARED_REMARKS, text)]

    sections: list[TranscriptSection] = []
    prepared = text[:qa_start].strip()
    if prepared:
        sections.append(TranscriptSection(SectionType.PREPARED_REMARKS, prepared))
    sections.append(TranscriptSection(SectionType.QA, text[qa_start:].strip()))
    return sections


def extract_speakers(text: str) -> list[str]:
    """Unique speaker names in order of first appearance."""
    seen: dict[str, None] = {}
    for line in tag_lines(text):
        if line.is_label and line.speaker:
            seen.setdefault(line.speaker, None)
    return list(seen)


def _asks_as_analyst(line: TaggedLine, management: set[str | None]) -> bool:
    if line.is_operator:
        return False
    role = line.role or ""
    if _ANALYST_ROLE_RE.search(role):
        return True
    return line.speaker not in management and not _MANAGEMENT_ROLE_RE.search(role)


def extract_questions(text: str) -> list[TranscriptQuestion]:
    """Analyst questions asked during the Q&A period, in order.

    A speaker turn counts when it contains a question mark and its speaker is
    an analyst: not the operator, and not management.  Management is anyone
    whose role names an executive office or who spoke in the prepared remarks,
    so a bare "Jane Doe:" label in the Q&A is still recognised as the CEO.
    """
    sections = detect_sections(text)
    qa = next((s for s in sections if s.section_type == SectionType.QA), None)
    if qa is None:
        return []

    management = {
        line.speaker
        for section in sections
        if section.section_type == SectionType.PREPARED_REMARKS
        for line in tag_lines(section.text)
        if line.is_label
    }

    turns: list[tuple[TaggedLine, list[str]]] = []
    for line in tag_lines(qa.text):
        if line.is_label:
            turns.append((line, [_SPEAKER_RE.sub("", line.text, count=1).strip()]))
        elif turns:
            turns[-1][1].append(line.text.strip())

    questions: list[TranscriptQuestion] = []
    for label, parts in turns:
        question = " ".join(part for part in parts if part)
        if label.speaker and "?" in question and _asks_as_analyst(label, management):
            questions.append(TranscriptQuestion(label.speaker, question))
    return questions
