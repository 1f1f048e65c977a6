"""Chunking strategies for reports and earnings-call transcripts."""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator

from src.ingestion.models import (
    Chunk,
    DocumentInput,
    SectionType,
    TranscriptChunk,
    TranscriptSection,
)
from src.ingestion.parsers import detect_sections, tag_lines

PARAGRAPH_SEPARATOR = "\n\n"
LINE_SEPARATOR = "\n"

_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")


def split_paragraphs(text: str) -> list[str]:
    """Split *text* on blank lines, dropping empty paragraphs."""
    return [p.strip() for p in _PARAGRAPH_SPLIT_RE.split(text) if p.strip()]


def _join(buffer: str, piece: str, separator: str) -> str:
    return f"{buffer}{separator}{piece}" if buffer else piece


def _overlap_tail(buffer: str, overlap: int, separator: str) -> str:
    """Tail of *buffer* carried into the next chunk.

    The separator that joins the tail to the next piece counts toward
    *overlap*, so ``tail + separator`` is never longer than *overlap*.
    """
    keep = overlap - len(separator)
    if keep <= 0 or len(buffer) <= overlap:
        return ""
    return buffer[-keep:]


def chunk_document(
    owner_key: str,
    source_name: str,
    text: str,
    chunk_size: int = 1500,
    overlap: int = 200,
) -> list[Chunk]:
    """Split a report into paragraph-aligned, overlapping chunks.

    Paragraphs are accumulated until the next one would push the buffer past
    *chunk_size*; the buffer is then emitted and the next one is seeded with
    the last *overlap* characters.  A paragraph longer than *chunk_size* is
    never split, so it ends up as an oversized chunk of its own.

    Args:
        owner_key: Record the chunks belong to (e.g. an analysis run id).
        source_name: Name of the source document.
        text: Normalised document text.
        chunk_size: Target maximum characters per chunk.
        overlap: Characters carried over between consecutive chunks.

    Returns:
        Chunks with ``sequence_index`` running ``0..N-1``.
    """
    if not text or not text.strip():
        return []

    chunks: list[Chunk] = []
    buffer = ""

    for para in split_paragraphs(text):
        if buffer and len(buffer) + len(PARAGRAPH_SEPARATOR) + len(para) > chunk_size:
            chunks.append(Chunk(owner_key, source_name, len(chunks), buffer.strip()))
            tail = _overlap_tail(buffer, overlap, PARAGRAPH_SEPARATOR)
            buffer = _join(tail, para, PARAGRAPH_SEPARATOR)
        else:
            buffer = _join(buffer, para, PARAGRAPH_SEPARATOR)

    if buffer.strip():
        chunks.append(Chunk(owner_key, source_name, len(chunks), buffer.strip()))

    return chunks


def chunk_documents(
    owner_key: str,
    documents: Iterable[DocumentInput],
    chunk_size: int = 1500,
    overlap: int = 200,
) -> list[Chunk]:
    """Chunk several documents; sequence indices restart for each document."""
    chunks: list[Chunk] = []
    for doc in documents:
        chunks.extend(chunk_document(owner_key, doc.name, doc.content, chunk_size, overlap))
    return chunks


def _section_pieces(
    section: TranscriptSection, chunk_size: int, overlap: int
) -> Iterator[tuple[str, SectionType, str | None]]:
    """Yield ``(text, section_type, speaker)`` for each chunk of one section."""
    buffer = ""
    fresh = False  # buffer holds lines not yet emitted
    speaker: str | None = None
    speaker_is_operator = False
    voices: set[bool] = set()  # is_operator of every speaker heard in the buffer

    def piece() -> tuple[str, SectionType, str | None]:
        section_type = SectionType.OPERATOR if voices == {True} else section.section_type
        return buffer.strip(), section_type, speaker

    def carried_voices() -> set[bool]:
        return {speaker_is_operator} if speaker is not None else set()

    for line in tag_lines(section.text):
        overflows = len(buffer) + len(LINE_SEPARATOR) + len(line.text) > chunk_size
        if line.is_label:
            if fresh and overflows:
                yield piece()
                buffer = _overlap_tail(buffer, overlap, LINE_SEPARATOR)
                voices = set()
            buffer = _join(buffer, line.text, LINE_SEPARATOR)
            speaker, speaker_is_operator = line.speaker, line.is_operator
            voices.add(line.is_operator)
            fresh = True
            continue

        if not fresh and not line.text.strip():
            continue  # nothing to attach a blank line to after a flush

        if fresh and overflows:
            yield piece()
            buffer = _overlap_tail(buffer, overlap, LINE_SEPARATOR)
            voices = carried_voices()
            fresh = False

        buffer = _join(buffer, line.text, LINE_SEPARATOR)
        fresh = fresh or bool(line.text.strip())
        if fresh and len(buffer) > chunk_size:
            # One line longer than chunk_size on its own.
            yield piece()
            buffer = _overlap_tail(buffer, overlap, LINE_SEPARATOR)
            voices = carried_voices()
            fresh = False

    if fresh and buffer.strip():
        yield piece()


def chunk_transcript(
    owner_key: str,
    source_name: str,
    text: str,
    chunk_size: int = 1500,
    overlap: int = 200,
) -> list[TranscriptChunk]:
    """Chunk an earnings-call transcript with speaker and section awareness.

    A new speaker label is a preferred flush point: when the labelled line
    would overflow the buffer, the buffer is emitted under the previous
    speaker.  Within one speaker turn the buffer is flushed before any line
    that would overflow it, so bounded size wins over speaker continuity and
    no chunk exceeds ``chunk_size + overlap`` unless a single line does.

    Chunks are tagged with their enclosing section, except that a chunk in
    which only the call operator speaks is tagged ``operator``.  Sequence
    indices are global across sections.
    """
    if not text or not text.strip():
        return []

    chunks: list[TranscriptChunk] = []
    for section in detect_sections(text):
        for content, section_type, speaker in _section_pieces(section, chunk_size, overlap):
            chunks.append(
                TranscriptChunk(
                    owner_key,
                    source_name,
                    len(chunks),
                    content,
                    section_type=section_type,
                    speaker=speaker,
                )
            )
    return chunks
