"""Pipeline configuration: strategy enums and PipelineConfig dataclass."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from src.config import settings


class ChunkingStrategy(str, Enum):
    """Available chunking strategies for document ingestion."""

    PARAGRAPH = "paragraph"
    TRANSCRIPT = "transcript"


@dataclass(frozen=True)
class PipelineConfig:
    """Immutable configuration for chunking and indexing.

    Defaults mirror the application settings (1500-character chunks with a
    200-character overlap, paragraph chunking for generic reports).
    """

    chunking_strategy: ChunkingStrategy = ChunkingStrategy.PARAGRAPH
    chunk_size: int = settings.chunk_size
    overlap: int = settings.chunk_overlap
    storage_batch_size: int = settings.storage_batch_size
