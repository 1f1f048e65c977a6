"""Factories for the clients each request needs.

Every request gets freshly constructed clients; nothing is cached at module
level, so tests can patch these functions per route module.
"""

from __future__ import annotations

from src.analysis.orchestrator import AnalysisOrchestrator
from src.ingestion.embeddings import EmbeddingClient
from src.ingestion.storage import get_supabase_client
from src.retrieval.generation import GenerationClient
from src.retrieval.search import Retriever


def get_embedder() -> EmbeddingClient:
    return EmbeddingClient()


def get_generator() -> GenerationClient:
    return GenerationClient()


def build_retriever() -> Retriever:
    return Retriever(get_embedder(), get_supabase_client())


def build_orchestrator() -> AnalysisOrchestrator:
    """Wire an orchestrator with one shared embedding client and store client."""
    client = get_supabase_client()
    embedder = get_embedder()
    return AnalysisOrchestrator(
        generator=get_generator(),
        retriever=Retriever(embedder, client),
        embedder=embedder,
        client=client,
    )
