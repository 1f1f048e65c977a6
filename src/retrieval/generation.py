"""Claude-powered generation: free text, validated structured output, and transcript Q&A."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from typing import Any, TypeVar

from anthropic import Anthropic
from pydantic import BaseModel, ValidationError

from src.analysis.prompts import (
    TRANSCRIPT_COMPARE_PROMPT,
    TRANSCRIPT_SEARCH_PROMPT,
    compare_message,
    system_prompt,
)
from src.config import settings
from src.retrieval.search import RetrievalResult, format_transcript_excerpts

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

STRICT_JSON_INSTRUCTION = (
    "\n\nCRITICAL: Your previous response was not valid JSON. "
    "Return ONLY valid JSON, no markdown fences, no explanation."
)

_FENCE_RE = re.compile(r"```(?:json)?\n?")

# Per-transcript cap on the text sent for a quarter-over-quarter comparison
COMPARE_MAX_CHARS = 50_000


class StructuredOutputError(ValueError):
    """The model's output could not be parsed into the requested schema."""


def strip_code_fences(text: str) -> str:
    """Remove Markdown code fences (```json ... ```) around a model response."""
    return _FENCE_RE.sub("", text).strip()


class GenerationClient:
    """Thin wrapper over the Anthropic Messages API.

    ``generate_structured`` layers JSON parsing and pydantic validation on top
    of ``generate`` and retries exactly once, with a stricter system prompt,
    when the first answer does not parse.  API errors are not retried here.
    """

    def __init__(
        self,
        client: Anthropic | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> None:
        self._client = client or Anthropic(api_key=settings.anthropic_api_key)
        self.model = model or settings.llm_model
        self.max_tokens = max_tokens or settings.llm_max_tokens
        self.temperature = settings.llm_temperature if temperature is None else temperature

    def generate(self, system: str, user_message: str) -> str:
        """Return the text of the first text block in the response ("" if none)."""
        response = self._client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            system=system,
            messages=[{"role": "user", "content": user_message}],
        )
        for block in response.content:
            if block.type == "text":
                return str(block.text)
        return ""

    def generate_structured(
        self, system: str, user_message: str, schema: type[ModelT]
    ) -> ModelT:
        """Generate and validate a JSON response against *schema*.

        Raises:
            StructuredOutputError: If both the first attempt and the corrective
                retry return output that is not valid JSON for *schema*.
        """
        text = self.generate(system, user_message)
        try:
            return _parse(text, schema)
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Unparseable %s output, retrying once: %s", schema.__name__, exc)

        text = self.generate(system + STRICT_JSON_INSTRUCTION, user_message)
        try:
            return _parse(text, schema)
        except (json.JSONDecodeError, ValidationError) as exc:
            raise StructuredOutputError(
                f"Model returned invalid {schema.__name__} JSON after retry: {exc}"
            ) from exc


def _parse(text: str, schema: type[ModelT]) -> ModelT:
    return schema.model_validate(json.loads(strip_code_fences(text)))


def answer_from_transcripts(
    generator: GenerationClient,
    question: str,
    results: Sequence[RetrievalResult],
) -> dict[str, Any]:
    """Answer *question* from retrieved transcript excerpts with citations.

    Args:
        generator: Generation client.
        question: The user's question.
        results: Transcript chunks returned by the retriever.

    Returns:
        Dictionary with ``answer`` and ``citations``.
    """
    citations = [
        {
            "content": r.chunk.text[:200],
            "source": (
                f"{getattr(r.chunk, 'speaker', None) or 'Unknown'} "
                f"({getattr(r.chunk, 'section_type', 'other')})"
            ),
            "similarity": r.similarity,
        }
        for r in results
    ]
    user_message = (
        f"TRANSCRIPT EXCERPTS:\n{format_transcript_excerpts(results)}\n\n"
        f"USER QUESTION: {question}"
    )
    answer = generator.generate(system_prompt(TRANSCRIPT_SEARCH_PROMPT), user_message)
    return {"answer": answer, "citations": citations}


def compare_transcripts(
    generator: GenerationClient,
    transcript_a: dict[str, Any],
    transcript_b: dict[str, Any],
) -> str:
    """Contrast two quarters' earnings calls: messaging, financials, guidance and tone.

    Each transcript is cut to its first ``COMPARE_MAX_CHARS`` characters.
    Returns the model's free-text analysis.
    """
    return generator.generate(
        system_prompt(TRANSCRIPT_COMPARE_PROMPT, transcript_a.get("company")),
        compare_message(transcript_a, transcript_b, COMPARE_MAX_CHARS),
    )
