"""Shared fakes: an in-memory Supabase store and scripted OpenAI/Anthropic clients."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import pytest

from src.ingestion.embeddings import EmbeddingClient
from src.retrieval.generation import GenerationClient

# ---------------------------------------------------------------------------
# Supabase
# ---------------------------------------------------------------------------


class _Not:
    def __init__(self, query: FakeQuery) -> None:
        self._query = query

    def is_(self, column: str, value: str) -> FakeQuery:
        assert value == "null"
        self._query._filters.append(lambda row: row.get(column) is not None)
        return self._query


class FakeQuery:
    """Chainable subset of the postgrest query builder used by the storage helpers."""

    def __init__(self, db: FakeSupabase, table: str) -> None:
        self._db = db
        self._table = table
        self._op = "select"
        self._payload: Any = None
        self._filters: list[Callable[[dict[str, Any]], bool]] = []
        self._order: list[tuple[str, bool]] = []
        self._limit: int | None = None
        self._count = False
        self.not_ = _Not(self)

    def select(self, columns: str = "*", count: Any = None) -> FakeQuery:
        self._op = "select"
        self._count = count is not None
        return self

    def insert(self, rows: dict[str, Any] | list[dict[str, Any]]) -> FakeQuery:
        self._op = "insert"
        self._payload = rows if isinstance(rows, list) else [rows]
        return self

    def update(self, fields: dict[str, Any]) -> FakeQuery:
        self._op = "update"
        self._payload = fields
        return self

    def eq(self, column: str, value: Any) -> FakeQuery:
        self._filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column: str, value: Any) -> FakeQuery:
        self._filters.append(lambda row: row.get(column) != value)
        return self

    def order(self, column: str, desc: bool = False) -> FakeQuery:
        self._order.append((column, desc))
        return self

    def limit(self, n: int) -> FakeQuery:
        self._limit = n
        return self

    def execute(self) -> SimpleNamespace:
        rows = self._db.tables[self._table]
        if self._op == "insert":
            return SimpleNamespace(data=self._db._insert(self._table, self._payload), count=None)

        matched = [r for r in rows if all(f(r) for f in self._filters)]
        if self._op == "update":
            if self._table in self._db.failing_updates:
                raise RuntimeError(f"update of {self._table} rejected")
            for row in matched:
                row.update(self._payload)
            return SimpleNamespace(data=[dict(r) for r in matched], count=None)

        # Stable sorts, last key first, give multi-column ordering.
        for column, desc in reversed(self._order):
            matched.sort(key=lambda r: (r.get(column) is not None, r.get(column)), reverse=desc)
        if self._limit is not None:
            matched = matched[: self._limit]
        return SimpleNamespace(
            data=[dict(r) for r in matched],
            count=len(matched) if self._count else None,
        )


class _Rpc:
    def __init__(self, db: FakeSupabase, function: str, params: dict[str, Any]) -> None:
        self._db = db
        self._function = function
        self._params = params

    def execute(self) -> SimpleNamespace:
        self._db.rpc_calls.append((self._function, self._params))
        if self._db.rpc_error is not None:
            raise self._db.rpc_error
        return SimpleNamespace(data=list(self._db.rpc_rows.get(self._function, [])))


class FakeSupabase:
    """In-memory stand-in for ``supabase.Client``.

    Inserted rows get an ``id`` and a monotonically increasing ``created_at``.
    Individual insert calls can be made to fail with :meth:`fail_insert`, and
    every update of a table with :meth:`fail_update`.
    """

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self.rpc_rows: dict[str, list[dict[str, Any]]] = {}
        self.rpc_calls: list[tuple[str, dict[str, Any]]] = []
        self.rpc_error: Exception | None = None
        self.insert_calls: dict[str, int] = defaultdict(int)
        self._failing: dict[str, set[int] | None] = {}
        self.failing_updates: set[str] = set()
        self._clock = 0

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, function: str, params: dict[str, Any]) -> _Rpc:
        return _Rpc(self, function, params)

    def fail_insert(self, table: str, *calls: int) -> None:
        """Make the given (1-based) insert calls on *table* raise; all of them if none given."""
        self._failing[table] = set(calls) if calls else None

    def fail_update(self, table: str) -> None:
        self.failing_updates.add(table)

    def seed(self, table: str, **row: Any) -> dict[str, Any]:
        return self._insert(table, [row])[0]

    def _insert(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        self.insert_calls[table] += 1
        if table in self._failing:
            failing = self._failing[table]
            if failing is None or self.insert_calls[table] in failing:
                raise RuntimeError(f"insert into {table} rejected")

        stored = []
        for row in rows:
            self._clock += 1
            record = {
                "id": f"{table}-{self._clock}",
                "created_at": f"2026-01-01T00:00:00.{self._clock:06d}+00:00",
            }
            record.update(row)
            self.tables[table].append(record)
            stored.append(dict(record))
        return stored


@pytest.fixture
def fake_db() -> FakeSupabase:
    return FakeSupabase()


# ---------------------------------------------------------------------------
# OpenAI embeddings
# ---------------------------------------------------------------------------


def make_openai(reverse: bool = False) -> MagicMock:
    """Mock OpenAI client whose embedding of a text is ``[len(text), 1.0, 0.0]``."""

    def create(input: list[str], model: str, dimensions: int | None = None) -> SimpleNamespace:
        data = [
            SimpleNamespace(index=i, embedding=[float(len(text)), 1.0, 0.0])
            for i, text in enumerate(input)
        ]
        if reverse:
            data.reverse()
        return SimpleNamespace(data=data)

    client = MagicMock()
    client.embeddings.create.side_effect = create
    return client


@pytest.fixture
def openai_client() -> MagicMock:
    return make_openai()


@pytest.fixture
def embedder(openai_client: MagicMock) -> EmbeddingClient:
    return EmbeddingClient(client=openai_client, model="test-embedding", batch_size=20, max_chars=8000)


# ---------------------------------------------------------------------------
# Anthropic messages
# ---------------------------------------------------------------------------


def text_reply(text: str) -> SimpleNamespace:
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)])


class ScriptedAnthropic:
    """Fake Anthropic client that answers by matching the system prompt.

    ``script`` maps a substring of the system prompt to the list of replies
    for successive calls; a reply is either text or an exception to raise.
    """

    def __init__(self, script: dict[str, list[str | Exception]]) -> None:
        self.script = {key: list(replies) for key, replies in script.items()}
        self.calls: list[dict[str, Any]] = []
        self.messages = SimpleNamespace(create=self._create)

    def calls_for(self, key: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if key in c["system"]]

    def _create(self, **kwargs: Any) -> SimpleNamespace:
        self.calls.append(kwargs)
        for key, replies in self.script.items():
            if key in kwargs["system"]:
                reply = replies.pop(0) if len(replies) > 1 else replies[0]
                if isinstance(reply, Exception):
                    raise reply
                return text_reply(reply)
        raise AssertionError(f"Unscripted system prompt: {kwargs['system'][:80]}")


def make_generator(script: dict[str, list[str | Exception]]) -> tuple[GenerationClient, ScriptedAnthropic]:
    fake = ScriptedAnthropic(script)
    return GenerationClient(client=fake, model="test-model", max_tokens=512, temperature=0.0), fake  # type: ignore[arg-type]


@pytest.fixture
def generator_factory() -> Callable[..., tuple[GenerationClient, ScriptedAnthropic]]:
    return make_generator


@pytest.fixture
def reversed_openai_client() -> MagicMock:
    """Embedding client mock that returns items in reverse request order."""
    return make_openai(reverse=True)
