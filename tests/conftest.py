"""Shared fixtures: in-memory stand-ins for the embedder, vector store and judge."""

import asyncio
import hashlib
import re
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import numpy as np
import pytest

from chat_recall.indexing.state import IndexerState
from chat_recall.models import WINDOW_INDEX, Hit, IndexRecord, Message
from chat_recall.store.messages import MessageStore

BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
EMBED_DIM = 64


def _token_vector(text: str) -> list[float]:
    """Bag-of-words hashing embedding: shared words mean higher similarity."""
    vec = np.zeros(EMBED_DIM, dtype=np.float32)
    for token in re.findall(r"\w+", text.lower()):
        bucket = int(hashlib.md5(token.encode()).hexdigest(), 16) % EMBED_DIM
        vec[bucket] += 1.0
    norm = np.linalg.norm(vec)
    if norm == 0:
        vec[0] = 1.0
        norm = 1.0
    return (vec / norm).tolist()


def batch_cosine_similarity(query_vec: list[float], vectors: list[list[float]]) -> list[float]:
    """Cosine similarity between a query and multiple vectors, clamped to [0, 1]."""
    if not vectors:
        return []
    query = np.asarray(query_vec, dtype=np.float32)
    matrix = np.asarray(vectors, dtype=np.float32)
    query_norm = np.linalg.norm(query) or 1.0
    row_norms = np.linalg.norm(matrix, axis=1)
    row_norms[row_norms == 0] = 1.0
    similarities = matrix @ query / (row_norms * query_norm)
    return np.clip(similarities, 0.0, 1.0).tolist()


class FakeEmbedder:
    """Deterministic embedder.

    Each call pops one entry off ``failures``: an exception is raised, None
    lets that call succeed.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.failures: list[Exception | None] = []
        self.fail_texts: set[str] = set()

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        for text in texts:
            if text in self.fail_texts:
                raise ValueError(f"cannot embed {text!r}")
        return [_token_vector(t) for t in texts]


class BlockingEmbedder:
    """Never returns; ``started`` is set once a call is in flight."""

    def __init__(self) -> None:
        self.started = asyncio.Event()

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.started.set()
        await asyncio.Event().wait()
        return []


class InMemoryVectorStore:
    """Dict-backed store with the same surface as TypesenseVectorStore."""

    def __init__(self) -> None:
        self.records: dict[str, dict[str, IndexRecord]] = {}
        self.failing_indexes: set[str] = set()
        self.upsert_calls = 0

    def upsert(self, index: str, records: list[IndexRecord]) -> dict[str, int]:
        self.upsert_calls += 1
        bucket = self.records.setdefault(index, {})
        for record in records:
            bucket[record.id] = record
        return {"success": len(records), "failed": 0}

    def query(
        self,
        index: str,
        vector: list[float],
        limit: int,
        conversation_id: str | None = None,
        query_index: int = 0,
    ) -> list[Hit]:
        if index in self.failing_indexes:
            raise RuntimeError(f"index {index} unavailable")
        candidates = [
            r for r in self.records.get(index, {}).values()
            if conversation_id is None or r.conversation_id == conversation_id
        ]
        scores = batch_cosine_similarity(vector, [r.vector for r in candidates])
        ranked = sorted(zip(candidates, scores), key=lambda pair: (-pair[1], pair[0].source_key))
        return [
            Hit(
                source_key=record.source_key,
                display_text=record.display_text,
                raw_score=score,
                origin_index=index,
                origin_query_index=query_index,
                metadata={"conversation_id": record.conversation_id, **record.metadata},
            )
            for record, score in ranked[:limit]
        ]

    def find_windows_containing(
        self, conversation_id: str, message_ids: list[int], per_page: int = 100
    ) -> list[dict[str, Any]]:
        wanted = set(message_ids)
        docs = [
            r.to_typesense_doc() for r in self.records.get(WINDOW_INDEX, {}).values()
            if r.conversation_id == conversation_id and wanted & set(r.metadata.get("member_message_ids", []))
        ]
        return sorted(docs, key=lambda d: d["source_key"])[:per_page]

    def count(self, index: str, conversation_id: str | None = None) -> int:
        return sum(
            1 for r in self.records.get(index, {}).values()
            if conversation_id is None or r.conversation_id == conversation_id
        )

    def delete_all(self, index: str) -> None:
        self.records[index] = {}

    def delete_conversation(self, index: str, conversation_id: str) -> int:
        bucket = self.records.get(index, {})
        doomed = [key for key, r in bucket.items() if r.conversation_id == conversation_id]
        for key in doomed:
            del bucket[key]
        return len(doomed)

    def keys(self, index: str, conversation_id: str | None = None) -> list[int]:
        return sorted(
            r.source_key for r in self.records.get(index, {}).values()
            if conversation_id is None or r.conversation_id == conversation_id
        )


class FakeJudge:
    """Returns ``grades`` or raises ``error``."""

    def __init__(self, grades: list[int] | None = None, error: Exception | None = None) -> None:
        self.grades = grades
        self.error = error
        self.calls: list[tuple[str, list[str]]] = []

    async def grade(self, question: str, candidates: list[str]) -> list[int]:
        self.calls.append((question, list(candidates)))
        if self.error is not None:
            raise self.error
        if self.grades is None:
            return [0] * len(candidates)
        return list(self.grades)


class FakeCompleter:
    """Replays canned completions, or raises ``error``."""

    def __init__(self, response: str = "[]", error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.calls: list[tuple[str, str, float]] = []

    async def complete(self, system: str, prompt: str, temperature: float = 0.0) -> str:
        self.calls.append((system, prompt, temperature))
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def make_message() -> Callable[..., Message]:
    """Build a single message; ``minute`` offsets from a fixed base time."""

    def _make(
        message_id: int,
        text: str = "hello there friends",
        minute: float = 0,
        conversation_id: str = "chat-1",
        author_id: str = "u1",
        author_name: str = "Alice",
    ) -> Message:
        return Message(
            conversation_id=conversation_id,
            message_id=message_id,
            author_id=author_id,
            author_name=author_name,
            text=text,
            timestamp_utc=BASE_TIME + timedelta(minutes=minute),
        )

    return _make


@pytest.fixture
def make_messages(make_message: Callable[..., Message]) -> Callable[..., list[Message]]:
    """Build ``count`` consecutive messages one minute apart."""

    def _make(
        count: int,
        start_id: int = 1,
        start_minute: float = 0,
        gap_minutes: float = 1,
        conversation_id: str = "chat-1",
    ) -> list[Message]:
        return [
            make_message(
                start_id + i,
                text=f"message number {start_id + i} about topic {(start_id + i) % 4}",
                minute=start_minute + i * gap_minutes,
                conversation_id=conversation_id,
                author_id=f"u{i % 3}",
                author_name=["Alice", "Bob", "Carol"][i % 3],
            )
            for i in range(count)
        ]

    return _make


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def blocking_embedder() -> BlockingEmbedder:
    return BlockingEmbedder()


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def message_store(tmp_path: Path) -> MessageStore:
    """Provide a MessageStore with temporary database."""
    store = MessageStore(tmp_path / "messages.db")
    yield store
    store.close()


@pytest.fixture
def indexer_state(tmp_path: Path) -> IndexerState:
    """Provide an IndexerState with temporary database."""
    state = IndexerState(tmp_path / "state" / "indexer.db")
    yield state
    state.close()


@pytest.fixture
def fake_judge() -> FakeJudge:
    return FakeJudge()


@pytest.fixture
def fake_completer() -> FakeCompleter:
    return FakeCompleter()
