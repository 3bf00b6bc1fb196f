"""Tests for hybrid retrieval and the Retrieve entry point."""

import asyncio
import threading
import time

import pytest
import pytest_asyncio

from chat_recall.config import Config, IndexingConfig, RetrievalConfig
from chat_recall.indexing.handlers import MessageHandler, WindowHandler
from chat_recall.indexing.orchestrator import IndexingOrchestrator
from chat_recall.models import MESSAGE_INDEX, WINDOW_INDEX, ConfidenceLevel
from chat_recall.retrieval.confidence import ConfidenceGate
from chat_recall.retrieval.reranker import Reranker
from chat_recall.retrieval.retriever import HybridRetriever
from chat_recall.retrieval.service import RecallService, RetrieveOptions, build_recall_service
from chat_recall.retrieval.variants import QueryExpander
from chat_recall.segmenter import DialogSegmenter

CHAT = [
    "we should book the pizza place for friday",
    "friday works for me",
    "what time on friday though",
    "eight pm at the pizza place",
    "my cat knocked over the plant again",
    "anyone watching the game tonight",
]


@pytest_asyncio.fixture
async def indexed(message_store, indexer_state, vector_store, fake_embedder, make_message):
    """Index a short pizza-planning dialog into both indexes."""
    message_store.add_messages([
        make_message(i + 1, text=text, minute=i, author_name=["Alice", "Bob"][i % 2])
        for i, text in enumerate(CHAT)
    ])
    orchestrator = IndexingOrchestrator(
        handlers=[
            MessageHandler(message_store, vector_store),
            WindowHandler(message_store, vector_store, DialogSegmenter()),
        ],
        embedder=fake_embedder,
        vector_store=vector_store,
        source=message_store,
        state=indexer_state,
        config=IndexingConfig(),
    )
    await orchestrator.run_pass()
    fake_embedder.calls.clear()
    return vector_store


def make_service(embedder, vector_store, completer=None, judge=None, **config) -> RecallService:
    retrieval = RetrievalConfig(**config)
    return RecallService(
        retriever=HybridRetriever(embedder, vector_store, retrieval.branch_timeout_seconds),
        expander=QueryExpander(completer),
        gate=ConfidenceGate(retrieval),
        reranker=Reranker(judge, top_k=retrieval.rerank_top_k) if judge is not None else None,
        config=retrieval,
    )


class TestHybridRetriever:
    """Tests for the fan-out over variants and indexes."""

    @pytest.mark.asyncio
    async def test_one_list_per_variant_and_index(self, fake_embedder, indexed) -> None:
        retriever = HybridRetriever(fake_embedder, indexed)

        lists = await retriever.search("chat-1", ["pizza friday", "cat plant"], limit=5, near_duplicate_threshold=0.98)

        assert len(lists) == 4
        assert [h.origin_index for h in lists[0]] == [MESSAGE_INDEX] * 5
        assert [h.origin_index for h in lists[1]] == [WINDOW_INDEX]
        assert {h.origin_query_index for h in lists[2] + lists[3]} == {1}
        # One embedding call for all variants
        assert len(fake_embedder.calls) == 1

    @pytest.mark.asyncio
    async def test_failing_index_degrades_to_empty(self, fake_embedder, indexed) -> None:
        indexed.failing_indexes.add(WINDOW_INDEX)
        retriever = HybridRetriever(fake_embedder, indexed)

        lists = await retriever.search("chat-1", ["pizza friday"], limit=5, near_duplicate_threshold=0.98)

        assert len(lists[0]) == 5
        assert lists[1] == []

    @pytest.mark.asyncio
    async def test_slow_branch_times_out(self, fake_embedder, indexed) -> None:
        original = indexed.query

        def slow_query(index, *args, **kwargs):
            if index == WINDOW_INDEX:
                time.sleep(0.5)
            return original(index, *args, **kwargs)

        indexed.query = slow_query
        retriever = HybridRetriever(fake_embedder, indexed, branch_timeout=0.05)

        lists = await retriever.search("chat-1", ["pizza friday"], limit=5, near_duplicate_threshold=0.98)

        assert lists[0]
        assert lists[1] == []

    @pytest.mark.asyncio
    async def test_embedding_failure_gives_empty_lists(self, fake_embedder, indexed) -> None:
        fake_embedder.failures.append(RuntimeError("embedding service down"))
        retriever = HybridRetriever(fake_embedder, indexed)

        lists = await retriever.search("chat-1", ["a", "b"], limit=5, near_duplicate_threshold=0.98)

        assert lists == [[], [], [], []]

    @pytest.mark.asyncio
    async def test_query_echo_filtered(self, fake_embedder, indexed) -> None:
        """A stored message identical to the query is dropped as an echo."""
        retriever = HybridRetriever(fake_embedder, indexed)

        lists = await retriever.search(
            "chat-1", ["Alice: we should book the pizza place for friday"], limit=10, near_duplicate_threshold=0.98
        )

        assert 1 not in [h.source_key for h in lists[0]]

    @pytest.mark.asyncio
    async def test_scoped_to_conversation(self, fake_embedder, indexed) -> None:
        retriever = HybridRetriever(fake_embedder, indexed)

        lists = await retriever.search("chat-2", ["pizza"], limit=5, near_duplicate_threshold=0.98)

        assert lists == [[], []]


class TestRetrieve:
    """Tests for the Retrieve entry point."""

    @pytest.mark.asyncio
    async def test_empty_source_is_insufficient_grounding(self, fake_embedder, vector_store) -> None:
        service = make_service(fake_embedder, vector_store)

        result = await service.retrieve("chat-1", "when is the pizza night?")

        assert result.hits == []
        assert result.confidence.level == ConfidenceLevel.NONE
        assert result.insufficient_grounding is True
        assert result.format_context() == ""

    @pytest.mark.asyncio
    async def test_blank_question(self, fake_embedder, vector_store) -> None:
        service = make_service(fake_embedder, vector_store)

        result = await service.retrieve("chat-1", "   ")

        assert result.confidence.level == ConfidenceLevel.NONE
        assert fake_embedder.calls == []

    @pytest.mark.asyncio
    async def test_returns_fused_hits_with_confidence(self, fake_embedder, indexed) -> None:
        service = make_service(fake_embedder, indexed)

        result = await service.retrieve("chat-1", "pizza place friday", RetrieveOptions(variant_count=1, rerank=False))

        assert result.variants == ["pizza place friday"]
        assert len(result.hits) == len(CHAT) + 1
        assert result.confidence.level == ConfidenceLevel.HIGH
        scores = [h.fused_score for h in result.hits]
        assert scores == sorted(scores, reverse=True)
        assert not result.insufficient_grounding
        assert result.format_context(max_hits=2).startswith("[1] (")

    @pytest.mark.asyncio
    async def test_multiple_variants_fuse(self, fake_embedder, indexed, fake_completer) -> None:
        fake_completer.response = '["pizza night friday", "friday dinner plans"]'
        service = make_service(fake_embedder, indexed, completer=fake_completer)

        result = await service.retrieve("chat-1", "pizza place friday", RetrieveOptions(variant_count=3, rerank=False))

        assert len(result.variants) == 3
        # Every message appears in every message list, so the top hit is corroborated
        assert result.hits[0].source_count >= 2
        assert result.confidence.level == ConfidenceLevel.HIGH
        keys = [(h.origin_index, h.source_key) for h in result.hits]
        assert len(keys) == len(set(keys))

    @pytest.mark.asyncio
    async def test_message_hits_get_window_context(self, fake_embedder, indexed) -> None:
        service = make_service(fake_embedder, indexed)

        result = await service.retrieve("chat-1", "pizza place friday", RetrieveOptions(variant_count=1, rerank=False))

        message_hits = [h for h in result.hits if h.origin_index == MESSAGE_INDEX]
        assert all(h.context_text and "\n" in h.context_text for h in message_hits)
        assert all(h.metadata["window_key"] == 4 for h in message_hits)

    @pytest.mark.asyncio
    async def test_window_expansion_can_be_disabled(self, fake_embedder, indexed) -> None:
        service = make_service(fake_embedder, indexed)

        result = await service.retrieve(
            "chat-1", "pizza", RetrieveOptions(variant_count=1, rerank=False, expand_windows=False)
        )

        assert all(h.context_text is None for h in result.hits)

    @pytest.mark.asyncio
    async def test_rerank_applied_when_enabled(self, fake_embedder, indexed, fake_judge) -> None:
        service = make_service(fake_embedder, indexed, judge=fake_judge)

        result = await service.retrieve("chat-1", "pizza", RetrieveOptions(variant_count=1, rerank=True))

        assert len(fake_judge.calls) == 1
        assert len(result.hits) == len(CHAT) + 1
        assert all(h.rerank_score is not None for h in result.hits)

    @pytest.mark.asyncio
    async def test_rerank_skipped_when_disabled(self, fake_embedder, indexed, fake_judge) -> None:
        service = make_service(fake_embedder, indexed, judge=fake_judge)

        await service.retrieve("chat-1", "pizza", RetrieveOptions(variant_count=1, rerank=False))

        assert fake_judge.calls == []

    @pytest.mark.asyncio
    async def test_judge_failure_keeps_fused_order(self, fake_embedder, indexed, fake_judge) -> None:
        plain = await make_service(fake_embedder, indexed).retrieve(
            "chat-1", "pizza", RetrieveOptions(variant_count=1, rerank=False)
        )
        fake_judge.error = RuntimeError("judge offline")
        service = make_service(fake_embedder, indexed, judge=fake_judge)

        result = await service.retrieve("chat-1", "pizza", RetrieveOptions(variant_count=1, rerank=True))

        assert [(h.origin_index, h.source_key) for h in result.hits] == [
            (h.origin_index, h.source_key) for h in plain.hits
        ]

    @pytest.mark.asyncio
    async def test_embedding_outage_is_none(self, fake_embedder, indexed) -> None:
        fake_embedder.failures.append(RuntimeError("down"))
        service = make_service(fake_embedder, indexed)

        result = await service.retrieve("chat-1", "pizza", RetrieveOptions(variant_count=1))

        assert result.confidence.level == ConfidenceLevel.NONE
        assert result.insufficient_grounding


class TestBuildRecallService:
    def test_without_llm_key_has_no_reranker(self, fake_embedder, vector_store) -> None:
        config = Config()
        config.llm.anthropic_api_key = ""

        service = build_recall_service(config, vector_store=vector_store, embedder=fake_embedder)

        assert service._reranker is None

    def test_with_llm_key_builds_reranker(self, fake_embedder, vector_store) -> None:
        config = Config()
        config.llm.anthropic_api_key = "sk-ant-test"

        service = build_recall_service(config, vector_store=vector_store, embedder=fake_embedder)

        assert service._reranker is not None


class TestCancellation:
    """Cancelling a retrieval must propagate, not degrade to empty branches."""

    @pytest.mark.asyncio
    async def test_cancel_during_query_embedding(self, blocking_embedder, vector_store) -> None:
        service = make_service(blocking_embedder, vector_store)

        task = asyncio.create_task(service.retrieve("chat-1", "pizza", RetrieveOptions(variant_count=1)))
        await asyncio.wait_for(blocking_embedder.started.wait(), timeout=5)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_cancel_during_search_branch(self, fake_embedder, indexed) -> None:
        started = threading.Event()
        release = threading.Event()
        original = indexed.query

        def slow_query(*args, **kwargs):
            started.set()
            release.wait(5)
            return original(*args, **kwargs)

        indexed.query = slow_query
        retriever = HybridRetriever(fake_embedder, indexed, branch_timeout=10)

        task = asyncio.create_task(
            retriever.search("chat-1", ["pizza friday"], limit=5, near_duplicate_threshold=0.98)
        )
        await asyncio.to_thread(started.wait, 5)
        task.cancel()

        try:
            with pytest.raises(asyncio.CancelledError):
                await task
        finally:
            release.set()
