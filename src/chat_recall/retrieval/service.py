"""Retrieve: the query entry point tying expansion, search, fusion and gating together."""

import time
from dataclasses import dataclass
from typing import Self

from chat_recall.config import Config, RetrievalConfig
from chat_recall.logging import get_logger, truncate_for_log
from chat_recall.models import RetrievalResult
from chat_recall.providers.embedder import Embedder, OpenAIEmbedder
from chat_recall.providers.judge import LLMRelevanceJudge
from chat_recall.providers.llm import AnthropicCompleter
from chat_recall.retrieval.confidence import ConfidenceGate
from chat_recall.retrieval.fusion import apply_rrf_fusion
from chat_recall.retrieval.reranker import Reranker
from chat_recall.retrieval.retriever import HybridRetriever
from chat_recall.retrieval.variants import QueryExpander
from chat_recall.store.vectors import TypesenseVectorStore, VectorStore

logger = get_logger("service")


@dataclass
class RetrieveOptions:
    """Per-call knobs for ``RecallService.retrieve``."""

    variant_count: int = 3
    per_list_limit: int = 15
    rerank: bool = True
    near_duplicate_threshold: float = 0.98
    expand_windows: bool = True

    @classmethod
    def from_config(cls, config: RetrievalConfig) -> Self:
        return cls(
            variant_count=config.variant_count,
            per_list_limit=config.per_list_limit,
            rerank=config.rerank,
            near_duplicate_threshold=config.near_duplicate_threshold,
            expand_windows=config.expand_windows,
        )


class RecallService:
    """Answers ``retrieve`` calls with ranked, confidence-gated hits."""

    def __init__(
        self,
        retriever: HybridRetriever,
        expander: QueryExpander,
        gate: ConfidenceGate,
        reranker: Reranker | None = None,
        config: RetrievalConfig | None = None,
    ) -> None:
        self._retriever = retriever
        self._expander = expander
        self._gate = gate
        self._reranker = reranker
        self._config = config or RetrievalConfig()

    async def retrieve(
        self,
        conversation_id: str,
        question: str,
        options: RetrieveOptions | None = None,
    ) -> RetrievalResult:
        """Retrieve context for a question.

        Never raises for empty or failed searches: those come back with
        ``ConfidenceLevel.NONE`` and ``insufficient_grounding`` set.
        """
        options = options or RetrieveOptions.from_config(self._config)
        start = time.monotonic()

        if not question or not question.strip():
            return RetrievalResult(hits=[], confidence=self._gate.evaluate([], 1), variants=[])

        variants = await self._expander.expand(question.strip(), max(1, options.variant_count))
        lists = await self._retriever.search(
            conversation_id,
            variants,
            options.per_list_limit,
            options.near_duplicate_threshold,
        )
        hits = apply_rrf_fusion(lists, k=self._config.rrf_k)

        if hits and options.expand_windows:
            await self._retriever.expand_message_hits(conversation_id, hits[:self._config.rerank_top_k])

        if hits and options.rerank and self._reranker is not None:
            hits = await self._reranker.rerank(question, hits)

        confidence = self._gate.evaluate(hits, len(variants))
        logger.info(
            "Retrieve finished: conversation_id=%s question=%s variants=%d fused=%d best=%.4f "
            "confidence=%s reason=%s elapsed_ms=%d",
            conversation_id,
            truncate_for_log(question),
            len(variants),
            len(hits),
            hits[0].fused_score if hits else 0.0,
            confidence.level.name,
            confidence.reason,
            (time.monotonic() - start) * 1000,
        )
        return RetrievalResult(hits=hits, confidence=confidence, variants=variants)


def build_recall_service(
    config: Config,
    vector_store: VectorStore | None = None,
    embedder: Embedder | None = None,
) -> RecallService:
    """Wire a RecallService from configuration.

    Raises:
        FatalConfigurationError: If no embedder can be built
    """
    embedder = embedder or OpenAIEmbedder(config.embedding)
    vector_store = vector_store or TypesenseVectorStore(config.typesense)

    completer = None
    if config.llm.anthropic_api_key:
        completer = AnthropicCompleter(config.llm)
    else:
        logger.warning("No LLM key configured: reranking disabled, keyword query variants only")

    reranker = None
    if completer is not None and config.retrieval.rerank:
        reranker = Reranker(
            LLMRelevanceJudge(completer),
            top_k=config.retrieval.rerank_top_k,
            weight=config.retrieval.rerank_weight,
        )

    return RecallService(
        retriever=HybridRetriever(embedder, vector_store, config.retrieval.branch_timeout_seconds),
        expander=QueryExpander(completer),
        gate=ConfidenceGate(config.retrieval),
        reranker=reranker,
        config=config.retrieval,
    )
