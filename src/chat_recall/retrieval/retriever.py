"""Hybrid multi-query retrieval over the message and window indexes."""

import asyncio
import time

from chat_recall.logging import get_logger
from chat_recall.models import MESSAGE_INDEX, WINDOW_INDEX, FusedHit, Hit
from chat_recall.providers.embedder import Embedder
from chat_recall.retrieval.fusion import filter_near_duplicates
from chat_recall.store.vectors import VectorStore

logger = get_logger("retriever")

SEARCH_INDEXES = (MESSAGE_INDEX, WINDOW_INDEX)


class HybridRetriever:
    """Fans every query variant out to both indexes and collects the hit lists.

    A branch that fails or exceeds ``branch_timeout`` contributes an empty
    list; nothing short of cancellation aborts the whole search.
    """

    def __init__(
        self,
        embedder: Embedder,
        vector_store: VectorStore,
        branch_timeout: float = 10.0,
    ) -> None:
        self._embedder = embedder
        self._store = vector_store
        self._branch_timeout = branch_timeout

    async def search(
        self,
        conversation_id: str,
        variants: list[str],
        limit: int,
        near_duplicate_threshold: float,
    ) -> list[list[Hit]]:
        """Query both indexes with every variant.

        Returns:
            One hit list per (variant, index) pair, variant-major, message
            index before window index. Near-duplicates of the query are
            already removed.
        """
        if not variants:
            return []

        try:
            vectors = await self._embedder.embed(variants)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "Query embedding failed, no branches issued: conversation_id=%s error=%s",
                conversation_id,
                e,
            )
            return [[] for _ in range(len(variants) * len(SEARCH_INDEXES))]

        branches = [
            (query_index, index, vector)
            for query_index, vector in enumerate(vectors)
            for index in SEARCH_INDEXES
        ]
        start = time.monotonic()
        results = await asyncio.gather(*(
            self._run_branch(conversation_id, index, vector, limit, query_index)
            for query_index, index, vector in branches
        ))

        filtered = []
        dropped = 0
        for hits in results:
            kept = filter_near_duplicates(hits, near_duplicate_threshold)
            dropped += len(hits) - len(kept)
            filtered.append(kept)

        logger.info(
            "Hybrid search finished: conversation_id=%s branches=%d hits=%s near_duplicates=%d elapsed_ms=%d",
            conversation_id,
            len(branches),
            [len(h) for h in filtered],
            dropped,
            (time.monotonic() - start) * 1000,
        )
        return filtered

    async def _run_branch(
        self,
        conversation_id: str,
        index: str,
        vector: list[float],
        limit: int,
        query_index: int,
    ) -> list[Hit]:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._store.query, index, vector, limit, conversation_id, query_index),
                timeout=self._branch_timeout,
            )
        except TimeoutError:
            logger.warning(
                "Search branch timed out: index=%s query_index=%d timeout=%.1fs",
                index,
                query_index,
                self._branch_timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Search branch failed: index=%s query_index=%d error=%s", index, query_index, e)
        return []

    async def expand_message_hits(self, conversation_id: str, hits: list[FusedHit]) -> int:
        """Attach the enclosing window text to message-index hits.

        The window whose center is closest to the message is used. Order and
        scores are left alone.

        Returns:
            Number of hits that received context
        """
        message_hits = [h for h in hits if h.origin_index == MESSAGE_INDEX and h.context_text is None]
        if not message_hits:
            return 0

        try:
            windows = await asyncio.wait_for(
                asyncio.to_thread(
                    self._store.find_windows_containing,
                    conversation_id,
                    [h.source_key for h in message_hits],
                ),
                timeout=self._branch_timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Window expansion failed: conversation_id=%s error=%s", conversation_id, e)
            return 0

        expanded = 0
        for hit in message_hits:
            enclosing = [w for w in windows if hit.source_key in w.get("member_message_ids", [])]
            if not enclosing:
                continue
            best = min(enclosing, key=lambda w: (abs(int(w["source_key"]) - hit.source_key), int(w["source_key"])))
            hit.context_text = best.get("display_text")
            hit.metadata["window_key"] = int(best["source_key"])
            expanded += 1

        logger.debug("Expanded message hits: conversation_id=%s expanded=%d", conversation_id, expanded)
        return expanded
