"""Background indexing orchestrator.

Drives the registered handlers through ``IDLE -> FETCHING -> EMBEDDING ->
UPSERTING -> IDLE`` for every conversation, persisting a cursor after each
durable upsert. Handlers run concurrently with each other; a single
handler never runs two passes at once.

Backoff policy:
- ``RateLimitError``: pause the handler for the provider's Retry-After,
  or ``rate_limit_backoff_seconds`` without one.
- other ``TransientProviderError`` or a store failure: pause the handler
  for ``error_backoff_seconds``.
- any other embedding failure: embed the batch item by item, skip the
  items that still fail, store the rest and move on.

A paused handler is skipped by passes until its pause expires; the other
handlers keep running. A pause leaves every cursor where it was, so a
backoff never skips unstored items.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from chat_recall.config import Config, IndexingConfig
from chat_recall.errors import FatalConfigurationError, RateLimitError, TransientProviderError
from chat_recall.indexing.handlers import Batch, Handler, MessageHandler, WindowHandler
from chat_recall.indexing.metrics import IndexingMetrics, NullMetrics
from chat_recall.indexing.state import IndexerState
from chat_recall.logging import get_logger
from chat_recall.models import IndexingStats
from chat_recall.providers.embedder import Embedder, OpenAIEmbedder
from chat_recall.segmenter import DialogSegmenter
from chat_recall.store.messages import MessageSource
from chat_recall.store.vectors import TypesenseVectorStore, VectorStore

logger = get_logger("orchestrator")

ALL_CONVERSATIONS = "*"

# Global flag for graceful shutdown
_shutdown_requested = False


def request_shutdown() -> None:
    """Request graceful shutdown of the indexing daemon."""
    global _shutdown_requested
    _shutdown_requested = True


def is_shutdown_requested() -> bool:
    """Check if shutdown has been requested."""
    return _shutdown_requested


def reset_shutdown() -> None:
    """Reset shutdown flag (useful for testing)."""
    global _shutdown_requested
    _shutdown_requested = False


class HandlerPhase(Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    EMBEDDING = "embedding"
    UPSERTING = "upserting"
    BACKOFF = "backoff"


class _PauseHandler(Exception):
    def __init__(self, delay: float, error: Exception) -> None:
        super().__init__(str(error))
        self.delay = delay
        self.error = error


@dataclass
class PassResult:
    """What one handler achieved during one pass."""

    handler: str
    processed: int = 0
    failed: int = 0
    batches: int = 0
    has_more: bool = False
    backed_off: bool = False
    skipped: bool = False


class IndexingOrchestrator:
    """Keeps the vector indexes current with the message source."""

    def __init__(
        self,
        handlers: list[Handler],
        embedder: Embedder,
        vector_store: VectorStore,
        source: MessageSource,
        state: IndexerState,
        config: IndexingConfig | None = None,
        metrics: IndexingMetrics | None = None,
        embed_batch_size: int = 32,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._handlers = {h.name: h for h in handlers}
        self._embedder = embedder
        self._store = vector_store
        self._source = source
        self._state = state
        self._config = config or IndexingConfig()
        self._metrics = metrics or NullMetrics()
        self._embed_batch_size = max(1, embed_batch_size)
        self._clock = clock
        self._locks = {name: asyncio.Lock() for name in self._handlers}
        self._phases = {name: HandlerPhase.IDLE for name in self._handlers}
        self._paused_until: dict[str, float] = {}

    @property
    def handlers(self) -> list[Handler]:
        return list(self._handlers.values())

    def phase(self, handler_name: str) -> HandlerPhase:
        return self._phases[handler_name]

    def paused_for(self, handler_name: str) -> float:
        """Seconds left on a handler's backoff, 0 when it may run."""
        until = self._paused_until.get(handler_name)
        if until is None:
            return 0.0
        return max(0.0, until - self._clock())

    async def run_pass(self, conversation_ids: list[str] | None = None) -> dict[str, PassResult]:
        """Run every handler once over the given (default: all) conversations."""
        if conversation_ids is None:
            conversation_ids = await asyncio.to_thread(self._source.list_conversations)

        results = await asyncio.gather(*(
            self._run_handler(handler, conversation_ids) for handler in self._handlers.values()
        ))
        return {result.handler: result for result in results}

    async def _run_handler(self, handler: Handler, conversation_ids: list[str]) -> PassResult:
        result = PassResult(handler=handler.name)

        remaining = self.paused_for(handler.name)
        if remaining > 0:
            logger.debug("Handler paused: handler=%s remaining=%.1fs", handler.name, remaining)
            result.skipped = True
            result.backed_off = True
            return result
        self._paused_until.pop(handler.name, None)

        async with self._locks[handler.name]:
            try:
                for conversation_id in conversation_ids:
                    for _ in range(self._config.max_batches_per_run):
                        processed, failed, full = await self.process_batch(handler, conversation_id)
                        result.processed += processed
                        result.failed += failed
                        if processed or failed:
                            result.batches += 1
                        if not full:
                            break
                    else:
                        result.has_more = True
            except _PauseHandler as pause:
                self._pause(handler.name, pause.delay, pause.error)
                result.backed_off = True
            except Exception as e:
                logger.exception("Handler pass failed: handler=%s", handler.name)
                self._pause(handler.name, self._config.error_backoff_seconds, e)
                result.backed_off = True
            finally:
                if self._phases[handler.name] is not HandlerPhase.BACKOFF:
                    self._phases[handler.name] = HandlerPhase.IDLE

        return result

    def _pause(self, handler_name: str, delay: float, error: Exception) -> None:
        self._paused_until[handler_name] = self._clock() + delay
        self._phases[handler_name] = HandlerPhase.BACKOFF
        self._metrics.record_backoff(handler_name, delay)
        self._metrics.record_failure(handler_name, error)
        logger.warning(
            "Handler backing off: handler=%s delay=%.1fs error=%s",
            handler_name,
            delay,
            error,
        )

    async def process_batch(self, handler: Handler, conversation_id: str) -> tuple[int, int, bool]:
        """Fetch, embed and upsert one batch, then advance the cursor.

        Returns:
            (records stored, items failed, whether the fetch was full)
        """
        start = time.monotonic()
        cursor = await asyncio.to_thread(self._state.get_cursor, handler.name, conversation_id)

        self._phases[handler.name] = HandlerPhase.FETCHING
        batch: Batch = await asyncio.to_thread(handler.fetch, conversation_id, cursor)

        if not batch.items:
            if batch.next_cursor is not None and batch.next_cursor != cursor:
                await asyncio.to_thread(self._state.set_cursor, handler.name, conversation_id, batch.next_cursor)
            return 0, 0, batch.full

        self._phases[handler.name] = HandlerPhase.EMBEDDING
        texts = [handler.render(item) for item in batch.items]
        vectors = await self._embed_isolating_failures(handler.name, texts)

        records = [
            handler.to_record(conversation_id, item, vector)
            for item, vector in zip(batch.items, vectors)
            if vector is not None
        ]
        failed = len(batch.items) - len(records)

        self._phases[handler.name] = HandlerPhase.UPSERTING
        stored = 0
        if records:
            try:
                outcome = await asyncio.to_thread(self._store.upsert, handler.index, records)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise _PauseHandler(self._config.error_backoff_seconds, e) from e
            stored = outcome.get("success", 0)
            failed += outcome.get("failed", 0)

        if batch.next_cursor is not None:
            await asyncio.to_thread(self._state.set_cursor, handler.name, conversation_id, batch.next_cursor)

        elapsed = time.monotonic() - start
        self._metrics.record_batch(handler.name, stored, failed, elapsed)
        logger.info(
            "Batch upserted: handler=%s conversation_id=%s items=%d stored=%d failed=%d cursor=%s elapsed_ms=%d",
            handler.name,
            conversation_id,
            len(batch.items),
            stored,
            failed,
            batch.next_cursor,
            elapsed * 1000,
        )
        return stored, failed, batch.full

    async def _embed_isolating_failures(self, handler_name: str, texts: list[str]) -> list[list[float] | None]:
        """Embed in sub-batches; a sub-batch that fails hard is retried item by item.

        Raises:
            _PauseHandler: On rate limits and transient provider failures
        """
        vectors: list[list[float] | None] = []
        for start in range(0, len(texts), self._embed_batch_size):
            chunk = texts[start:start + self._embed_batch_size]
            try:
                vectors.extend(await self._embed(chunk))
            except _PauseHandler:
                raise
            except Exception as e:
                logger.warning(
                    "Sub-batch embedding failed, isolating items: handler=%s size=%d error=%s",
                    handler_name,
                    len(chunk),
                    e,
                )
                self._metrics.record_failure(handler_name, e)
                for text in chunk:
                    try:
                        vectors.extend(await self._embed([text]))
                    except _PauseHandler:
                        raise
                    except Exception as item_error:
                        logger.debug("Item embedding failed: handler=%s error=%s", handler_name, item_error)
                        vectors.append(None)
        return vectors

    async def _embed(self, texts: list[str]) -> list[list[float]]:
        try:
            vectors = await self._embedder.embed(texts)
        except RateLimitError as e:
            delay = e.retry_after if e.retry_after is not None else self._config.rate_limit_backoff_seconds
            raise _PauseHandler(delay, e) from e
        except TransientProviderError as e:
            raise _PauseHandler(self._config.error_backoff_seconds, e) from e
        if len(vectors) != len(texts):
            raise ValueError(f"Embedder returned {len(vectors)} vectors for {len(texts)} texts")
        return vectors

    async def drain(self, conversation_ids: list[str] | None = None, max_passes: int = 1000) -> dict[str, PassResult]:
        """Run passes until no handler reports more backlog or all are paused."""
        totals: dict[str, PassResult] = {}
        for _ in range(max_passes):
            results = await self.run_pass(conversation_ids)
            for name, result in results.items():
                total = totals.setdefault(name, PassResult(handler=name))
                total.processed += result.processed
                total.failed += result.failed
                total.batches += result.batches
                total.backed_off = total.backed_off or result.backed_off
                total.has_more = result.has_more
            if not any(r.has_more and not r.backed_off for r in results.values()):
                break
        return totals

    async def reindex_all(self, conversation_id: str = ALL_CONVERSATIONS, confirm: bool = False) -> dict[str, PassResult]:
        """Truncate the indexes and rebuild them from the message source.

        Args:
            conversation_id: One conversation, or ``"*"`` for everything
            confirm: Must be True; the operation is destructive

        Raises:
            ValueError: If ``confirm`` is not set
        """
        if not confirm:
            raise ValueError("reindex_all is destructive and requires confirm=True")

        for name, handler in self._handlers.items():
            async with self._locks[name]:
                if conversation_id == ALL_CONVERSATIONS:
                    await asyncio.to_thread(self._store.delete_all, handler.index)
                    await asyncio.to_thread(self._state.reset, indexer_name=name)
                else:
                    await asyncio.to_thread(self._store.delete_conversation, handler.index, conversation_id)
                    await asyncio.to_thread(self._state.reset, indexer_name=name, conversation_id=conversation_id)
                self._paused_until.pop(name, None)

        logger.info("Reindex started: conversation_id=%s handlers=%s", conversation_id, list(self._handlers))
        targets = None if conversation_id == ALL_CONVERSATIONS else [conversation_id]
        results = await self.drain(targets)
        logger.info(
            "Reindex finished: conversation_id=%s %s",
            conversation_id,
            " ".join(f"{name}={r.processed}" for name, r in results.items()),
        )
        return results

    async def invalidate(self, conversation_id: str) -> int:
        """Schedule a conversation for rebuilding, e.g. after an author rename.

        Records a rebuild would not overwrite are deleted and the cursors
        forgotten, so the next pass re-indexes the conversation from the start.

        Returns:
            Number of cursors removed
        """
        removed = 0
        for handler in self._handlers.values():
            async with self._locks[handler.name]:
                removed += await invalidate_handler(handler, self._store, self._state, conversation_id)
        logger.info("Invalidated conversation: conversation_id=%s cursors=%d", conversation_id, removed)
        return removed

    async def purge_conversation(self, conversation_id: str) -> dict[str, Any]:
        """Remove a conversation's messages, index records and cursors."""
        deleted: dict[str, Any] = {}
        for name, handler in self._handlers.items():
            async with self._locks[name]:
                deleted[name] = await asyncio.to_thread(self._store.delete_conversation, handler.index, conversation_id)
        deleted["messages"] = await asyncio.to_thread(self._source.purge_conversation, conversation_id)
        await asyncio.to_thread(self._state.reset, conversation_id=conversation_id)
        logger.info("Purged conversation: conversation_id=%s deleted=%s", conversation_id, deleted)
        return deleted

    async def get_indexing_status(self) -> dict[str, IndexingStats]:
        """Per-handler totals across all conversations."""
        return await asyncio.to_thread(indexing_status, list(self._handlers.values()), self._source, self._state)

    async def run_forever(self) -> None:
        """Loop passes until shutdown is requested.

        Sleeps ``active_interval_seconds`` after a pass that left backlog,
        ``poll_interval_seconds`` otherwise.
        """
        if self._config.startup_delay_seconds > 0:
            logger.info("Delaying first pass: delay=%ds", self._config.startup_delay_seconds)
            await self._sleep(self._config.startup_delay_seconds)

        while not is_shutdown_requested():
            try:
                results = await self.run_pass()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Indexing pass failed")
                await self._sleep(self._config.error_backoff_seconds)
                continue

            processed = sum(r.processed for r in results.values())
            has_more = any(r.has_more for r in results.values())
            if processed:
                logger.info(
                    "Pass complete: %s",
                    " ".join(f"{name}={r.processed}/{r.failed}" for name, r in results.items()),
                )
            else:
                logger.debug("Pass complete: nothing to index")

            interval = self._config.active_interval_seconds if has_more else self._config.poll_interval_seconds
            await self._sleep(interval)

        logger.info("Indexing orchestrator stopped")

    async def _sleep(self, seconds: float) -> None:
        # Sleep in small increments to allow graceful shutdown
        remaining = seconds
        while remaining > 0 and not is_shutdown_requested():
            step = min(1.0, remaining)
            await asyncio.sleep(step)
            remaining -= step


async def invalidate_handler(
    handler: Handler,
    vector_store: VectorStore,
    state: IndexerState,
    conversation_id: str,
) -> int:
    """Reset one handler's cursor for a conversation; unstable-key records are deleted first."""
    if not handler.stable_keys:
        await asyncio.to_thread(vector_store.delete_conversation, handler.index, conversation_id)
    return await asyncio.to_thread(state.reset, indexer_name=handler.name, conversation_id=conversation_id)


async def invalidate_conversation(
    handlers: list[Handler],
    vector_store: VectorStore,
    state: IndexerState,
    conversation_id: str,
) -> int:
    """Invalidate a conversation for every handler, without a running orchestrator."""
    removed = 0
    for handler in handlers:
        removed += await invalidate_handler(handler, vector_store, state, conversation_id)
    return removed


def indexing_status(
    handlers: list[Handler],
    source: MessageSource,
    state: IndexerState,
) -> dict[str, IndexingStats]:
    """Sum each handler's stats over every conversation in the source."""
    status = {}
    conversations = source.list_conversations()
    for handler in handlers:
        total = indexed = pending = 0
        for conversation_id in conversations:
            stats = handler.stats(conversation_id, state.get_cursor(handler.name, conversation_id))
            total += stats.total
            indexed += stats.indexed
            pending += stats.pending
        status[handler.name] = IndexingStats(total=total, indexed=indexed, pending=pending)
    return status


def build_handlers(config: Config, source: MessageSource, vector_store: VectorStore) -> list[Handler]:
    """Instantiate the handlers named in ``indexing.enabled_handlers``, message first."""
    available: dict[str, Callable[[], Handler]] = {
        MessageHandler.name: lambda: MessageHandler(source, vector_store, config.indexing.batch_size),
        WindowHandler.name: lambda: WindowHandler(
            source,
            vector_store,
            DialogSegmenter(config.segmenter),
            config.indexing.batch_size,
        ),
    }
    unknown = set(config.indexing.enabled_handlers) - set(available)
    if unknown:
        logger.warning("Ignoring unknown handlers: handlers=%s", sorted(unknown))
    handlers = [factory() for name, factory in available.items() if name in config.indexing.enabled_handlers]
    if not handlers:
        raise FatalConfigurationError("indexing.enabled_handlers names no known handler")
    return handlers


def build_orchestrator(
    config: Config,
    source: MessageSource,
    state: IndexerState,
    vector_store: VectorStore | None = None,
    embedder: Embedder | None = None,
    metrics: IndexingMetrics | None = None,
) -> IndexingOrchestrator:
    """Wire an orchestrator from configuration.

    Raises:
        FatalConfigurationError: If no embedder can be built or no handler is enabled
    """
    embedder = embedder or OpenAIEmbedder(config.embedding)
    vector_store = vector_store or TypesenseVectorStore(config.typesense)
    return IndexingOrchestrator(
        handlers=build_handlers(config, source, vector_store),
        embedder=embedder,
        vector_store=vector_store,
        source=source,
        state=state,
        config=config.indexing,
        metrics=metrics,
        embed_batch_size=config.embedding.batch_size,
    )
