"""Indexing daemon: connects the stores and runs the orchestrator loop."""

import asyncio
import time

from chat_recall.config import Config
from chat_recall.indexing.metrics import RecordingMetrics
from chat_recall.indexing.orchestrator import build_orchestrator, reset_shutdown
from chat_recall.indexing.state import IndexerState
from chat_recall.logging import get_logger, setup_logging
from chat_recall.providers.embedder import OpenAIEmbedder
from chat_recall.store.messages import MessageStore
from chat_recall.store.vectors import TypesenseVectorStore

logger = get_logger("indexer")

CONNECT_ATTEMPTS = 10
CONNECT_RETRY_SECONDS = 5


def connect_vector_store(config: Config) -> TypesenseVectorStore:
    """Connect to Typesense and make sure both collections exist, with retry.

    Raises:
        ConnectionError: If Typesense is still unreachable after all attempts
    """
    last_error: Exception | None = None
    for attempt in range(1, CONNECT_ATTEMPTS + 1):
        try:
            store = TypesenseVectorStore(config.typesense)
            store.ensure_collections()
            logger.info(
                "Connected to Typesense: host=%s port=%d",
                config.typesense.host,
                config.typesense.port,
            )
            return store
        except Exception as e:
            last_error = e
            if attempt < CONNECT_ATTEMPTS:
                logger.warning(
                    "Could not connect to Typesense (attempt %d/%d), retrying in %ds...",
                    attempt,
                    CONNECT_ATTEMPTS,
                    CONNECT_RETRY_SECONDS,
                )
                time.sleep(CONNECT_RETRY_SECONDS)

    raise ConnectionError(f"Could not connect to Typesense after {CONNECT_ATTEMPTS} attempts") from last_error


def run_indexer(config: Config) -> None:
    """Run the indexing daemon until shutdown is requested.

    Args:
        config: Application configuration

    Raises:
        FatalConfigurationError: If the embedder or handlers cannot be wired
    """
    reset_shutdown()
    setup_logging("indexer")

    logger.info(
        "Starting indexing daemon: messages_db=%s state_db=%s handlers=%s poll=%ds active=%ds",
        config.storage.messages_db,
        config.storage.state_db,
        config.indexing.enabled_handlers,
        config.indexing.poll_interval_seconds,
        config.indexing.active_interval_seconds,
    )

    # Fail fast on missing keys before touching the network
    embedder = OpenAIEmbedder(config.embedding)
    vector_store = connect_vector_store(config)
    metrics = RecordingMetrics()

    with MessageStore(config.storage.messages_db) as source, IndexerState(config.storage.state_db) as state:
        orchestrator = build_orchestrator(
            config,
            source,
            state,
            vector_store=vector_store,
            embedder=embedder,
            metrics=metrics,
        )
        asyncio.run(orchestrator.run_forever())

    for name, counters in metrics.snapshot().items():
        logger.info(
            "Handler totals: handler=%s processed=%d failed=%d backoffs=%d batches=%d",
            name,
            counters.processed,
            counters.failed,
            counters.backoffs,
            counters.batches,
        )
    logger.info("Indexing daemon stopped")
