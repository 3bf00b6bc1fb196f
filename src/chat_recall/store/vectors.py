"""Typesense vector store for message and window embeddings."""

from typing import Any, Protocol

import typesense
from typesense.exceptions import ObjectNotFound

from chat_recall.config import TypesenseConfig
from chat_recall.logging import get_logger
from chat_recall.models import MESSAGE_INDEX, WINDOW_INDEX, Hit, IndexRecord

logger = get_logger("vectors")

# Columns every document carries; anything else returned is metadata.
_CORE_FIELDS = {"id", "conversation_id", "source_key", "display_text", "embedding"}


def conversation_filter(conversation_id: str) -> str:
    """Exact-match filter on conversation_id, backtick-quoted so the ID is taken literally."""
    return f"conversation_id:=`{conversation_id}`"


class VectorStore(Protocol):
    """What indexing and retrieval need from a vector-capable store.

    Calls are synchronous; async callers run them in a worker thread.
    """

    def upsert(self, index: str, records: list[IndexRecord]) -> dict[str, int]: ...

    def query(
        self,
        index: str,
        vector: list[float],
        limit: int,
        conversation_id: str | None = None,
        query_index: int = 0,
    ) -> list[Hit]: ...

    def find_windows_containing(
        self, conversation_id: str, message_ids: list[int], per_page: int = 100
    ) -> list[dict[str, Any]]: ...

    def count(self, index: str, conversation_id: str | None = None) -> int: ...

    def delete_all(self, index: str) -> None: ...

    def delete_conversation(self, index: str, conversation_id: str) -> int: ...


def message_schema(name: str, num_dim: int) -> dict[str, Any]:
    return {
        "name": name,
        "fields": [
            {"name": "id", "type": "string"},
            {"name": "conversation_id", "type": "string", "facet": True},
            {"name": "source_key", "type": "int64", "sort": True},
            {"name": "display_text", "type": "string"},
            {"name": "author_id", "type": "string", "facet": True, "optional": True},
            {"name": "author_name", "type": "string", "optional": True},
            {"name": "timestamp", "type": "int64", "optional": True},
            {"name": "embedding", "type": "float[]", "num_dim": num_dim},
        ],
        "default_sorting_field": "source_key",
    }


def window_schema(name: str, num_dim: int) -> dict[str, Any]:
    return {
        "name": name,
        "fields": [
            {"name": "id", "type": "string"},
            {"name": "conversation_id", "type": "string", "facet": True},
            {"name": "source_key", "type": "int64", "sort": True},
            {"name": "display_text", "type": "string"},
            {"name": "start_message_id", "type": "int64"},
            {"name": "end_message_id", "type": "int64"},
            {"name": "member_message_ids", "type": "int64[]"},
            {"name": "embedding", "type": "float[]", "num_dim": num_dim},
        ],
        "default_sorting_field": "source_key",
    }


class TypesenseVectorStore:
    """Stores and queries embeddings for both indexes in Typesense.

    Each logical index (``message``, ``window``) maps to its own
    collection. Documents are keyed ``<conversation_id>:<source_key>`` so
    re-indexing the same unit overwrites instead of duplicating.
    """

    def __init__(self, config: TypesenseConfig) -> None:
        """Initialize vector store with Typesense configuration.

        Args:
            config: TypesenseConfig with connection details
        """
        self._config = config
        self._client = typesense.Client({
            "nodes": [{
                "host": config.host,
                "port": str(config.port),
                "protocol": config.protocol,
            }],
            "api_key": config.api_key,
            "connection_timeout_seconds": config.connection_timeout_seconds,
        })
        self._collections = {
            MESSAGE_INDEX: config.message_collection,
            WINDOW_INDEX: config.window_collection,
        }

    @property
    def client(self) -> typesense.Client:
        """Access the underlying Typesense client."""
        return self._client

    def collection_name(self, index: str) -> str:
        try:
            return self._collections[index]
        except KeyError:
            raise ValueError(f"Unknown index: {index}") from None

    def _schema(self, index: str) -> dict[str, Any]:
        name = self.collection_name(index)
        if index == WINDOW_INDEX:
            return window_schema(name, self._config.embedding_dim)
        return message_schema(name, self._config.embedding_dim)

    def ensure_collections(self) -> None:
        """Create or verify the message and window collections."""
        for index in self._collections:
            self._ensure_collection(self._schema(index))

    def _ensure_collection(self, schema: dict[str, Any]) -> None:
        name = schema["name"]
        try:
            self._client.collections[name].retrieve()
            logger.debug("Collection already exists: collection=%s", name)
        except ObjectNotFound:
            self._client.collections.create(schema)
            logger.info("Created collection: collection=%s", name)

    def upsert(self, index: str, records: list[IndexRecord]) -> dict[str, int]:
        """Write records into an index, replacing any with the same key.

        Args:
            index: ``message`` or ``window``
            records: Records to write

        Returns:
            Dict with counts: {"success": N, "failed": M}
        """
        if not records:
            return {"success": 0, "failed": 0}

        documents = [record.to_typesense_doc() for record in records]
        results = self._client.collections[self.collection_name(index)].documents.import_(
            documents,
            {"action": "upsert"},
        )

        success = 0
        failed = 0
        for result in results:
            if result.get("success", False):
                success += 1
            else:
                failed += 1
                logger.debug("Failed to upsert record: index=%s error=%s", index, result.get("error", "unknown"))

        if failed > 0:
            logger.warning("Some records failed to upsert: index=%s success=%d failed=%d", index, success, failed)

        return {"success": success, "failed": failed}

    def query(
        self,
        index: str,
        vector: list[float],
        limit: int,
        conversation_id: str | None = None,
        query_index: int = 0,
    ) -> list[Hit]:
        """Nearest-neighbour search, best match first.

        Args:
            index: ``message`` or ``window``
            vector: Query embedding
            limit: Maximum number of hits
            conversation_id: Restrict hits to one conversation
            query_index: Variant number recorded on every hit

        Returns:
            Hits whose ``raw_score`` is cosine similarity (1 - distance)
        """
        vector_literal = ",".join(f"{v:.7g}" for v in vector)
        search: dict[str, Any] = {
            "collection": self.collection_name(index),
            "q": "*",
            "vector_query": f"embedding:([{vector_literal}], k:{limit})",
            "exclude_fields": "embedding",
            "per_page": limit,
        }
        if conversation_id is not None:
            search["filter_by"] = conversation_filter(conversation_id)

        # multi_search sends the vector in the body; a GET would overflow the URL
        response = self._client.multi_search.perform({"searches": [search]}, {})
        result = response["results"][0]
        if "error" in result:
            raise RuntimeError(f"Typesense query failed: index={index} error={result['error']}")

        hits = []
        for entry in result.get("hits", []):
            doc = entry["document"]
            distance = entry.get("vector_distance", 1.0)
            hits.append(Hit(
                source_key=int(doc["source_key"]),
                display_text=doc.get("display_text", ""),
                raw_score=1.0 - float(distance),
                origin_index=index,
                origin_query_index=query_index,
                metadata={
                    "conversation_id": doc.get("conversation_id"),
                    **{k: v for k, v in doc.items() if k not in _CORE_FIELDS},
                },
            ))
        return hits

    def find_windows_containing(
        self,
        conversation_id: str,
        message_ids: list[int],
        per_page: int = 100,
    ) -> list[dict[str, Any]]:
        """Return window documents whose member set includes any of the given messages."""
        if not message_ids:
            return []
        id_list = ",".join(str(i) for i in message_ids)
        response = self._client.collections[self.collection_name(WINDOW_INDEX)].documents.search({
            "q": "*",
            "filter_by": f"{conversation_filter(conversation_id)} && member_message_ids:=[{id_list}]",
            "exclude_fields": "embedding",
            "sort_by": "source_key:asc",
            "per_page": per_page,
        })
        return [entry["document"] for entry in response.get("hits", [])]

    def count(self, index: str, conversation_id: str | None = None) -> int:
        """Number of records stored in an index, optionally for one conversation."""
        collection = self._client.collections[self.collection_name(index)]
        if conversation_id is None:
            try:
                return int(collection.retrieve().get("num_documents", 0))
            except ObjectNotFound:
                return 0
        response = collection.documents.search({
            "q": "*",
            "filter_by": conversation_filter(conversation_id),
            "per_page": 0,
        })
        return int(response.get("found", 0))

    def delete_all(self, index: str) -> None:
        """Drop and recreate an index's collection."""
        name = self.collection_name(index)
        try:
            self._client.collections[name].delete()
            logger.info("Dropped collection: collection=%s", name)
        except ObjectNotFound:
            logger.debug("Collection already absent: collection=%s", name)
        self._ensure_collection(self._schema(index))

    def delete_conversation(self, index: str, conversation_id: str) -> int:
        """Delete every record of one conversation from an index.

        Returns:
            Number of documents deleted
        """
        response = self._client.collections[self.collection_name(index)].documents.delete({
            "filter_by": conversation_filter(conversation_id),
        })
        deleted = int(response.get("num_deleted", 0))
        logger.info("Deleted records: index=%s conversation_id=%s count=%d", index, conversation_id, deleted)
        return deleted
