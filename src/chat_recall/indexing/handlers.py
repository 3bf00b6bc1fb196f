"""Indexers: turn messages and windows into embedded index records.

Both handlers follow the same contract so the orchestrator can drive them
uniformly: ``fetch`` returns the next batch after a cursor, ``render``
gives the text to embed, ``key`` the source key and ``payload`` the extra
document fields stored next to the vector.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from chat_recall.logging import get_logger
from chat_recall.models import MESSAGE_INDEX, WINDOW_INDEX, IndexingStats, IndexRecord, Message, Window
from chat_recall.segmenter import DialogSegmenter
from chat_recall.store.messages import MessageSource
from chat_recall.store.vectors import VectorStore

logger = get_logger("handlers")


@dataclass
class Batch:
    """Items fetched for one conversation.

    Attributes:
        items: Units to embed and upsert, in source order
        next_cursor: Cursor to persist once the items are durably stored
        full: Whether the underlying fetch hit its limit (more backlog likely)
    """

    items: list[Any] = field(default_factory=list)
    next_cursor: int | None = None
    full: bool = False


class Handler(ABC):
    """One indexer over one vector index.

    ``stable_keys`` is False when a rebuild from an empty cursor can produce
    different source keys than incremental passes did, so stale records
    must be deleted rather than overwritten.
    """

    name: str
    index: str
    stable_keys = True

    def __init__(self, source: MessageSource, vector_store: VectorStore, batch_size: int = 100) -> None:
        self._source = source
        self._store = vector_store
        self._batch_size = batch_size

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @abstractmethod
    def fetch(self, conversation_id: str, cursor: int | None) -> Batch:
        """Fetch the next batch after ``cursor``."""

    @abstractmethod
    def render(self, item: Any) -> str:
        """Text that gets embedded."""

    @abstractmethod
    def key(self, item: Any) -> int:
        """Source key of the stored record."""

    def payload(self, item: Any) -> dict[str, Any]:
        return {}

    def to_record(self, conversation_id: str, item: Any, vector: list[float]) -> IndexRecord:
        return IndexRecord(
            conversation_id=conversation_id,
            source_key=self.key(item),
            vector=vector,
            display_text=self.render(item),
            metadata=self.payload(item),
        )

    def stats(self, conversation_id: str, cursor: int | None) -> IndexingStats:
        """Indexed records plus messages past the cursor still waiting."""
        indexed = self._store.count(self.index, conversation_id)
        pending = self._source.count_messages(conversation_id, after_key=cursor)
        return IndexingStats(total=indexed + pending, indexed=indexed, pending=pending)


class MessageHandler(Handler):
    """Indexes each message as ``author: text``."""

    name = "message"
    index = MESSAGE_INDEX

    def fetch(self, conversation_id: str, cursor: int | None) -> Batch:
        messages = self._source.fetch(conversation_id, cursor, self._batch_size)
        if not messages:
            return Batch(items=[], next_cursor=cursor, full=False)
        return Batch(
            items=messages,
            next_cursor=max(m.message_id for m in messages),
            full=len(messages) >= self._batch_size,
        )

    def render(self, item: Message) -> str:
        return item.rendered

    def key(self, item: Message) -> int:
        return item.message_id

    def payload(self, item: Message) -> dict[str, Any]:
        return {
            "author_id": item.author_id,
            "author_name": item.author_name,
            "timestamp": int(item.timestamp_utc.timestamp()),
        }


class WindowHandler(Handler):
    """Indexes overlapping dialog windows, keyed by center message.

    The cursor is the last center message windowed. Messages after it are
    re-read and re-windowed on the next pass, so a dialog still growing at
    the end of a batch gets windowed again once it has more messages.
    """

    name = "window"
    index = WINDOW_INDEX
    stable_keys = False

    def __init__(
        self,
        source: MessageSource,
        vector_store: VectorStore,
        segmenter: DialogSegmenter,
        batch_size: int = 100,
    ) -> None:
        super().__init__(source, vector_store, batch_size)
        self._segmenter = segmenter

    def fetch(self, conversation_id: str, cursor: int | None) -> Batch:
        messages = self._source.fetch(conversation_id, cursor, self._batch_size)
        full = len(messages) >= self._batch_size
        # Pages follow message_id; dialogs are cut on time
        ordered = sorted(messages, key=lambda m: (m.timestamp_utc, m.message_id))
        windows = self._segmenter.build_windows(ordered, resume_after=cursor)

        if windows:
            next_cursor = max(w.center_message_id for w in windows)
        elif full:
            # Nothing windowable in a full batch: skip ahead but keep the last
            # max_window_size messages for the next pass
            tail = self._segmenter.config.max_window_size
            next_cursor = messages[-tail - 1].message_id
            logger.debug(
                "No windows in full batch, advancing cursor: conversation_id=%s cursor=%s",
                conversation_id,
                next_cursor,
            )
        else:
            next_cursor = cursor

        return Batch(items=windows, next_cursor=next_cursor, full=full)

    def render(self, item: Window) -> str:
        return item.window_text

    def key(self, item: Window) -> int:
        return item.center_message_id

    def payload(self, item: Window) -> dict[str, Any]:
        return {
            "start_message_id": item.start_message_id,
            "end_message_id": item.end_message_id,
            "member_message_ids": list(item.member_message_ids),
        }
