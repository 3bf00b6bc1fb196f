"""Canonical data models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum

MESSAGE_INDEX = "message"
WINDOW_INDEX = "window"


@dataclass(frozen=True)
class Message:
    """A single chat message as stored by the ingestion path."""

    conversation_id: str
    message_id: int
    author_id: str
    author_name: str
    text: str
    timestamp_utc: datetime

    @property
    def rendered(self) -> str:
        """The ``author: text`` line used for embedding and display."""
        return f"{self.author_name}: {self.text}"


@dataclass(frozen=True)
class Window:
    """A contiguous span of one dialog, embedded as a single unit.

    Identity is ``(conversation_id, center_message_id)``.
    """

    conversation_id: str
    center_message_id: int
    start_message_id: int
    end_message_id: int
    member_message_ids: tuple[int, ...]
    window_text: str

    @property
    def size(self) -> int:
        return len(self.member_message_ids)

    @property
    def key(self) -> tuple[str, int]:
        return (self.conversation_id, self.center_message_id)


@dataclass
class IndexRecord:
    """One stored vector plus the payload needed to display it."""

    conversation_id: str
    source_key: int
    vector: list[float]
    display_text: str
    metadata: dict = field(default_factory=dict)

    @property
    def id(self) -> str:
        """Stable document ID, so re-indexing overwrites."""
        return record_id(self.conversation_id, self.source_key)

    def to_typesense_doc(self) -> dict:
        """Convert to Typesense document format."""
        doc = {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "source_key": self.source_key,
            "display_text": self.display_text,
            "embedding": self.vector,
        }
        doc.update(self.metadata)
        return doc


def record_id(conversation_id: str, source_key: int) -> str:
    return f"{conversation_id}:{source_key}"


@dataclass
class Hit:
    """A raw nearest-neighbour result from one (variant, index) query."""

    source_key: int
    display_text: str
    raw_score: float
    origin_index: str
    origin_query_index: int
    metadata: dict = field(default_factory=dict)


@dataclass
class FusedHit:
    """A deduplicated hit with its Reciprocal Rank Fusion score.

    ``contributing_queries`` lists every ``(query_index, origin_index)``
    list the hit appeared in, in the order they were fused.
    """

    source_key: int
    display_text: str
    raw_score: float
    origin_index: str
    origin_query_index: int
    fused_score: float = 0.0
    contributing_queries: list[tuple[int, str]] = field(default_factory=list)
    best_rank: int = 0
    rerank_score: float | None = None
    context_text: str | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def source_count(self) -> int:
        """Number of distinct (variant, index) lists that surfaced this hit."""
        return len(set(self.contributing_queries))

    @property
    def query_indices(self) -> list[int]:
        return sorted({q for q, _ in self.contributing_queries})


class ConfidenceLevel(IntEnum):
    """Ordered verdicts, so comparisons express 'at least as confident'."""

    NONE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3


@dataclass(frozen=True)
class Confidence:
    level: ConfidenceLevel
    reason: str


@dataclass
class RetrievalResult:
    """Answer of ``Retrieve``: ranked hits plus the confidence verdict."""

    hits: list[FusedHit]
    confidence: Confidence
    variants: list[str] = field(default_factory=list)

    @property
    def insufficient_grounding(self) -> bool:
        """True when the caller should refuse or hedge instead of answering."""
        return self.confidence.level == ConfidenceLevel.NONE

    def format_context(self, max_hits: int | None = None) -> str:
        """Render hits as a context block for a downstream generation step."""
        if self.insufficient_grounding:
            return ""
        hits = self.hits if max_hits is None else self.hits[:max_hits]
        blocks = []
        for number, hit in enumerate(hits, start=1):
            body = hit.context_text or hit.display_text
            blocks.append(f"[{number}] ({hit.origin_index} {hit.source_key})\n{body}")
        return "\n\n".join(blocks)


@dataclass(frozen=True)
class IndexingStats:
    total: int
    indexed: int
    pending: int
