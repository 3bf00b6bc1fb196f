"""Reciprocal Rank Fusion over per-variant, per-index hit lists."""

import re

from chat_recall.models import FusedHit, Hit

DEFAULT_RRF_K = 60

_WHITESPACE_RE = re.compile(r"\s+")
_ZERO_WIDTH = str.maketrans("", "", "\u200b\u200c\u200d\ufeff")
_PUNCTUATION = str.maketrans({
    "\u00a0": " ",
    "\u2013": "-",
    "\u2014": "-",
    "\u2212": "-",
    "\u2018": "'",
    "\u2019": "'",
    "\u201c": '"',
    "\u201d": '"',
    "\u2026": "...",
})


def normalize_text(text: str | None) -> str:
    """Canonical form used to recognise the same text across lists.

    Drops zero-width characters, folds typographic punctuation to ASCII,
    collapses whitespace and casefolds.
    """
    if not text or not text.strip():
        return ""
    text = text.translate(_ZERO_WIDTH).translate(_PUNCTUATION)
    return _WHITESPACE_RE.sub(" ", text).strip().casefold()


def dedup_key(hit: Hit) -> tuple[str, ...]:
    normalized = normalize_text(hit.display_text)
    if normalized:
        return ("text", normalized)
    return ("key", hit.origin_index, str(hit.source_key))


def filter_near_duplicates(hits: list[Hit], threshold: float) -> list[Hit]:
    """Drop hits that are near-verbatim echoes of the query."""
    return [hit for hit in hits if hit.raw_score < threshold]


def rrf_contribution(rank: int, k: int = DEFAULT_RRF_K) -> float:
    """Score of a hit at 0-based ``rank`` within one list."""
    return 1.0 / (k + rank + 1)


def apply_rrf_fusion(result_lists: list[list[Hit]], k: int = DEFAULT_RRF_K) -> list[FusedHit]:
    """Merge ranked hit lists into one deduplicated list.

    Each list holds the hits of one (query variant, index) pair, best
    first. A hit's fused score is the sum of ``1 / (k + rank + 1)`` over
    every list it appears in. The display text of the first occurrence
    wins; the highest raw similarity is kept.

    Ordering is fused score descending, then the earliest contributing
    query index, then the best rank reached in any list, then the order
    in which hits were first seen. The same input always yields the same
    output.

    Args:
        result_lists: Hit lists in (query index, index) order
        k: RRF damping constant

    Returns:
        Fused hits, best first
    """
    fused: dict[tuple[str, ...], FusedHit] = {}

    for hits in result_lists:
        for rank, hit in enumerate(hits):
            contribution = rrf_contribution(rank, k)
            key = dedup_key(hit)
            existing = fused.get(key)
            if existing is None:
                fused[key] = FusedHit(
                    source_key=hit.source_key,
                    display_text=hit.display_text,
                    raw_score=hit.raw_score,
                    origin_index=hit.origin_index,
                    origin_query_index=hit.origin_query_index,
                    fused_score=contribution,
                    contributing_queries=[(hit.origin_query_index, hit.origin_index)],
                    best_rank=rank,
                    metadata=dict(hit.metadata),
                )
                continue

            existing.fused_score += contribution
            existing.contributing_queries.append((hit.origin_query_index, hit.origin_index))
            existing.best_rank = min(existing.best_rank, rank)
            existing.raw_score = max(existing.raw_score, hit.raw_score)

    # dicts keep insertion order, and sorted() is stable, so first-seen breaks the last tie
    return sorted(
        fused.values(),
        key=lambda h: (-h.fused_score, min(q for q, _ in h.contributing_queries), h.best_rank),
    )
