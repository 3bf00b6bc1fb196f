"""Tests for the confidence gate."""

import pytest

from chat_recall.config import RetrievalConfig
from chat_recall.models import MESSAGE_INDEX, WINDOW_INDEX, ConfidenceLevel, FusedHit
from chat_recall.retrieval.confidence import ConfidenceGate

K = 60
TOP = 1 / (K + 1)


def fused(score: float, sources: list[tuple[int, str]] | None = None) -> FusedHit:
    return FusedHit(
        source_key=1,
        display_text="x",
        raw_score=0.5,
        origin_index=MESSAGE_INDEX,
        origin_query_index=0,
        fused_score=score,
        contributing_queries=sources or [(0, MESSAGE_INDEX)],
    )


@pytest.fixture
def gate() -> ConfidenceGate:
    return ConfidenceGate(RetrievalConfig(rrf_k=K))


class TestEvaluate:
    def test_empty_is_none(self, gate: ConfidenceGate) -> None:
        confidence = gate.evaluate([], variant_count=3)

        assert confidence.level == ConfidenceLevel.NONE
        assert confidence.reason

    def test_high_on_normalized_score(self, gate: ConfidenceGate) -> None:
        """Rank 0 for one variant out of one is the maximum score."""
        confidence = gate.evaluate([fused(TOP)], variant_count=1)

        assert confidence.level == ConfidenceLevel.HIGH

    def test_high_on_multi_source_corroboration(self, gate: ConfidenceGate) -> None:
        """Two lists agreeing is High even when the score is modest."""
        hit = fused(0.1 * TOP, sources=[(0, MESSAGE_INDEX), (0, WINDOW_INDEX)])

        confidence = gate.evaluate([hit], variant_count=3)

        assert confidence.level == ConfidenceLevel.HIGH
        assert "2" in confidence.reason

    def test_same_list_twice_is_not_corroboration(self, gate: ConfidenceGate) -> None:
        hit = fused(0.1 * TOP, sources=[(0, MESSAGE_INDEX), (0, MESSAGE_INDEX)])

        assert gate.evaluate([hit], variant_count=3).level == ConfidenceLevel.NONE

    @pytest.mark.parametrize(
        ("normalized", "expected"),
        [
            (0.75, ConfidenceLevel.HIGH),
            (0.5, ConfidenceLevel.MEDIUM),
            (0.25, ConfidenceLevel.LOW),
            (0.1, ConfidenceLevel.NONE),
        ],
    )
    def test_bands(self, gate: ConfidenceGate, normalized: float, expected: ConfidenceLevel) -> None:
        confidence = gate.evaluate([fused(normalized * 2 * TOP)], variant_count=2)

        assert confidence.level == expected

    def test_many_weak_results_are_low(self, gate: ConfidenceGate) -> None:
        hits = [fused(0.05 * TOP) for _ in range(5)]

        assert gate.evaluate(hits, variant_count=3).level == ConfidenceLevel.LOW

    def test_monotonic_in_best_score(self, gate: ConfidenceGate) -> None:
        """Raising the best score never lowers the level."""
        levels = [
            gate.evaluate([fused(step / 100 * 3 * TOP)], variant_count=3).level
            for step in range(0, 121, 5)
        ]

        assert levels == sorted(levels)

    def test_does_not_mutate_hits(self, gate: ConfidenceGate) -> None:
        hits = [fused(0.02), fused(0.01)]
        before = [(h.fused_score, h.rerank_score) for h in hits]

        gate.evaluate(hits, variant_count=3)

        assert [(h.fused_score, h.rerank_score) for h in hits] == before

    def test_normalized_best_clamped(self, gate: ConfidenceGate) -> None:
        assert gate.normalized_best([fused(10.0)], variant_count=1) == 1.0
