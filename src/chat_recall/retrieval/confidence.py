"""Confidence gate over a ranked hit list."""

from chat_recall.config import RetrievalConfig
from chat_recall.models import Confidence, ConfidenceLevel, FusedHit
from chat_recall.retrieval.fusion import rrf_contribution


class ConfidenceGate:
    """Turns a ranked list into a High/Medium/Low/None verdict.

    The best fused score is normalized against the maximum a hit could
    score with the number of variants issued (rank 0 in every variant's
    list). A top hit corroborated by two or more lists is High regardless
    of its score. The gate only reads the list.
    """

    def __init__(self, config: RetrievalConfig | None = None) -> None:
        self._config = config or RetrievalConfig()

    def max_score(self, variant_count: int) -> float:
        return max(1, variant_count) * rrf_contribution(0, self._config.rrf_k)

    def normalized_best(self, hits: list[FusedHit], variant_count: int) -> float:
        if not hits:
            return 0.0
        return min(1.0, hits[0].fused_score / self.max_score(variant_count))

    def evaluate(self, hits: list[FusedHit], variant_count: int) -> Confidence:
        cfg = self._config
        if not hits:
            return Confidence(ConfidenceLevel.NONE, "no results from any query variant")

        top = hits[0]
        normalized = self.normalized_best(hits, variant_count)

        if normalized >= cfg.high_threshold:
            return Confidence(ConfidenceLevel.HIGH, f"strong match (score {normalized:.2f})")
        if top.source_count >= 2:
            return Confidence(
                ConfidenceLevel.HIGH,
                f"top result found by {top.source_count} queries (score {normalized:.2f})",
            )
        if normalized >= cfg.medium_threshold:
            return Confidence(ConfidenceLevel.MEDIUM, f"moderate match (score {normalized:.2f})")
        if normalized >= cfg.low_threshold:
            return Confidence(ConfidenceLevel.LOW, f"weak match (score {normalized:.2f})")
        if len(hits) >= cfg.min_results_for_low:
            return Confidence(
                ConfidenceLevel.LOW,
                f"{len(hits)} weak results (score {normalized:.2f})",
            )
        return Confidence(ConfidenceLevel.NONE, f"no relevant results (score {normalized:.2f})")
