"""Judge-based reordering of the top fused hits."""

import asyncio

from chat_recall.logging import get_logger, truncate_for_log
from chat_recall.models import FusedHit
from chat_recall.providers.judge import MAX_GRADE, RelevanceJudge

logger = get_logger("reranker")


class Reranker:
    """Reorders the top ``top_k`` hits by blending fused score with a judge grade.

    The output always holds exactly the input hits. When the judge fails
    or its answer does not fit the candidates, the input order is returned.
    """

    def __init__(self, judge: RelevanceJudge, top_k: int = 10, weight: float = 0.5) -> None:
        self._judge = judge
        self._top_k = top_k
        self._weight = weight

    async def rerank(self, question: str, hits: list[FusedHit]) -> list[FusedHit]:
        if len(hits) < 2 or self._top_k < 2:
            return list(hits)

        head = hits[:self._top_k]
        tail = hits[self._top_k:]

        try:
            grades = await self._judge.grade(question, [h.context_text or h.display_text for h in head])
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Rerank failed, keeping fused order: error=%s", e)
            return list(hits)

        if len(grades) != len(head) or not all(
            isinstance(g, int) and not isinstance(g, bool) and 0 <= g <= MAX_GRADE for g in grades
        ):
            logger.warning("Rerank returned unusable grades, keeping fused order: grades=%s", grades)
            return list(hits)

        max_fused = max(h.fused_score for h in head) or 1.0
        for hit, grade in zip(head, grades):
            hit.rerank_score = (
                self._weight * (hit.fused_score / max_fused)
                + (1.0 - self._weight) * (grade / MAX_GRADE)
            )

        reordered = sorted(head, key=lambda h: -h.rerank_score)
        logger.info(
            "Reranked hits: question=%s candidates=%d grades=%s",
            truncate_for_log(question, 30),
            len(head),
            grades,
        )
        return reordered + tail
