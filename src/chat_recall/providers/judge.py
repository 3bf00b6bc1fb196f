"""Relevance judging for the reranker."""

import json
from typing import Protocol

from chat_recall.errors import MalformedResponseError
from chat_recall.logging import get_logger
from chat_recall.providers.llm import Completer
from chat_recall.providers.llm_utils import parse_llm_json_array

logger = get_logger("judge")

MAX_GRADE = 3

JUDGE_SYSTEM_PROMPT = """You grade how relevant chat excerpts are to a question.

The excerpts come from an informal group chat: slang, jokes and profanity
are ordinary vocabulary there. Judge by meaning, not by tone.

Grades:
- 3 = the excerpt answers the question directly or contains its key terms
- 2 = the excerpt is on the topic of the question
- 1 = the excerpt is loosely related
- 0 = the excerpt is unrelated

Reply ONLY with a JSON array of objects with "id" and "score", no prose:
[{"id": 0, "score": 3}, {"id": 1, "score": 1}]"""

MAX_CANDIDATE_CHARS = 300


class RelevanceJudge(Protocol):
    """Grades candidates against a question, one integer in [0, 3] per candidate."""

    async def grade(self, question: str, candidates: list[str]) -> list[int]: ...


def _truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def parse_grades(raw: str, expected: int) -> list[int]:
    """Parse judge output into one grade per candidate.

    Accepts either ``[{"id": i, "score": s}, ...]`` or a bare ``[s0, s1, ...]``.

    Raises:
        MalformedResponseError: If the output is not a JSON array, a grade is
            missing or not an integer, or a grade is outside [0, 3]
    """
    items = parse_llm_json_array(raw)
    if items is None:
        raise MalformedResponseError(f"Judge output is not a JSON array: {raw[:100]!r}")

    grades: dict[int, int] = {}
    for position, item in enumerate(items):
        if isinstance(item, dict):
            idx, score = item.get("id"), item.get("score")
        else:
            idx, score = position, item
        if not isinstance(idx, int) or isinstance(score, bool) or not isinstance(score, int):
            raise MalformedResponseError(f"Judge returned a non-integer entry: {item!r}")
        if not 0 <= score <= MAX_GRADE:
            raise MalformedResponseError(f"Judge grade out of range: {score}")
        grades[idx] = score

    if sorted(grades) != list(range(expected)):
        raise MalformedResponseError(
            f"Judge graded ids {sorted(grades)} but {expected} candidates were sent"
        )
    return [grades[i] for i in range(expected)]


class LLMRelevanceJudge:
    """Asks an LLM to grade candidates and validates the answer strictly."""

    def __init__(self, completer: Completer) -> None:
        self._completer = completer

    async def grade(self, question: str, candidates: list[str]) -> list[int]:
        if not candidates:
            return []

        documents = [
            {"id": i, "text": _truncate(text, MAX_CANDIDATE_CHARS)}
            for i, text in enumerate(candidates)
        ]
        prompt = (
            f"QUESTION: {question}\n\n"
            f"EXCERPTS:\n{json.dumps(documents, ensure_ascii=False, indent=2)}\n\n"
            "Grade every excerpt (0-3):"
        )
        raw = await self._completer.complete(JUDGE_SYSTEM_PROMPT, prompt, temperature=0.1)
        grades = parse_grades(raw, len(candidates))
        logger.debug("Judge graded candidates: count=%d grades=%s", len(grades), grades)
        return grades
