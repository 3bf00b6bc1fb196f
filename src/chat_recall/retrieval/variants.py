"""Query variant generation for multi-query retrieval."""

import asyncio

from chat_recall.logging import get_logger, truncate_for_log
from chat_recall.providers.llm import Completer
from chat_recall.providers.llm_utils import parse_llm_json_array
from chat_recall.retrieval.fusion import normalize_text

logger = get_logger("variants")

VARIANT_SYSTEM_PROMPT = """You rewrite search queries for a group chat history.

Produce {count} alternative phrasings of the user's query. Each phrasing
must look for the same information in different words:
- use synonyms and paraphrases
- add spelling variants of names and nicknames
- include the way people actually write in chats (short forms, slang)
- for "who is X" questions, phrase the expected ANSWER ("<name> is X"),
  not the question

Reply ONLY with a JSON array of strings, no prose:
["variant 1", "variant 2"]"""


def keyword_variants(question: str) -> list[str]:
    """Deterministic variants from the question's significant words."""
    words = [w for w in question.split() if len(w) > 3]
    if len(words) < 2:
        return []
    head = words[:3]
    return [" ".join(head), " ".join(reversed(head))]


class QueryExpander:
    """Produces up to ``count`` query variants, the original question first.

    With a completer the alternatives come from the LLM; without one, or
    when the LLM fails, keyword variants are used instead.
    """

    def __init__(self, completer: Completer | None = None) -> None:
        self._completer = completer

    async def expand(self, question: str, count: int) -> list[str]:
        variants = [question]
        if count <= 1:
            return variants

        candidates: list[str] = []
        if self._completer is not None:
            try:
                candidates = await self._generate(question, count - 1)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Variant generation failed, using keywords: error=%s", e)
                candidates = []
        if not candidates:
            candidates = keyword_variants(question)

        seen = {normalize_text(question)}
        for candidate in candidates:
            key = normalize_text(candidate)
            if not key or key in seen:
                continue
            seen.add(key)
            variants.append(candidate.strip())
            if len(variants) >= count:
                break

        logger.debug(
            "Expanded query: question=%s variants=%d",
            truncate_for_log(question),
            len(variants),
        )
        return variants

    async def _generate(self, question: str, count: int) -> list[str]:
        raw = await self._completer.complete(
            VARIANT_SYSTEM_PROMPT.format(count=count),
            question,
            temperature=0.7,
        )
        items = parse_llm_json_array(raw)
        if not items:
            return []
        return [item for item in items if isinstance(item, str) and item.strip()]
