"""Text completion through Anthropic, shared by the judge and the query expander."""

from typing import Protocol

import anthropic

from chat_recall.config import LLMConfig
from chat_recall.errors import classify_provider_error
from chat_recall.logging import get_logger

logger = get_logger("llm")


class Completer(Protocol):
    async def complete(self, system: str, prompt: str, temperature: float = 0.0) -> str: ...


class AnthropicCompleter:
    """Single-turn completions against the Anthropic Messages API."""

    def __init__(self, config: LLMConfig, client: anthropic.AsyncAnthropic | None = None) -> None:
        self._config = config
        self._client = client or anthropic.AsyncAnthropic(
            api_key=config.anthropic_api_key,
            timeout=config.timeout_seconds,
            max_retries=0,
        )

    @property
    def model(self) -> str:
        return self._config.model

    async def complete(self, system: str, prompt: str, temperature: float = 0.0) -> str:
        try:
            response = await self._client.messages.create(
                model=self._config.model,
                max_tokens=self._config.max_tokens,
                system=system,
                temperature=temperature,
                messages=[{"role": "user", "content": prompt}],
            )
        except Exception as e:
            classified = classify_provider_error(e)
            if classified is e:
                raise
            raise classified from e

        text = "".join(block.text for block in response.content if getattr(block, "type", "") == "text")
        logger.debug(
            "Completion received: model=%s input_tokens=%s output_tokens=%s",
            self._config.model,
            getattr(response.usage, "input_tokens", None),
            getattr(response.usage, "output_tokens", None),
        )
        return text.strip()
