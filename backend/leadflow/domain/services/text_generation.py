"""
Text Generation Service
Adaptive text capability behind the "llm" circuit breaker.
"""
import logging
from typing import Optional

from leadflow.domain.interfaces.llm_provider import LLMProvider
from leadflow.domain.services.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

FALLBACK_TEXT = (
    "Thanks for your message! A member of our team will follow up with you shortly."
)


class TextGenerationService:
    """
    Thin wrapper that routes provider calls through a breaker.

    When no provider is configured, or the breaker is open, the
    deterministic FALLBACK_TEXT is returned.
    """

    def __init__(
        self,
        provider: Optional[LLMProvider],
        breaker: CircuitBreaker,
        fallback_text: str = FALLBACK_TEXT
    ):
        self._provider = provider
        self._breaker = breaker
        self.fallback_text = fallback_text

    @property
    def is_available(self) -> bool:
        return self._provider is not None

    async def generate(self, system_prompt: str, prompt: str, **kwargs) -> str:
        if self._provider is None:
            logger.debug("No LLM provider configured, using fallback text")
            return self.fallback_text

        return await self._breaker.call(
            lambda: self._provider.generate(system_prompt, prompt, **kwargs),
            fallback=self.fallback_text,
        )

    async def close(self) -> None:
        if self._provider is not None:
            await self._provider.cleanup()
