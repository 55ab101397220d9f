"""
Groq LLM Provider Implementation
Fast inference using Groq LPU architecture

Outreach messages are short and should stay on-message, so defaults
favour a low temperature and a modest token budget.
"""
import os
from typing import Optional

from groq import AsyncGroq

from leadflow.domain.interfaces.llm_provider import LLMProvider


class GroqLLMProvider(LLMProvider):
    """
    Groq LLM provider

    Recommended models:
    - llama-3.3-70b-versatile: best quality/speed balance
    - llama-3.1-8b-instant: fastest, fine for routing advice
    """

    # Stop sequences prevent the model from writing the lead's side
    DEFAULT_STOP_SEQUENCES = ["Lead:", "LEAD:"]

    def __init__(self):
        self._client: Optional[AsyncGroq] = None
        self._config: dict = {}
        self._model: str = "llama-3.3-70b-versatile"
        self._temperature: float = 0.4
        self._max_tokens: int = 600

    async def initialize(self, config: dict) -> None:
        """Initialize Groq client with configuration"""
        self._config = config
        api_key = config.get("api_key") or os.getenv("GROQ_API_KEY")

        if not api_key:
            raise ValueError("Groq API key not found in config or environment")

        self._client = AsyncGroq(api_key=api_key)

        self._model = config.get("model", self._model)
        self._temperature = config.get("temperature", self._temperature)
        self._max_tokens = config.get("max_tokens", self._max_tokens)

    async def generate(
        self,
        system_prompt: str,
        prompt: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> str:
        """
        Single non-streaming chat completion.

        Per Groq docs, use temperature OR top_p; top_p stays at 1.0.
        """
        if not self._client:
            raise RuntimeError("Groq client not initialized. Call initialize() first.")

        temperature = temperature if temperature is not None else self._temperature
        max_tokens = max_tokens if max_tokens is not None else self._max_tokens

        if not 0.0 <= temperature <= 2.0:
            raise ValueError(f"Temperature must be between 0.0 and 2.0, got {temperature}")

        try:
            completion = await self._client.chat.completions.create(
                model=kwargs.get("model", self._model),
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
                top_p=kwargs.get("top_p", 1.0),
                stop=kwargs.get("stop", self.DEFAULT_STOP_SEQUENCES),
                seed=kwargs.get("seed", None),
            )
        except Exception as e:
            raise RuntimeError(f"Groq completion failed: {str(e)}") from e

        if not completion.choices:
            raise RuntimeError("Groq completion returned no choices")
        return (completion.choices[0].message.content or "").strip()

    async def cleanup(self) -> None:
        """Release resources"""
        if self._client:
            await self._client.close()
            self._client = None

    @property
    def name(self) -> str:
        return "groq"
