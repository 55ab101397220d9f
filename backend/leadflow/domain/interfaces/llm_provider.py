"""
LLM Provider Interface
Abstract base class for adaptive text-generation providers
"""
from abc import ABC, abstractmethod
from typing import Optional


class LLMProvider(ABC):
    """Abstract base class for Language Model providers"""

    @abstractmethod
    async def initialize(self, config: dict) -> None:
        """Initialize the provider with configuration"""
        pass

    @abstractmethod
    async def generate(
        self,
        system_prompt: str,
        prompt: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> str:
        """
        Generate a single completion.

        Args:
            system_prompt: System instructions
            prompt: User prompt (conversation history, task)
            temperature: Randomness override
            max_tokens: Max response length override

        Returns:
            Generated text
        """
        pass

    @abstractmethod
    async def cleanup(self) -> None:
        """Release resources"""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name"""
        pass
