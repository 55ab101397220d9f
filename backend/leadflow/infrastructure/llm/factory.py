"""
LLM Provider Factory
"""
from typing import Dict, Type

from leadflow.domain.interfaces.llm_provider import LLMProvider
from leadflow.infrastructure.llm.groq import GroqLLMProvider


class LLMFactory:
    """Factory for creating LLM provider instances"""

    _providers: Dict[str, Type[LLMProvider]] = {}

    @classmethod
    def create(cls, provider_name: str) -> LLMProvider:
        """Create an uninitialized LLM provider instance"""
        if provider_name not in cls._providers:
            available = ", ".join(cls._providers.keys()) if cls._providers else "None"
            raise ValueError(f"Unknown LLM provider: {provider_name}. Available: {available}")

        return cls._providers[provider_name]()

    @classmethod
    def register(cls, name: str, provider_class: Type[LLMProvider]) -> None:
        cls._providers[name] = provider_class

    @classmethod
    def list_providers(cls) -> list[str]:
        return list(cls._providers.keys())


LLMFactory.register("groq", GroqLLMProvider)
