"""
NoteX Backend — Abstract LLM Service Interface
================================================

What:  Abstract base class for text-generation providers.
Why:   The AI job runner only needs "prompt in, text out". Keeping the
       provider behind this interface lets tests hand the runner a fake and
       keeps Gemini specifics (SDK, retries, circuit breaker) in one module.
"""

from abc import ABC, abstractmethod


class LLMService(ABC):
    """
    Contract:
        - generate_text() accepts a prompt and returns the model's text
        - Implementations handle their own retry logic and error translation
        - Provider errors surface as LLMServiceError / CircuitBreakerOpenError
    """

    @abstractmethod
    async def generate_text(self, prompt: str) -> str:
        """
        Run a single-turn generation.

        Returns:
            The generated text, stripped. Never None.

        Raises:
            LLMServiceError: When the provider fails after all retries.
            CircuitBreakerOpenError: When recent failures opened the circuit.
        """
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Lightweight connectivity test used by GET /health."""
        ...
