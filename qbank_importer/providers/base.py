from __future__ import annotations

from abc import ABC, abstractmethod


class LLMProvider(ABC):
    @abstractmethod
    async def generate(self, prompt: str, temperature: float = 0.2, system: str | None = None) -> str:
        """Return the completion text for *prompt* (expected to be a JSON document)."""
        ...

    @abstractmethod
    def name(self) -> str:
        ...
