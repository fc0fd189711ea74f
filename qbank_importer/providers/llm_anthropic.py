from __future__ import annotations

import logging
import os
import time

from qbank_importer.providers.base import LLMProvider

log = logging.getLogger("qbank_importer.llm")


class AnthropicProvider(LLMProvider):
    def __init__(self, model: str = "claude-sonnet-4-20250514", max_tokens: int = 8000):
        import anthropic
        self.client = anthropic.AsyncAnthropic(
            api_key=os.environ.get("ANTHROPIC_API_KEY", ""),
            timeout=120.0,
        )
        self.model = model
        self.max_tokens = max_tokens

    async def generate(self, prompt: str, temperature: float = 0.2, system: str | None = None) -> str:
        kwargs = {}
        if system:
            kwargs["system"] = system
        log.info("── PROMPT (%s, %d chars) ──", self.model, len(prompt))
        t0 = time.monotonic()
        message = await self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=temperature,
            messages=[{"role": "user", "content": prompt}],
            **kwargs,
        )
        log.info("── RESPONSE (%.1fs, %s tokens) ──", time.monotonic() - t0, message.usage.output_tokens)
        return "".join(block.text for block in message.content if block.type == "text")

    def name(self) -> str:
        return f"anthropic/{self.model}"
