from __future__ import annotations

import logging
import os
import time

from qbank_importer.providers.base import LLMProvider

log = logging.getLogger("qbank_importer.llm")


class OpenAIProvider(LLMProvider):
    def __init__(self, model: str = "gpt-4o-mini", max_tokens: int = 8000):
        import openai
        self.client = openai.AsyncOpenAI(
            api_key=os.environ.get("OPENAI_API_KEY", ""),
            timeout=120.0,
        )
        self.model = model
        self.max_tokens = max_tokens

    async def generate(self, prompt: str, temperature: float = 0.2, system: str | None = None) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        log.info("── PROMPT (%s, %d chars) ──", self.model, len(prompt))
        t0 = time.monotonic()
        resp = await self.client.chat.completions.create(
            model=self.model,
            temperature=temperature,
            max_tokens=self.max_tokens,
            response_format={"type": "json_object"},
            messages=messages,
        )
        usage = resp.usage.completion_tokens if resp.usage else "?"
        log.info("── RESPONSE (%.1fs, %s tokens) ──", time.monotonic() - t0, usage)
        return resp.choices[0].message.content or ""

    def name(self) -> str:
        return f"openai/{self.model}"
