from __future__ import annotations

import logging
import time

import httpx

from qbank_importer.providers.base import LLMProvider

log = logging.getLogger("qbank_importer.llm")


class OllamaProvider(LLMProvider):
    def __init__(self, base_url: str = "http://localhost:11434", model: str = "qwen3:8b"):
        self.base_url = base_url.rstrip("/")
        self.model = model

    async def generate(self, prompt: str, temperature: float = 0.2, system: str | None = None) -> str:
        log.info("── PROMPT (%s, %d chars) ──", self.model, len(prompt))
        t0 = time.monotonic()
        body: dict = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "think": False,
            "options": {"temperature": temperature},
        }
        if system:
            body["system"] = system
        async with httpx.AsyncClient(timeout=120.0) as client:
            resp = await client.post(f"{self.base_url}/api/generate", json=body)
            resp.raise_for_status()
            data = resp.json()
        elapsed = time.monotonic() - t0
        response = data["response"]
        log.info("── RESPONSE (%.1fs, %s tokens) ──", elapsed, data.get("eval_count", "?"))
        return response

    def name(self) -> str:
        return f"ollama/{self.model}"
