from __future__ import annotations

import asyncio
import logging
import os
import re
import time

import httpx

from qbank_importer.providers.base import LLMProvider

log = logging.getLogger("qbank_importer.llm")

RETRY_STATUSES = {408, 429, 500, 502, 503, 504}


class AzureOpenAIProvider(LLMProvider):
    """Azure OpenAI chat completions over plain REST.

    Network errors, timeouts, 429 and 5xx responses are retried up to
    *attempts* times with a linear backoff. Anything else raises
    ``httpx.HTTPStatusError`` straight away.
    """

    def __init__(
        self,
        endpoint: str = "",
        deployment: str = "",
        api_version: str = "2024-08-01-preview",
        max_tokens: int = 8000,
        attempts: int = 3,
        timeout: float = 120.0,
        backoff: float = 0.4,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        endpoint = os.environ.get("AZURE_OPENAI_ENDPOINT") or endpoint
        if endpoint and not re.match(r"^https?://", endpoint, re.IGNORECASE):
            endpoint = f"https://{endpoint}"
        self.endpoint = endpoint.rstrip("/")
        self.deployment = os.environ.get("AZURE_OPENAI_CHAT_DEPLOYMENT") or deployment
        self.api_version = os.environ.get("AZURE_OPENAI_API_VERSION") or api_version
        self.api_key = os.environ.get("AZURE_OPENAI_API_KEY", "")
        self.max_tokens = max_tokens
        self.attempts = max(1, attempts)
        self.timeout = timeout
        self.backoff = backoff
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.endpoint and self.deployment and self.api_key)

    @property
    def url(self) -> str:
        return (
            f"{self.endpoint}/openai/deployments/{self.deployment}"
            f"/chat/completions?api-version={self.api_version}"
        )

    def _body(self, prompt: str, temperature: float, system: str | None) -> dict:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        # json_object mode requires the word "json" somewhere in the messages
        if not any("json" in m["content"].lower() for m in messages):
            messages.insert(0, {"role": "system", "content": "Reply in json only. No prose."})
        return {
            "messages": messages,
            "temperature": temperature,
            "max_completion_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
        }

    async def generate(self, prompt: str, temperature: float = 0.2, system: str | None = None) -> str:
        if not self.configured:
            raise RuntimeError("Azure OpenAI is not configured")
        body = self._body(prompt, temperature, system)
        headers = {"api-key": self.api_key, "Content-Type": "application/json"}
        log.info("── PROMPT (%s, %d chars) ──", self.deployment, len(prompt))
        t0 = time.monotonic()
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            for attempt in range(1, self.attempts + 1):
                try:
                    resp = await client.post(self.url, json=body, headers=headers)
                    if resp.status_code in RETRY_STATUSES and attempt < self.attempts:
                        log.info("Azure %d, retrying (%d/%d)", resp.status_code, attempt, self.attempts)
                        await asyncio.sleep(self.backoff * attempt)
                        continue
                    resp.raise_for_status()
                    data = resp.json()
                    break
                except httpx.TransportError as e:
                    if attempt == self.attempts:
                        raise
                    log.info("Azure network error (%s), retrying (%d/%d)", e, attempt, self.attempts)
                    await asyncio.sleep(self.backoff * attempt)
        content = data["choices"][0]["message"].get("content") or ""
        usage = data.get("usage", {})
        log.info("── RESPONSE (%.1fs, %s tokens) ──",
                 time.monotonic() - t0, usage.get("completion_tokens", "?"))
        return content

    def name(self) -> str:
        return f"azure/{self.deployment}"
