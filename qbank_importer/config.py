from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path

CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.json"

DEFAULTS = {
    "db_path": "qbank.db",
    "llm_provider": "azure",
    "llm_model": "gpt-4o-mini",
    "ollama_url": "http://localhost:11434",
    "azure_endpoint": "",
    "azure_deployment": "",
    "azure_api_version": "2024-08-01-preview",
    "ai_batch_size": 5,
    "ai_concurrency": 10,
    "ai_single_mode": False,
    "ai_fast_mode": True,
    "ai_max_halving_depth": 4,
    "ai_batch_attempts": 2,
    "session_ttl_seconds": 1800,
    "sweep_interval_seconds": 300,
    "stream_interval_seconds": 1.0,
    "progress_every_rows": 25,
    "commit_chunk_size": 1000,
    "transaction_max_wait_seconds": 30,
    "transaction_timeout_seconds": 600,
    "max_text_length": 1000,
    "max_answer_length": 500,
}

LLM_PROVIDERS = ("azure", "openai", "anthropic", "ollama")


@dataclass
class Settings:
    db_path: str = DEFAULTS["db_path"]
    llm_provider: str = DEFAULTS["llm_provider"]
    llm_model: str = DEFAULTS["llm_model"]
    ollama_url: str = DEFAULTS["ollama_url"]
    azure_endpoint: str = DEFAULTS["azure_endpoint"]
    azure_deployment: str = DEFAULTS["azure_deployment"]
    azure_api_version: str = DEFAULTS["azure_api_version"]
    ai_batch_size: int = DEFAULTS["ai_batch_size"]
    ai_concurrency: int = DEFAULTS["ai_concurrency"]
    ai_single_mode: bool = DEFAULTS["ai_single_mode"]
    ai_fast_mode: bool = DEFAULTS["ai_fast_mode"]
    ai_max_halving_depth: int = DEFAULTS["ai_max_halving_depth"]
    ai_batch_attempts: int = DEFAULTS["ai_batch_attempts"]
    session_ttl_seconds: int = DEFAULTS["session_ttl_seconds"]
    sweep_interval_seconds: int = DEFAULTS["sweep_interval_seconds"]
    stream_interval_seconds: float = DEFAULTS["stream_interval_seconds"]
    progress_every_rows: int = DEFAULTS["progress_every_rows"]
    commit_chunk_size: int = DEFAULTS["commit_chunk_size"]
    transaction_max_wait_seconds: float = DEFAULTS["transaction_max_wait_seconds"]
    transaction_timeout_seconds: float = DEFAULTS["transaction_timeout_seconds"]
    max_text_length: int = DEFAULTS["max_text_length"]
    max_answer_length: int = DEFAULTS["max_answer_length"]

    @property
    def project_root(self) -> Path:
        return Path(__file__).resolve().parent.parent

    @property
    def db_full_path(self) -> Path:
        return self.project_root / self.db_path

    @property
    def effective_batch_size(self) -> int:
        return 1 if self.ai_single_mode else max(1, self.ai_batch_size)

    @property
    def effective_concurrency(self) -> int:
        return 1 if self.ai_single_mode else max(1, self.ai_concurrency)

    @property
    def azure_configured(self) -> bool:
        endpoint = os.environ.get("AZURE_OPENAI_ENDPOINT") or self.azure_endpoint
        deployment = os.environ.get("AZURE_OPENAI_CHAT_DEPLOYMENT") or self.azure_deployment
        return bool(endpoint and deployment and os.environ.get("AZURE_OPENAI_API_KEY"))

    def to_dict(self) -> dict:
        return asdict(self)


def known_fields() -> set[str]:
    return {f.name for f in fields(Settings)}


def load_settings() -> Settings:
    if CONFIG_PATH.exists():
        raw = json.loads(CONFIG_PATH.read_text())
        known = known_fields()
        filtered = {k: v for k, v in raw.items() if k in known}
        return Settings(**filtered)
    return Settings()


def save_settings(settings: Settings) -> None:
    CONFIG_PATH.write_text(json.dumps(settings.to_dict(), indent=4) + "\n")
