"""
Configuration settings for the ragcore retrieval engine.

All defaults live here and are handed to constructors explicitly, so nothing
in ragcore reads environment variables on its own.

PROVIDERS:
- ollama: Local inference server (default). No credentials needed.
- openai: Hosted OpenAI API. Needs OPENAI_API_KEY.
- azure: Azure OpenAI deployment. Needs AZURE_OPENAI_ENDPOINT and
  AZURE_OPENAI_API_KEY; model names are deployment names.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Provider(str, Enum):
    """Which backend serves embeddings and completions."""
    OLLAMA = "ollama"
    OPENAI = "openai"
    AZURE = "azure"


DEFAULT_PROVIDER = Provider.OLLAMA
DEFAULT_INDEX_PATH = "data/rag_index.json"
DEFAULT_DOCS_DIR = "docs"
DEFAULT_TOP_K = 4
DEFAULT_TEMPERATURE = 0.2

DEFAULT_OLLAMA_BASE_URL = "http://localhost:11434"
DEFAULT_AZURE_API_VERSION = "2024-02-15-preview"

DEFAULT_EMBEDDING_MODELS = {
    Provider.OLLAMA: "nomic-embed-text",
    Provider.OPENAI: "text-embedding-3-large",
    Provider.AZURE: "text-embedding",
}

DEFAULT_CHAT_MODELS = {
    Provider.OLLAMA: "llama3:8b",
    Provider.OPENAI: "gpt-4o-mini",
    Provider.AZURE: "gpt-4o",
}

DEFAULT_SYSTEM_PROMPT = (
    "You are an assistant that answers questions about the indexed documentation. "
    "Reply with concise, implementation-focused answers and cite the provided context snippets."
)

DEFAULT_CONSTRAINT_NOTE = (
    "Highlight platform-specific constraints (rate limits, launch phases, pilots) explicitly."
)


@dataclass
class ProviderConfig:
    """
    Backend selection plus the credentials and model names it needs.

    Credentials are only checked when a client is built, so an Ollama
    setup never needs an API key.
    """
    provider: Provider = DEFAULT_PROVIDER
    openai_api_key: Optional[str] = None
    azure_endpoint: Optional[str] = None
    azure_api_key: Optional[str] = None
    azure_api_version: str = DEFAULT_AZURE_API_VERSION
    ollama_base_url: str = DEFAULT_OLLAMA_BASE_URL
    embedding_model: Optional[str] = None
    chat_model: Optional[str] = None
    embedding_timeout: float = 60.0
    chat_timeout: Optional[float] = None     # None: per-provider default

    def __post_init__(self):
        if not isinstance(self.provider, Provider):
            self.provider = parse_provider(self.provider)

    def resolved_embedding_model(self) -> str:
        return self.embedding_model or DEFAULT_EMBEDDING_MODELS[self.provider]

    def resolved_chat_model(self) -> str:
        return self.chat_model or DEFAULT_CHAT_MODELS[self.provider]


@dataclass
class ChunkingConfig:
    """
    Window profile for bulk ingestion.

    - chunk_size: Characters (code points) per window
    - chunk_overlap: Characters shared by consecutive windows
    """
    chunk_size: int = 1200
    chunk_overlap: int = 0


@dataclass
class AddSourceConfig:
    """Window profile and pacing for appending a single ad hoc source."""
    chunk_size: int = 2000
    chunk_overlap: int = 400
    request_delay_seconds: float = 0.5


@dataclass
class BuildConfig:
    """
    Batching and retry schedule for embedding chunks.

    Backoff is linear: attempt N failing waits N * backoff_seconds before
    attempt N + 1 (1s, 2s, 3s, 4s with the defaults).
    """
    batch_size: int = 16
    max_attempts: int = 5
    backoff_seconds: float = 1.0
    batch_delay_seconds: float = 1.0


@dataclass
class RetrievalConfig:
    """Query-time defaults and the location of the on-disk index."""
    index_path: str = DEFAULT_INDEX_PATH
    top_k: int = DEFAULT_TOP_K
    temperature: float = DEFAULT_TEMPERATURE
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    constraint_note: str = DEFAULT_CONSTRAINT_NOTE


@dataclass
class IngestionConfig:
    """Where local documents are collected from."""
    docs_dir: str = DEFAULT_DOCS_DIR
    include_extensions: tuple = (".md", ".markdown", ".txt", ".pdf")


@dataclass
class Settings:
    """Main settings container, one group per concern."""
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    add_source: AddSourceConfig = field(default_factory=AddSourceConfig)
    build: BuildConfig = field(default_factory=BuildConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)


def parse_provider(value: Optional[str]) -> Provider:
    """Map a provider name to the enum, raising for anything unknown."""
    from ragcore.exceptions import ConfigurationError

    if not value:
        return DEFAULT_PROVIDER
    try:
        return Provider(value.strip().lower())
    except ValueError:
        supported = ", ".join(p.value for p in Provider)
        raise ConfigurationError(
            f"Unsupported provider '{value}'. Choose one of: {supported}."
        ) from None


def _int_env(key: str, fallback: int) -> int:
    raw = os.getenv(key)
    if not raw:
        return fallback
    try:
        return int(raw)
    except ValueError:
        return fallback


def _float_env(key: str, fallback: float) -> float:
    raw = os.getenv(key)
    if not raw:
        return fallback
    try:
        return float(raw)
    except ValueError:
        return fallback


def load_settings() -> Settings:
    """
    Load settings from environment variables.

    RECOGNIZED ENVIRONMENT VARIABLES:
    - RAG_PROVIDER: ollama (default), openai or azure
    - OPENAI_API_KEY
    - AZURE_OPENAI_ENDPOINT, AZURE_OPENAI_API_KEY, AZURE_OPENAI_API_VERSION
    - RAG_OLLAMA_BASE_URL
    - RAG_EMBEDDING_MODEL, RAG_CHAT_MODEL
    - RAG_INDEX_PATH, RAG_SYSTEM_PROMPT, RAG_DEFAULT_TOP_K, RAG_TEMPERATURE
    - RAG_DOCS_DIR

    Raises:
        ConfigurationError: If RAG_PROVIDER names an unsupported backend
    """
    provider = parse_provider(os.getenv("RAG_PROVIDER"))

    return Settings(
        provider=ProviderConfig(
            provider=provider,
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            azure_endpoint=os.getenv("AZURE_OPENAI_ENDPOINT") or None,
            azure_api_key=os.getenv("AZURE_OPENAI_API_KEY") or None,
            azure_api_version=os.getenv("AZURE_OPENAI_API_VERSION") or DEFAULT_AZURE_API_VERSION,
            ollama_base_url=os.getenv("RAG_OLLAMA_BASE_URL") or DEFAULT_OLLAMA_BASE_URL,
            embedding_model=os.getenv("RAG_EMBEDDING_MODEL") or None,
            chat_model=os.getenv("RAG_CHAT_MODEL") or None,
        ),
        chunking=ChunkingConfig(),
        add_source=AddSourceConfig(),
        build=BuildConfig(),
        retrieval=RetrievalConfig(
            index_path=os.getenv("RAG_INDEX_PATH") or DEFAULT_INDEX_PATH,
            top_k=_int_env("RAG_DEFAULT_TOP_K", DEFAULT_TOP_K),
            temperature=_float_env("RAG_TEMPERATURE", DEFAULT_TEMPERATURE),
            system_prompt=os.getenv("RAG_SYSTEM_PROMPT") or DEFAULT_SYSTEM_PROMPT,
        ),
        ingestion=IngestionConfig(
            docs_dir=os.getenv("RAG_DOCS_DIR") or DEFAULT_DOCS_DIR,
        ),
    )


# Singleton pattern - load settings once and reuse
_settings = None

def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Forget the cached settings so the next get_settings() reloads them."""
    global _settings
    _settings = None
