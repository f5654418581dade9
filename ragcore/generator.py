"""
Generator Module

The "G" in RAG: assembles retrieved chunks into a grounded prompt and sends it
to a chat backend.

PROMPT LAYOUT:

    Context sections (most relevant to least):
    [1] Source: <title> (<uri>)
    <chunk text>

    [2] Source: ...

    Instructions:
    1. Use only the provided context sections.
    2. If the answer is not present, say you do not have that information.
    3. When relevant, cite the source title in parentheses.
    4. <domain constraint note>

    Question:
    <question, verbatim>

The system prompt (role and tone) travels separately as the system message.

BACKENDS:
- OpenAIChatClient: OpenAI or Azure OpenAI chat completions (45s timeout)
- OllamaChatClient: Local Ollama server, POST /api/chat (180s timeout)
"""

import logging
from typing import List, Optional

import requests
from openai import OpenAIError

from config.settings import DEFAULT_CONSTRAINT_NOTE, Provider, ProviderConfig
from ragcore.embeddings import build_openai_client
from ragcore.exceptions import CompletionError, ConfigurationError, ProviderError
from ragcore.interfaces import CompletionProvider
from ragcore.vector_store import SearchResult

logger = logging.getLogger(__name__)

OPENAI_CHAT_TIMEOUT = 45.0
OLLAMA_CHAT_TIMEOUT = 180.0
DEFAULT_MAX_TOKENS = 800


def build_context(matches: List[SearchResult]) -> str:
    """Render matches most-to-least relevant, each headed by its source."""
    parts = []
    for i, match in enumerate(matches, 1):
        parts.append(
            f"[{i}] Source: {match.chunk.source} ({match.chunk.uri})\n"
            f"{match.chunk.text}\n\n"
        )
    return "".join(parts)


def build_prompt(
    question: str,
    matches: List[SearchResult],
    constraint_note: str = DEFAULT_CONSTRAINT_NOTE
) -> str:
    """
    Build the user message: context, fixed instructions, then the question.

    Args:
        question: The user's question (inserted verbatim)
        matches: Search results, highest score first
        constraint_note: Domain-specific instruction appended as item 4
    """
    return (
        "Context sections (most relevant to least):\n"
        f"{build_context(matches)}"
        "Instructions:\n"
        "1. Use only the provided context sections.\n"
        "2. If the answer is not present, say you do not have that information.\n"
        "3. When relevant, cite the source title in parentheses.\n"
        f"4. {constraint_note}\n"
        "\nQuestion:\n"
        f"{question}"
    )


class OpenAIChatClient:
    """
    Chat completions through OpenAI or Azure OpenAI.

    For Azure, `model` is the deployment name.
    """

    def __init__(
        self,
        config: ProviderConfig,
        client=None,
        max_tokens: int = DEFAULT_MAX_TOKENS
    ):
        self.model = config.resolved_chat_model()
        self.max_tokens = max_tokens
        timeout = config.chat_timeout or OPENAI_CHAT_TIMEOUT
        self.client = client or build_openai_client(config, timeout=timeout)

    def complete(self, system_prompt: str, prompt: str, temperature: float) -> str:
        """
        Generate a completion for the prompt.

        Raises:
            ProviderError: If the API call fails
            CompletionError: If no content comes back
        """
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt}
                ],
                max_tokens=self.max_tokens,
                temperature=temperature
            )
        except OpenAIError as e:
            raise ProviderError(f"openai chat request failed: {e}") from e

        if not response.choices:
            raise CompletionError("no chat completion choices returned")

        content = response.choices[0].message.content
        if not content or not content.strip():
            raise CompletionError("no completion returned")
        return content


class OllamaChatClient:
    """Chat completions through a local Ollama server."""

    def __init__(
        self,
        base_url: str,
        model: str,
        timeout: float = OLLAMA_CHAT_TIMEOUT,
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.session = session or requests.Session()

    def complete(self, system_prompt: str, prompt: str, temperature: float) -> str:
        """
        Generate a completion through POST {base_url}/api/chat (non-streaming).

        Raises:
            ProviderError: On connection failure or HTTP >= 400
            CompletionError: If the response carries no content
        """
        url = f"{self.base_url}/api/chat"
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            "stream": False,
            "options": {"temperature": temperature},
        }
        logger.debug("Ollama chat request - model: %s, url: %s", self.model, url)

        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"ollama chat request failed: {e}") from e

        if response.status_code >= 400:
            raise ProviderError(
                f"ollama chat failed: {response.status_code} - {response.text}"
            )

        try:
            parsed = response.json()
        except ValueError as e:
            raise ProviderError(f"ollama chat returned invalid JSON: {e}") from e

        message = parsed.get("message") or {}
        content = (message.get("content") or parsed.get("response") or "").strip()
        if not content:
            raise CompletionError("no completion returned")
        return content


def create_completion_provider(config: ProviderConfig) -> CompletionProvider:
    """
    Build the chat client for the configured provider.

    Raises:
        ConfigurationError: For an unsupported provider or missing credentials
    """
    if config.provider == Provider.OLLAMA:
        return OllamaChatClient(
            base_url=config.ollama_base_url,
            model=config.resolved_chat_model(),
            timeout=config.chat_timeout or OLLAMA_CHAT_TIMEOUT,
        )
    if config.provider in (Provider.OPENAI, Provider.AZURE):
        return OpenAIChatClient(config)
    raise ConfigurationError(f"unsupported provider {config.provider}")
