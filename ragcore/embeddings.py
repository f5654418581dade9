"""
Embeddings Module

Turns text into vectors through one of the configured backends, and scores
vectors against each other with cosine similarity.

BACKENDS:
- OpenAIEmbeddingClient: OpenAI or Azure OpenAI through the openai SDK.
  Azure takes a deployment name where OpenAI takes a model name.
- OllamaEmbeddingClient: A local Ollama server, POST /api/embed.

Every client returns one vector per input text, in input order, with values
rounded to 32-bit float precision. An empty input returns [] without making
a request. Transport and API failures surface as ProviderError so the build
pipeline can retry them.

COSINE SIMILARITY:
    cos(a, b) = (a . b) / (|a| * |b|)

- 1.0 = same direction, 0.0 = orthogonal, -1.0 = opposite
- Vectors of different lengths (mixed models in one store) score 0.0 instead
  of raising, as do empty and zero-magnitude vectors.
"""

import logging
from typing import List, Optional, Sequence

import numpy as np
import requests
from openai import AzureOpenAI, OpenAI, OpenAIError

from config.settings import Provider, ProviderConfig
from ragcore.exceptions import ConfigurationError, ProviderError
from ragcore.interfaces import EmbeddingProvider

logger = logging.getLogger(__name__)


def to_float32(vector: Sequence[float]) -> List[float]:
    """Round a vector to 32-bit precision, returned as plain Python floats."""
    return np.asarray(vector, dtype=np.float32).tolist()


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """
    Calculate cosine similarity between two vectors.

    Returns 0.0 when either vector is empty, the lengths differ, or either
    magnitude is zero. The result is clamped to [-1, 1].

    EXAMPLE:
    [1, 0, 0] vs [1, 0, 0] -> 1.0
    [1, 0, 0] vs [0, 1, 0] -> 0.0
    [1, 0, 0] vs [1, 0]    -> 0.0 (dimension mismatch)
    """
    if vec1 is None or vec2 is None:
        return 0.0
    if len(vec1) == 0 or len(vec2) == 0 or len(vec1) != len(vec2):
        return 0.0

    a = np.asarray(vec1, dtype=np.float64)
    b = np.asarray(vec2, dtype=np.float64)

    magnitude_a = np.linalg.norm(a)
    magnitude_b = np.linalg.norm(b)

    if magnitude_a == 0 or magnitude_b == 0:
        return 0.0

    score = float(np.dot(a, b) / (magnitude_a * magnitude_b))
    return max(-1.0, min(1.0, score))


def build_openai_client(config: ProviderConfig, timeout: Optional[float] = None):
    """
    Create an OpenAI or AzureOpenAI SDK client from provider settings.

    Raises:
        ConfigurationError: If the credentials for the selected provider are missing
    """
    if config.provider == Provider.AZURE:
        if not config.azure_endpoint:
            raise ConfigurationError("AZURE_OPENAI_ENDPOINT is required for the azure provider")
        if not config.azure_api_key:
            raise ConfigurationError("AZURE_OPENAI_API_KEY is required for the azure provider")
        return AzureOpenAI(
            azure_endpoint=config.azure_endpoint,
            api_key=config.azure_api_key,
            api_version=config.azure_api_version,
            timeout=timeout,
        )

    if not config.openai_api_key:
        raise ConfigurationError("OPENAI_API_KEY is required for the openai provider")
    return OpenAI(api_key=config.openai_api_key, timeout=timeout)


class OpenAIEmbeddingClient:
    """
    Embedding client for OpenAI and Azure OpenAI.

    Pass `client` to reuse an existing SDK client (or a mock in tests);
    otherwise one is built from the provider settings.
    """

    def __init__(self, config: ProviderConfig, client=None):
        self.model = config.resolved_embedding_model()
        self.client = client or build_openai_client(config, timeout=config.embedding_timeout)

    def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a batch of texts in one request.

        Raises:
            ProviderError: If the API call fails
        """
        if not texts:
            return []

        try:
            response = self.client.embeddings.create(input=list(texts), model=self.model)
        except OpenAIError as e:
            raise ProviderError(f"openai embed request failed: {e}") from e

        # The API reports each vector's input position; order by it
        data = sorted(response.data, key=lambda item: item.index)
        return [to_float32(item.embedding) for item in data]


class OllamaEmbeddingClient:
    """Embedding client for a local Ollama server."""

    def __init__(
        self,
        base_url: str,
        model: str,
        timeout: float = 60.0,
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.session = session or requests.Session()

    def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings through POST {base_url}/api/embed.

        Accepts both the batch response shape {"embeddings": [[...], ...]}
        and the legacy single-vector shape {"embedding": [...]}.

        Raises:
            ProviderError: On connection failure, HTTP >= 400, or an empty response
        """
        if not texts:
            return []

        url = f"{self.base_url}/api/embed"
        try:
            response = self.session.post(
                url,
                json={"model": self.model, "input": list(texts)},
                timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"ollama embed request failed: {e}") from e

        if response.status_code >= 400:
            raise ProviderError(
                f"ollama embed failed: {response.status_code} - {response.text}"
            )

        try:
            parsed = response.json()
        except ValueError as e:
            raise ProviderError(f"ollama embed returned invalid JSON: {e}") from e

        embeddings = parsed.get("embeddings") or []
        if embeddings:
            return [to_float32(vector) for vector in embeddings]

        embedding = parsed.get("embedding") or []
        if embedding:
            return [to_float32(embedding)]

        raise ProviderError("ollama embed returned no embeddings")


def create_embedding_provider(config: ProviderConfig) -> EmbeddingProvider:
    """
    Build the embedding client for the configured provider.

    Raises:
        ConfigurationError: For an unsupported provider or missing credentials
    """
    if config.provider == Provider.OLLAMA:
        logger.info("Using Ollama embeddings (%s at %s)", config.resolved_embedding_model(), config.ollama_base_url)
        return OllamaEmbeddingClient(
            base_url=config.ollama_base_url,
            model=config.resolved_embedding_model(),
            timeout=config.embedding_timeout,
        )
    if config.provider in (Provider.OPENAI, Provider.AZURE):
        logger.info("Using %s embeddings (%s)", config.provider.value, config.resolved_embedding_model())
        return OpenAIEmbeddingClient(config)
    raise ConfigurationError(f"unsupported provider {config.provider}")
