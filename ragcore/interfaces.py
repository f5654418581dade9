"""
Capability interfaces for the pluggable backends.

The retrieval core depends on these protocols only. Concrete clients live in
ragcore.embeddings and ragcore.generator and are picked at startup by the
provider factories; tests pass simple fakes.

- EmbeddingProvider.embed(texts) -> one vector per text, same order
- CompletionProvider.complete(system_prompt, prompt, temperature) -> text
"""

from __future__ import annotations

from typing import List, Protocol


class EmbeddingProvider(Protocol):
    def embed(self, texts: List[str]) -> List[List[float]]: ...


class CompletionProvider(Protocol):
    def complete(self, system_prompt: str, prompt: str, temperature: float) -> str: ...
