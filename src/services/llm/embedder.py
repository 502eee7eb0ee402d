"""Embedding capability.

``Embedder.embed_many`` returns one vector per input text, in input order,
all of ``dimensions`` length.
"""
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence
import math
import structlog

from src.errors.exceptions import CapabilityError
from src.services.extraction.text import fnv1a_32, tokenize
from src.services.llm.client import OllamaClient

logger = structlog.get_logger(__name__)


class Embedder(ABC):
    """Embedding service contract."""

    dimensions: int

    @abstractmethod
    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed ``texts`` preserving order."""

    async def close(self) -> None:
        return None


def _l2_normalize(values: List[float]) -> List[float]:
    norm = math.sqrt(sum(value * value for value in values))
    if norm == 0:
        return values
    return [value / norm for value in values]


class HashingEmbedder(Embedder):
    """Deterministic bag-of-tokens embedder.

    Each content token increments the bucket ``fnv1a(token) % dimensions``;
    the vector is L2-normalized. Needs no network and is stable across
    processes, so it doubles as the offline and degraded-mode embedder.
    """

    def __init__(self, dimensions: int = 256):
        self.dimensions = dimensions

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        return [self.embed_one(text) for text in texts]

    def embed_one(self, text: str) -> List[float]:
        vector = [0.0] * self.dimensions
        for token in tokenize(text):
            vector[fnv1a_32(token) % self.dimensions] += 1.0
        return _l2_normalize(vector)


class OllamaEmbedder(Embedder):
    """Embedder backed by the Ollama ``/api/embed`` endpoint."""

    def __init__(self, client: Optional[OllamaClient] = None, dimensions: int = 768, batch_size: int = 64):
        self._client = client or OllamaClient()
        self.dimensions = dimensions
        self._batch_size = batch_size
        self._log = logger.bind(component="OllamaEmbedder")

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        vectors: List[List[float]] = []
        for start in range(0, len(texts), self._batch_size):
            chunk = list(texts[start:start + self._batch_size])
            chunk_vectors = await self._client.embed(chunk)
            for vector in chunk_vectors:
                if len(vector) != self.dimensions:
                    raise CapabilityError(
                        f"Embedding dimension mismatch: expected {self.dimensions}, got {len(vector)}"
                    )
            vectors.extend(chunk_vectors)
        return vectors

    async def close(self) -> None:
        await self._client.close()
