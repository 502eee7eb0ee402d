"""Completion and embedding capabilities.

Usage:
    from src.services.llm import get_completer, get_embedder

    completer = get_completer()
    embedder = get_embedder()
    vectors = await embedder.embed_many(["caderno a4 pautado"])
"""
from src.config import LLMBackendType, llm_settings
from src.services.llm.client import LLMConfig, OllamaClient
from src.services.llm.completer import (
    CategoryChoice,
    CategoryProfile,
    Completer,
    NullCompleter,
    OllamaCompleter,
    extract_attributes_with_degrade,
)
from src.services.llm.embedder import Embedder, HashingEmbedder, OllamaEmbedder
from src.services.llm.retry import RetryPolicy


def get_completer() -> Completer:
    """Completer for the configured backend."""
    if llm_settings.backend == LLMBackendType.OLLAMA:
        return OllamaCompleter(OllamaClient(LLMConfig.from_settings()))
    return NullCompleter()


def get_embedder() -> Embedder:
    """Embedder for the configured backend."""
    if llm_settings.backend == LLMBackendType.OLLAMA:
        return OllamaEmbedder(
            OllamaClient(LLMConfig.from_settings()),
            dimensions=llm_settings.embedding_dimensions,
        )
    return HashingEmbedder(llm_settings.embedding_dimensions)


__all__ = [
    "LLMConfig",
    "OllamaClient",
    "CategoryChoice",
    "CategoryProfile",
    "Completer",
    "NullCompleter",
    "OllamaCompleter",
    "extract_attributes_with_degrade",
    "Embedder",
    "HashingEmbedder",
    "OllamaEmbedder",
    "RetryPolicy",
    "get_completer",
    "get_embedder",
]
