"""
Provider implementations for cardrecall.

Providers are registered with the registry on import.
Use get_registry() to access them.
"""

from .base import (
    RETRIEVAL_DOCUMENT,
    RETRIEVAL_QUERY,
    EmbeddingProvider,
    GenerationProvider,
    GenerationResult,
    ProviderRegistry,
    embed_with_fallback,
    get_registry,
)

__all__ = [
    "RETRIEVAL_DOCUMENT",
    "RETRIEVAL_QUERY",
    "EmbeddingProvider",
    "GenerationProvider",
    "GenerationResult",
    "ProviderRegistry",
    "embed_with_fallback",
    "get_registry",
]
