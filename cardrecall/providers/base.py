"""
Base provider protocols.

These define the interfaces that concrete providers must implement.
Using Protocol for structural subtyping - no explicit inheritance required.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable

from ..errors import MalformedResponseError, ProviderError, UnknownModelError
from ..types import TokenUsage

logger = logging.getLogger(__name__)

# Task types: documents are embedded for storage, queries for lookup.
# Providers that support asymmetric embeddings must keep them distinct.
RETRIEVAL_DOCUMENT = "RETRIEVAL_DOCUMENT"
RETRIEVAL_QUERY = "RETRIEVAL_QUERY"

# Finish reason reported when output was cut at the token limit
FINISH_MAX_TOKENS = "MAX_TOKENS"

DEFAULT_BATCH_SIZE = 24


# -----------------------------------------------------------------------------
# Embedding Generation
# -----------------------------------------------------------------------------

@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Generates vector embeddings from text through a remote model.

    The same model must be used for indexing and querying; the embedding
    index records which model produced its vectors.

    Example implementation:
        class KeywordEmbedding:
            def embed(self, text, *, model, task_type, timeout=None):
                return [float(text.count(w)) for w in VOCAB]

            def embed_batch(self, texts, *, model, task_type, timeout=None):
                return [self.embed(t, model=model, task_type=task_type) for t in texts]
    """

    def embed(
        self,
        text: str,
        *,
        model: str,
        task_type: str,
        timeout: Optional[float] = None,
    ) -> list[float]:
        """
        Generate an embedding vector for the given text.

        Raises:
            ProviderError: On API failure
            ProviderTimeout: When the call timed out
        """
        ...

    def embed_batch(
        self,
        texts: list[str],
        *,
        model: str,
        task_type: str,
        timeout: Optional[float] = None,
    ) -> list[list[float]]:
        """
        Generate embeddings for multiple texts, one vector per input.
        """
        ...


# -----------------------------------------------------------------------------
# Text Generation
# -----------------------------------------------------------------------------

@dataclass
class GenerationResult:
    """One generation call's output."""
    text: str
    finish_reason: Optional[str] = None
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def truncated(self) -> bool:
        """True when the model stopped because it hit the output token limit."""
        return (self.finish_reason or "").upper() == FINISH_MAX_TOKENS


@runtime_checkable
class GenerationProvider(Protocol):
    """
    Sends a prompt to a remote language model.

    Implementations report truncation by setting ``finish_reason`` to
    ``"MAX_TOKENS"`` so the continuation handler can ask for more.
    """

    def generate(
        self,
        prompt: str,
        *,
        model: str,
        timeout: Optional[float] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
    ) -> GenerationResult:
        """
        Raises:
            ProviderTimeout: When the call timed out
            BlockedResponseError: When the provider refused the prompt
            ProviderError: On other API failures
        """
        ...


# -----------------------------------------------------------------------------
# Model fallback
# -----------------------------------------------------------------------------

def embed_with_fallback(
    provider: EmbeddingProvider,
    texts: list[str],
    *,
    task_type: str,
    models: list[str],
    batch_size: int = DEFAULT_BATCH_SIZE,
    timeout: Optional[float] = None,
) -> tuple[list[list[float]], str]:
    """
    Embed ``texts`` with the first model that succeeds.

    A single text goes through ``embed``; more are sent through
    ``embed_batch`` in chunks of at most ``batch_size``. Every chunk must
    come back with exactly one vector per input, otherwise that model is
    treated as failed.

    Returns:
        (vectors in input order, model name that produced them)

    Raises:
        UnknownModelError: If no model name is configured
        ProviderError: The last model's error when every model fails
    """
    candidates = [m.strip() for m in models if m and m.strip()]
    if not candidates:
        raise UnknownModelError("No embedding model is configured.")
    if not texts:
        return [], candidates[0]

    last_error: Optional[Exception] = None
    for model in candidates:
        try:
            if len(texts) == 1:
                vectors = [provider.embed(texts[0], model=model, task_type=task_type, timeout=timeout)]
            else:
                vectors = []
                for start in range(0, len(texts), max(batch_size, 1)):
                    chunk = texts[start:start + max(batch_size, 1)]
                    chunk_vectors = provider.embed_batch(
                        chunk, model=model, task_type=task_type, timeout=timeout,
                    )
                    if len(chunk_vectors) != len(chunk):
                        raise MalformedResponseError(
                            f"Embedding count mismatch: sent {len(chunk)}, got {len(chunk_vectors)}"
                        )
                    vectors.extend(chunk_vectors)
            return vectors, model
        except ProviderError as e:
            logger.info("Embedding with %s failed: %s", model, e)
            last_error = e

    assert last_error is not None
    raise last_error


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating providers.

    Providers are registered by name and instantiated from configuration,
    so the workspace TOML can name a provider without code changes.

    Example:
        registry = ProviderRegistry()
        registry.register("gemini", GeminiProvider)
        provider = registry.create("gemini", {"api_key": "..."})
    """

    def __init__(self):
        self._providers: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Lazily load provider modules so they can register themselves."""
        if self._lazy_loaded:
            return
        self._lazy_loaded = True
        # Imports only register classes; optional client libraries are
        # imported when a provider is instantiated
        from . import gemini  # noqa: F401
        from . import openai  # noqa: F401

    def register(self, name: str, provider_class: type) -> None:
        """Register a provider class under ``name``."""
        self._providers[name] = provider_class

    def create(self, name: str, params: Optional[dict] = None):
        """Create a provider instance (both embedding and generation)."""
        self._ensure_providers_loaded()
        if name not in self._providers:
            available = ", ".join(sorted(self._providers)) or "none"
            raise UnknownModelError(
                f"Unknown provider: '{name}'. Available providers: {available}."
            )
        try:
            return self._providers[name](**(params or {}))
        except ImportError as e:
            raise RuntimeError(
                f"Failed to create provider '{name}': {e}\n"
                f"Install required dependencies."
            ) from e

    def list_providers(self) -> list[str]:
        """List registered provider names."""
        self._ensure_providers_loaded()
        return sorted(self._providers)


# Global registry instance
# Concrete providers register themselves on import
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry
