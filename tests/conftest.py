"""
Shared pytest fixtures for cardrecall tests.

Provides deterministic mock providers so no test touches the network.
"""

from collections import Counter
from pathlib import Path

import pytest

from cardrecall.cards import InMemoryCardRepository
from cardrecall.config import WorkspaceConfig
from cardrecall.credentials import StaticCredentialStore
from cardrecall.errors import ProviderError
from cardrecall.providers.base import FINISH_MAX_TOKENS, GenerationResult
from cardrecall.text import search_tokens
from cardrecall.types import CardSnapshot, TokenUsage

STORY_VOCABULARY = ("hero", "castle", "villain", "revenge", "peace", "epilogue", "want", "the")


class KeywordEmbeddingProvider:
    """
    Deterministic mock embedding provider.

    Each vector counts the vocabulary words in the text, so similarity is
    predictable from the words two texts share.
    """

    def __init__(self, vocabulary=STORY_VOCABULARY, *, failing_models=()):
        self.vocabulary = tuple(vocabulary)
        self.failing_models = set(failing_models)
        self.embed_calls: list[tuple[str, str, str]] = []
        self.batch_calls: list[tuple[int, str, str]] = []

    def vector(self, text: str) -> list[float]:
        counts = Counter(search_tokens(text))
        return [float(counts[word]) for word in self.vocabulary]

    def embed(self, text, *, model, task_type, timeout=None):
        self.embed_calls.append((text, model, task_type))
        if model in self.failing_models:
            raise ProviderError(f"model {model} not found", 404)
        return self.vector(text)

    def embed_batch(self, texts, *, model, task_type, timeout=None):
        self.batch_calls.append((len(texts), model, task_type))
        if model in self.failing_models:
            raise ProviderError(f"model {model} not found", 404)
        return [self.vector(t) for t in texts]


class ScriptedGenerationProvider:
    """
    Mock generation provider returning queued results in order.

    Queue items are GenerationResult objects or exceptions to raise. An
    empty queue answers "ok".
    """

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.prompts: list[str] = []
        self.timeouts: list = []

    def generate(self, prompt, *, model, timeout=None, max_tokens=None, temperature=None, top_p=None):
        self.prompts.append(prompt)
        self.timeouts.append(timeout)
        item = self.responses.pop(0) if self.responses else GenerationResult(
            "ok", "STOP", TokenUsage(10, 2, 12),
        )
        if isinstance(item, BaseException):
            raise item
        return item


class MockProvider(KeywordEmbeddingProvider, ScriptedGenerationProvider):
    """Embedding and generation in one object, like the real providers."""

    def __init__(self, responses=None, **kwargs):
        KeywordEmbeddingProvider.__init__(self, **kwargs)
        ScriptedGenerationProvider.__init__(self, responses)


def done(text: str, prompt_tokens: int = 10, output_tokens: int = 5) -> GenerationResult:
    return GenerationResult(text, "STOP", TokenUsage(prompt_tokens, output_tokens, prompt_tokens + output_tokens))


def cut_off(text: str, prompt_tokens: int = 10, output_tokens: int = 5) -> GenerationResult:
    return GenerationResult(text, FINISH_MAX_TOKENS, TokenUsage(prompt_tokens, output_tokens, prompt_tokens + output_tokens))


def make_card(card_id: str, content: str, category: str = "plot", order_index: int = 0, **kwargs) -> CardSnapshot:
    return CardSnapshot(
        id=card_id,
        category=category,
        content=content,
        order_index=order_index,
        created_at=kwargs.pop("created_at", f"2026-01-01T00:00:0{order_index % 10}.000000Z"),
        **kwargs,
    )


@pytest.fixture
def story_cards() -> list[CardSnapshot]:
    """The three-card story used across retrieval tests."""
    return [
        make_card("hero", "a hero enters the castle", order_index=0),
        make_card("villain", "a villain plots revenge", order_index=1),
        make_card("epilogue", "epilogue: peace returns", order_index=2),
    ]


@pytest.fixture
def keyword_provider() -> KeywordEmbeddingProvider:
    return KeywordEmbeddingProvider()


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def workspace_config(tmp_path: Path) -> WorkspaceConfig:
    """Fresh config in a temp directory, with short save delays."""
    config = WorkspaceConfig(path=tmp_path / "ws")
    config.embedding_models = ["keyword-embed", "keyword-embed-backup"]
    config.chat_model = "scripted-chat"
    config.generation.retry_delay = 0
    return config


@pytest.fixture
def make_workspace(workspace_config, story_cards):
    """Factory for Workspace objects sharing one temp directory."""
    from cardrecall.engine import Workspace

    opened = []

    def factory(provider=None, cards=None, selection=None, api_key="test-key", config=None):
        repository = InMemoryCardRepository(story_cards if cards is None else cards, selection)
        ws = Workspace(
            config=config or workspace_config,
            cards=repository,
            credentials=StaticCredentialStore(api_key),
            provider=provider if provider is not None else MockProvider(),
        )
        opened.append(ws)
        return ws

    yield factory
    for ws in opened:
        ws.close()
