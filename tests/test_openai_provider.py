"""Tests for the OpenAI provider with a mocked SDK client."""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

pytest.importorskip("openai")

from cardrecall.errors import MalformedResponseError, MissingCredentialError
from cardrecall.providers.base import FINISH_MAX_TOKENS, RETRIEVAL_DOCUMENT
from cardrecall.providers.openai import OpenAIProvider


@pytest.fixture
def provider():
    with patch("openai.OpenAI") as MockOpenAI:
        client = MagicMock()
        MockOpenAI.return_value = client
        yield OpenAIProvider("sk-test"), client


def completion(text, finish_reason="stop", usage=(10, 5, 15)):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text), finish_reason=finish_reason)],
        usage=SimpleNamespace(prompt_tokens=usage[0], completion_tokens=usage[1], total_tokens=usage[2]),
    )


class TestOpenAIProvider:
    def test_requires_key(self, monkeypatch):
        monkeypatch.delenv("CARDRECALL_OPENAI_API_KEY", raising=False)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(MissingCredentialError):
            OpenAIProvider()

    def test_embed_batch_in_index_order(self, provider):
        p, client = provider
        client.embeddings.create.return_value = SimpleNamespace(data=[
            SimpleNamespace(index=1, embedding=[2.0]),
            SimpleNamespace(index=0, embedding=[1.0]),
        ])
        vectors = p.embed_batch(["a", "b"], model="text-embedding-3-small", task_type=RETRIEVAL_DOCUMENT)
        assert vectors == [[1.0], [2.0]]

    def test_count_mismatch(self, provider):
        p, client = provider
        client.embeddings.create.return_value = SimpleNamespace(data=[SimpleNamespace(index=0, embedding=[1.0])])
        with pytest.raises(MalformedResponseError):
            p.embed_batch(["a", "b"], model="m", task_type=RETRIEVAL_DOCUMENT)

    def test_length_finish_is_truncation(self, provider):
        p, client = provider
        client.chat.completions.create.return_value = completion("partial", "length")
        result = p.generate("prompt", model="gpt-4.1-mini", temperature=0.95, max_tokens=100)
        assert result.finish_reason == FINISH_MAX_TOKENS
        assert result.truncated
        assert result.usage.total_tokens == 15
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["max_tokens"] == 100
        assert kwargs["temperature"] == 0.95

    def test_reasoning_models_use_completion_tokens(self, provider):
        p, client = provider
        client.chat.completions.create.return_value = completion("done")
        p.generate("prompt", model="gpt-5-mini", temperature=0.95, max_tokens=100)
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["max_completion_tokens"] == 100
        assert "temperature" not in kwargs
