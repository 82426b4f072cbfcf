"""
OpenAI provider for embeddings and chat generation.

Requires the optional ``openai`` library (``pip install cardrecall[openai]``).
OpenAI embeddings are symmetric, so the task type is accepted and ignored.
"""

import logging
import os
from typing import Optional

from ..errors import (
    MalformedResponseError,
    MissingCredentialError,
    ProviderError,
    ProviderTimeout,
    UnknownModelError,
)
from ..types import TokenUsage
from .base import FINISH_MAX_TOKENS, GenerationResult, get_registry

logger = logging.getLogger(__name__)


class OpenAIProvider:
    """
    Embedding and generation provider using OpenAI's API.

    Requires: api_key, or CARDRECALL_OPENAI_API_KEY / OPENAI_API_KEY.

    Default chat model is gpt-4.1-mini; GPT-5 and o-series models use
    ``max_completion_tokens`` and reject a custom temperature.
    """

    def __init__(self, api_key: Optional[str] = None, *, base_url: Optional[str] = None):
        try:
            from openai import OpenAI
        except ImportError:
            raise RuntimeError("OpenAIProvider requires 'openai' library")

        key = (api_key
               or os.environ.get("CARDRECALL_OPENAI_API_KEY")
               or os.environ.get("OPENAI_API_KEY"))
        if not key:
            raise MissingCredentialError(
                "OpenAI API key required. Set CARDRECALL_OPENAI_API_KEY or OPENAI_API_KEY"
            )
        self._client = OpenAI(api_key=key, base_url=base_url)

    @staticmethod
    def _call(fn, **kwargs):
        """Invoke an SDK call, mapping SDK errors to provider errors."""
        import openai

        try:
            return fn(**kwargs)
        except openai.APITimeoutError as e:
            raise ProviderTimeout(f"OpenAI request timed out: {e}") from e
        except openai.APIStatusError as e:
            raise ProviderError(f"OpenAI API error ({e.status_code}): {e.message}", e.status_code) from e
        except openai.APIError as e:
            raise ProviderError(f"OpenAI request failed: {e}") from e

    def embed(
        self,
        text: str,
        *,
        model: str,
        task_type: str,
        timeout: Optional[float] = None,
    ) -> list[float]:
        vectors = self.embed_batch([text], model=model, task_type=task_type, timeout=timeout)
        if not vectors or not vectors[0]:
            raise MalformedResponseError("OpenAI returned an empty embedding")
        return vectors[0]

    def embed_batch(
        self,
        texts: list[str],
        *,
        model: str,
        task_type: str,
        timeout: Optional[float] = None,
    ) -> list[list[float]]:
        if not model.strip():
            raise UnknownModelError("Model name is empty.")
        if not texts:
            return []
        response = self._call(
            self._client.embeddings.create, model=model.strip(), input=texts, timeout=timeout,
        )
        data = sorted(response.data, key=lambda d: d.index)
        if len(data) != len(texts):
            raise MalformedResponseError(
                f"Embedding count mismatch: sent {len(texts)}, got {len(data)}"
            )
        return [list(d.embedding) for d in data]

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
        if not model.strip():
            raise UnknownModelError("Model name is empty.")
        new_api = model.startswith(("gpt-5", "o3", "o4"))
        kwargs: dict = {
            "model": model.strip(),
            "messages": [{"role": "user", "content": prompt}],
            "timeout": timeout,
        }
        if max_tokens is not None:
            kwargs["max_completion_tokens" if new_api else "max_tokens"] = max_tokens
        if not new_api:
            if temperature is not None:
                kwargs["temperature"] = temperature
            if top_p is not None:
                kwargs["top_p"] = top_p

        response = self._call(self._client.chat.completions.create, **kwargs)
        if not response.choices:
            return GenerationResult(text="")
        choice = response.choices[0]
        finish_reason = FINISH_MAX_TOKENS if choice.finish_reason == "length" else choice.finish_reason

        usage = TokenUsage()
        if response.usage is not None:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens or 0,
                output_tokens=response.usage.completion_tokens or 0,
                total_tokens=response.usage.total_tokens or 0,
            ).clamped()
        return GenerationResult(
            text=(choice.message.content or "").strip(),
            finish_reason=finish_reason,
            usage=usage,
        )

    def close(self) -> None:
        self._client.close()


get_registry().register("openai", OpenAIProvider)
