"""
Gemini provider over the Generative Language REST API.

Embeds documents and queries (``embedContent`` / ``batchEmbedContents``)
and generates chat answers (``generateContent``). The API key is sent in
the ``x-goog-api-key`` header, never in the URL.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import quote

import httpx

from ..errors import (
    BlockedResponseError,
    MalformedResponseError,
    MissingCredentialError,
    ProviderError,
    ProviderTimeout,
    UnknownModelError,
)
from ..types import TokenUsage
from .base import GenerationResult, get_registry

logger = logging.getLogger(__name__)

BASE_URL = "https://generativelanguage.googleapis.com"
API_VERSIONS = ("v1beta", "v1")
DEFAULT_TIMEOUT = 70.0
DEFAULT_CHAT_MODEL = "gemini-3-pro-preview"

_MODEL_ALIASES = {
    "gemini-3-pro": "gemini-3-pro-preview",
    "gemini-3.0-pro": "gemini-3-pro-preview",
    "gemini-3-pro-latest": "gemini-3-pro-preview",
    "gemini-3-flash-latest": "gemini-3-flash",
}


def normalize_model_id(raw: str) -> str:
    """Map known aliases to the served model ID; strip a ``models/`` prefix."""
    model = raw.strip()
    if model.startswith("models/"):
        model = model[len("models/"):]
    return _MODEL_ALIASES.get(model.lower(), model)


def should_retry_with_next_version(status_code: int, message: str, attempt: int, total: int) -> bool:
    """Whether an API error means "try the next API version" rather than "fail"."""
    if attempt >= total - 1:
        return False
    lowered = message.lower()
    if status_code == 404:
        return True
    if status_code == 400 and "unsupported" in lowered:
        return True
    return "api version" in lowered


def parse_error_message(resp) -> str:
    """Extract ``error.message`` from an API error envelope, else the raw body."""
    try:
        message = resp.json().get("error", {}).get("message")
    except (ValueError, AttributeError):
        message = None
    if message:
        return message
    return resp.text or "unknown error"


class GeminiProvider:
    """Embedding and generation provider for Gemini models."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: str = BASE_URL,
        api_versions: tuple[str, ...] = API_VERSIONS,
        timeout: float = DEFAULT_TIMEOUT,
        max_output_tokens: Optional[int] = None,
    ):
        key = (api_key or "").strip()
        if not key:
            raise MissingCredentialError()
        self._api_versions = tuple(api_versions) or API_VERSIONS
        self._max_output_tokens = max_output_tokens
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={
                "x-goog-api-key": key,
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    # -- transport ----------------------------------------------------------

    def _post(self, model: str, method: str, payload: dict, timeout: Optional[float]) -> dict:
        """POST to ``/{version}/models/{model}:{method}``, falling back across API versions."""
        path_model = quote(model, safe="")
        total = len(self._api_versions)
        last_error: Optional[ProviderError] = None

        for attempt, version in enumerate(self._api_versions):
            kwargs = {"json": payload}
            if timeout is not None:
                kwargs["timeout"] = timeout
            try:
                resp = self._client.post(f"/{version}/models/{path_model}:{method}", **kwargs)
            except httpx.TimeoutException as e:
                raise ProviderTimeout(f"Gemini request timed out: {e}") from e
            except httpx.HTTPError as e:
                raise ProviderError(f"Gemini request failed: {e}") from e

            if not 200 <= resp.status_code < 300:
                message = parse_error_message(resp)
                if should_retry_with_next_version(resp.status_code, message, attempt, total):
                    logger.info("Gemini %s unavailable on %s (%d), trying next version",
                                method, version, resp.status_code)
                    last_error = ProviderError(message, resp.status_code)
                    continue
                if resp.status_code == 404:
                    raise ProviderError(
                        f"Gemini API error (404): {message} Choose a different model.",
                        resp.status_code,
                    )
                raise ProviderError(f"Gemini API error ({resp.status_code}): {message}", resp.status_code)

            try:
                return resp.json()
            except ValueError as e:
                raise MalformedResponseError(f"Gemini returned invalid JSON: {e}") from e

        raise last_error or MalformedResponseError("Gemini returned no response")

    @staticmethod
    def _resolve_model(model: str, default: Optional[str] = None) -> str:
        resolved = normalize_model_id(model or "")
        if not resolved:
            if default is None:
                raise UnknownModelError("Model name is empty.")
            resolved = default
        return resolved

    # -- embeddings ---------------------------------------------------------

    @staticmethod
    def _embed_request(text: str, model: str, task_type: str) -> dict:
        return {
            "model": f"models/{model}",
            "content": {"parts": [{"text": text}]},
            "taskType": task_type,
        }

    def embed(
        self,
        text: str,
        *,
        model: str,
        task_type: str,
        timeout: Optional[float] = None,
    ) -> list[float]:
        resolved = self._resolve_model(model)
        data = self._post(resolved, "embedContent", self._embed_request(text, resolved, task_type), timeout)
        values = (data.get("embedding") or {}).get("values")
        if not values:
            raise MalformedResponseError("Gemini returned an empty embedding")
        return [float(v) for v in values]

    def embed_batch(
        self,
        texts: list[str],
        *,
        model: str,
        task_type: str,
        timeout: Optional[float] = None,
    ) -> list[list[float]]:
        if not texts:
            return []
        resolved = self._resolve_model(model)
        payload = {"requests": [self._embed_request(t, resolved, task_type) for t in texts]}
        data = self._post(resolved, "batchEmbedContents", payload, timeout)
        embeddings = data.get("embeddings") or []
        if len(embeddings) != len(texts):
            raise MalformedResponseError(
                f"Embedding count mismatch: sent {len(texts)}, got {len(embeddings)}"
            )
        return [[float(v) for v in (e.get("values") or [])] for e in embeddings]

    # -- generation ---------------------------------------------------------

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
        resolved = self._resolve_model(model, DEFAULT_CHAT_MODEL)
        generation_config: dict = {"responseMimeType": "text/plain"}
        if temperature is not None:
            generation_config["temperature"] = temperature
        if top_p is not None:
            generation_config["topP"] = top_p
        limit = max_tokens if max_tokens is not None else self._max_output_tokens
        if limit is not None:
            generation_config["maxOutputTokens"] = limit

        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }
        data = self._post(resolved, "generateContent", payload, timeout)

        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise BlockedResponseError(block_reason)

        candidates = data.get("candidates") or []
        first = candidates[0] if candidates else {}
        parts = (first.get("content") or {}).get("parts") or []
        text = "\n".join(p["text"] for p in parts if p.get("text")).strip()

        metadata = data.get("usageMetadata") or {}
        usage = TokenUsage(
            prompt_tokens=int(metadata.get("promptTokenCount", 0)),
            output_tokens=int(metadata.get("candidatesTokenCount", 0)),
            total_tokens=int(metadata.get("totalTokenCount", 0)),
        ).clamped()
        return GenerationResult(text=text, finish_reason=first.get("finishReason"), usage=usage)

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()


get_registry().register("gemini", GeminiProvider)
