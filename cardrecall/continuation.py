"""
Generation with continuation for length-truncated answers.

When the model stops at its output token limit, it is asked to continue
from the tail of what it has written so far. Chunks are merged by
stripping the part of the new chunk that repeats the end of the old one.
"""

import logging
import time
from typing import Optional

from .cancellation import check
from .config import GenerationConfig
from .errors import MalformedResponseError, ProviderTimeout
from .types import ChatResponse, TokenUsage

logger = logging.getLogger(__name__)

CONTINUATION_INSTRUCTIONS = """[Important]
The previous output was cut off by the length limit.
Below is the end of the answer written so far.
\"\"\"
{tail}
\"\"\"
Continue from the sentence right after it.
- Do not repeat what was already written
- Do not restart numbering from the beginning
- No apologies or meta commentary"""


def merge_continuation(
    existing: str,
    incoming: str,
    *,
    max_overlap: int = 280,
    min_overlap: int = 20,
    min_word_overlap: int = 8,
) -> str:
    """
    Append ``incoming`` to ``existing`` without repeating their overlap.

    Scans from the longest candidate overlap (``max_overlap``) down to
    ``min_overlap`` for a suffix of ``existing`` equal to a prefix of
    ``incoming``. Shorter overlaps down to ``min_word_overlap`` are also
    accepted when they start at a word boundary on both sides. An overlap
    is cut from ``incoming`` and the rest appended directly; without one
    the chunks are joined by a newline.
    """
    left = existing.strip()
    right = incoming.strip()
    if not left:
        return right
    if not right:
        return left

    limit = min(max_overlap, len(left), len(right))
    overlap = 0
    for length in range(limit, min_overlap - 1, -1):
        if left[-length:] == right[:length]:
            overlap = length
            break

    if not overlap:
        for length in range(min(limit, min_overlap - 1), min_word_overlap - 1, -1):
            if left[-length:] != right[:length]:
                continue
            starts_word = length == len(left) or not left[-length - 1].isalnum()
            ends_word = length == len(right) or not right[length].isalnum()
            if starts_word and ends_word:
                overlap = length
                break

    if overlap:
        remainder = right[overlap:]
        return left + remainder if remainder else left
    return f"{left}\n{right}"


def continuation_prompt(original_prompt: str, partial_response: str, tail_chars: int = 1400) -> str:
    tail = partial_response[-tail_chars:]
    return f"{original_prompt}\n\n{CONTINUATION_INSTRUCTIONS.format(tail=tail)}"


class ContinuationHandler:
    """
    Drives a generation provider until the answer is complete.

    Up to ``max_chunks`` calls in total. Each call gets two attempts with
    increasing timeouts; only a timeout is retried. Token usage is summed
    over every chunk.
    """

    def __init__(self, provider, config: Optional[GenerationConfig] = None, *, sleep=time.sleep):
        self._provider = provider
        self._config = config or GenerationConfig()
        self._sleep = sleep

    def _generate_chunk(self, prompt: str, model: str, cancel):
        timeouts = list(self._config.attempt_timeouts) or [None]
        for attempt, timeout in enumerate(timeouts):
            check(cancel)
            try:
                return self._provider.generate(
                    prompt,
                    model=model,
                    timeout=timeout,
                    temperature=self._config.temperature,
                    top_p=self._config.top_p,
                )
            except ProviderTimeout as e:
                if attempt >= len(timeouts) - 1:
                    raise
                logger.info("Generation timed out after %ss, retrying: %s", timeout, e)
                self._sleep(self._config.retry_delay)
        raise MalformedResponseError("No generation attempt was made")

    def generate(self, prompt: str, model: str, cancel=None) -> ChatResponse:
        """
        Raises:
            Cancelled: If cancelled before any call; nothing partial is returned
            MalformedResponseError: If the merged answer is empty
            ProviderError: If a chunk fails for a reason other than one timeout
        """
        merged = ""
        usage = TokenUsage()
        chunks = 0
        next_prompt = prompt

        while True:
            check(cancel)
            result = self._generate_chunk(next_prompt, model, cancel)
            merged = merge_continuation(
                merged,
                result.text,
                max_overlap=self._config.max_overlap,
                min_overlap=self._config.min_overlap,
                min_word_overlap=self._config.min_word_overlap,
            )
            usage.add(result.usage)
            chunks += 1

            if not result.truncated or chunks >= self._config.max_chunks:
                break
            logger.info("Answer truncated at chunk %d, requesting continuation", chunks)
            next_prompt = continuation_prompt(prompt, merged, self._config.tail_chars)

        final = merged.strip()
        if not final:
            raise MalformedResponseError("The model returned an empty answer.")
        return ChatResponse(text=final, usage=usage, chunks=chunks)
