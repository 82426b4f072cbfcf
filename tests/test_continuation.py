"""Tests for continuation merging and the generation loop."""

import pytest

from conftest import ScriptedGenerationProvider, cut_off, done

from cardrecall.cancellation import CancellationToken
from cardrecall.config import GenerationConfig
from cardrecall.continuation import ContinuationHandler, continuation_prompt, merge_continuation
from cardrecall.errors import Cancelled, MalformedResponseError, ProviderError, ProviderTimeout


class TestMergeContinuation:
    def test_short_word_overlap(self):
        merged = merge_continuation("...the hero opened the", "opened the door slowly.")
        assert merged.endswith("the hero opened the door slowly.")
        assert merged.count("opened the") == 1

    def test_long_overlap_removed(self):
        existing = "The storm broke over the harbor while the fleet waited"
        incoming = "over the harbor while the fleet waited for dawn."
        assert merge_continuation(existing, incoming) == (
            "The storm broke over the harbor while the fleet waited for dawn."
        )

    def test_no_overlap_joined_by_newline(self):
        assert merge_continuation("First part.", "Second part.") == "First part.\nSecond part."

    def test_short_overlap_inside_word_ignored(self):
        # "ered the" matches but starts mid-word, so it is not an overlap
        assert merge_continuation("he wandered the", "ered the hall") == "he wandered the\nered the hall"

    def test_full_repeat_absorbed(self):
        assert merge_continuation("the door slowly opened", "slowly opened") == "the door slowly opened"

    def test_empty_sides(self):
        assert merge_continuation("", "  new  ") == "new"
        assert merge_continuation(" old ", "") == "old"


class TestContinuationPrompt:
    def test_contains_original_and_tail(self):
        prompt = continuation_prompt("ORIGINAL", "a" * 2000 + "TAIL", tail_chars=10)
        assert prompt.startswith("ORIGINAL\n\n")
        assert "aaaaaaTAIL" in prompt
        assert "a" * 11 + "TAIL" not in prompt


class TestContinuationHandler:
    def handler(self, responses, **config):
        provider = ScriptedGenerationProvider(responses)
        sleeps = []
        handler = ContinuationHandler(
            provider, GenerationConfig(retry_delay=0.5, **config), sleep=sleeps.append,
        )
        return handler, provider, sleeps

    def test_single_complete_answer(self):
        handler, provider, _ = self.handler([done("The villain wants the crown.")])
        response = handler.generate("prompt", "model")
        assert response.text == "The villain wants the crown."
        assert response.chunks == 1
        assert len(provider.prompts) == 1

    def test_truncated_answer_continued_and_merged(self):
        handler, provider, _ = self.handler([
            cut_off("...the hero opened the", 10, 5),
            done("opened the door slowly.", 20, 7),
        ])
        response = handler.generate("prompt", "model")
        assert response.text.endswith("the hero opened the door slowly.")
        assert response.chunks == 2
        assert response.usage.prompt_tokens == 30
        assert response.usage.output_tokens == 12
        assert response.usage.total_tokens == 42
        assert provider.prompts[1].startswith("prompt\n\n[Important]")
        assert "...the hero opened the" in provider.prompts[1]

    def test_call_ceiling(self):
        handler, provider, _ = self.handler([cut_off(f"part {i} of the answer") for i in range(10)])
        response = handler.generate("prompt", "model")
        assert len(provider.prompts) == 4
        assert response.chunks == 4
        assert response.text.count("of the answer") == 4

    def test_timeout_retried_once_with_longer_timeout(self):
        handler, provider, sleeps = self.handler([ProviderTimeout("slow"), done("answer")])
        response = handler.generate("prompt", "model")
        assert response.text == "answer"
        assert provider.timeouts == [75.0, 120.0]
        assert sleeps == [0.5]

    def test_second_timeout_surfaces(self):
        handler, _, _ = self.handler([ProviderTimeout("slow"), ProviderTimeout("slower")])
        with pytest.raises(ProviderTimeout):
            handler.generate("prompt", "model")

    def test_other_errors_not_retried(self):
        handler, provider, _ = self.handler([ProviderError("bad request", 400), done("never")])
        with pytest.raises(ProviderError):
            handler.generate("prompt", "model")
        assert len(provider.prompts) == 1

    def test_empty_answer_is_malformed(self):
        handler, _, _ = self.handler([done("   ")])
        with pytest.raises(MalformedResponseError):
            handler.generate("prompt", "model")

    def test_cancel_stops_further_calls(self):
        token = CancellationToken()

        class CancelAfterFirst(ScriptedGenerationProvider):
            def generate(self, prompt, **kwargs):
                result = super().generate(prompt, **kwargs)
                token.cancel()
                return result

        provider = CancelAfterFirst([cut_off("first chunk"), done("second chunk")])
        handler = ContinuationHandler(provider, GenerationConfig(), sleep=lambda s: None)
        with pytest.raises(Cancelled):
            handler.generate("prompt", "model", cancel=token)
        assert len(provider.prompts) == 1
