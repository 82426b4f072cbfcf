"""Tests for card digests: summary, key facts and lazy recomputation."""

from dataclasses import replace

from conftest import make_card

from cardrecall.digest import build_digest, extract_key_facts, refresh_digests
from cardrecall.text import content_hash


class TestExtractKeyFacts:
    def test_splits_on_sentence_punctuation(self):
        facts = extract_key_facts("The hero wakes. He finds a sword! Is it cursed?")
        assert facts == ("The hero wakes", "He finds a sword", "Is it cursed")

    def test_skips_short_fragments(self):
        assert extract_key_facts("Hi. The castle burns.") == ("The castle burns",)

    def test_caps_fact_count(self):
        text = ". ".join(f"sentence number {i}" for i in range(10))
        assert len(extract_key_facts(text)) == 4

    def test_falls_back_to_whole_text(self):
        assert extract_key_facts("war") == ("war",)

    def test_empty_text_has_no_facts(self):
        assert extract_key_facts("   ") == ()

    def test_facts_are_clamped(self):
        facts = extract_key_facts("x" * 100, fact_length=20)
        assert len(facts[0]) <= 20


class TestBuildDigest:
    def test_digest_fields(self):
        card = make_card("c1", "  The hero wakes. He finds a sword.  ")
        digest = build_digest(card)
        assert digest.card_id == "c1"
        assert digest.content_hash == content_hash(card.content)
        assert digest.short_summary == "The hero wakes. He finds a sword."

    def test_unchanged_card_returns_cached_object(self):
        card = make_card("c1", "The hero wakes.")
        cached = build_digest(card)
        # A sentinel that would be lost on recomputation
        sentinel = replace(cached, short_summary="SENTINEL")
        again = build_digest(card, sentinel)
        assert again is sentinel
        assert again.short_summary == "SENTINEL"

    def test_whitespace_only_edit_is_not_a_change(self):
        card = make_card("c1", "The hero wakes.")
        cached = build_digest(card)
        assert build_digest(replace(card, content="The hero wakes.\n\n"), cached) is cached

    def test_changed_card_recomputed(self):
        card = make_card("c1", "The hero wakes.")
        cached = build_digest(card)
        fresh = build_digest(replace(card, content="The hero sleeps."), cached)
        assert fresh is not cached
        assert fresh.short_summary == "The hero sleeps."

    def test_summary_length_respected(self):
        card = make_card("c1", "word " * 100)
        assert len(build_digest(card, summary_length=50).short_summary) <= 50


class TestRefreshDigests:
    def test_skips_hidden_cards_and_keeps_input(self):
        cards = [
            make_card("a", "visible card text"),
            make_card("b", "archived card text", is_archived=True),
            make_card("c", "floating card text", is_floating=True),
        ]
        cache = {}
        result = refresh_digests(cards, cache)
        assert set(result) == {"a"}
        assert cache == {}

    def test_reuses_valid_entries(self):
        cards = [make_card("a", "visible card text")]
        first = refresh_digests(cards, {})
        second = refresh_digests(cards, first)
        assert second["a"] is first["a"]
