"""Tests for the per-workspace embedding index."""

import json
from dataclasses import replace

import pytest

from conftest import KeywordEmbeddingProvider, make_card

from cardrecall.cancellation import CancellationToken
from cardrecall.embedding_index import EmbeddingIndex, clipped_embedding_input, newest_first
from cardrecall.errors import Cancelled, MalformedResponseError, ProviderError
from cardrecall.providers.base import RETRIEVAL_DOCUMENT
from cardrecall.text import content_hash
from cardrecall.types import EmbeddingRecord


def record(card_id: str, updated_at: str, vector=(1.0, 0.0), content="x") -> EmbeddingRecord:
    return EmbeddingRecord(card_id, content_hash(content), tuple(vector), updated_at)


class TestStaleness:
    def test_missing_record_is_stale(self):
        index = EmbeddingIndex()
        assert index.is_stale(make_card("a", "text"))

    def test_matching_hash_is_fresh(self):
        index = EmbeddingIndex()
        index.put(record("a", "2026-01-01T00:00:00.000000Z", content="text"))
        assert not index.is_stale(make_card("a", "  text  "))

    def test_changed_content_is_stale(self):
        index = EmbeddingIndex()
        index.put(record("a", "2026-01-01T00:00:00.000000Z", content="text"))
        assert index.is_stale(make_card("a", "new text"))

    def test_empty_vector_is_stale(self):
        index = EmbeddingIndex()
        index.put(record("a", "2026-01-01T00:00:00.000000Z", vector=(), content="text"))
        assert index.is_stale(make_card("a", "text"))

    def test_dimension_mismatch_is_stale(self):
        index = EmbeddingIndex()
        index.put(record("a", "2026-01-01T00:00:00.000000Z", vector=(1.0, 0.0), content="a"))
        index.put(record("b", "2026-01-01T00:00:00.000000Z", vector=(1.0, 0.0), content="b"))
        index.put(record("c", "2026-01-01T00:00:00.000000Z", vector=(1.0, 0.0, 0.0), content="c"))
        assert index.dimension == 2
        assert index.is_stale(make_card("c", "c"))

    def test_hidden_cards_never_listed_stale(self):
        index = EmbeddingIndex()
        cards = [make_card("a", "text"), make_card("b", "text", is_archived=True)]
        assert [c.id for c in index.stale_cards(cards)] == ["a"]


class TestRefresh:
    def test_refresh_makes_cards_fresh(self, story_cards, keyword_provider):
        index = EmbeddingIndex(model="keyword-embed")
        model = index.refresh(story_cards, keyword_provider, models=["keyword-embed"])
        assert model == "keyword-embed"
        assert all(not index.is_stale(card) for card in story_cards)
        assert keyword_provider.batch_calls == [(3, "keyword-embed", RETRIEVAL_DOCUMENT)]

    def test_nothing_stale_means_no_call(self, story_cards, keyword_provider):
        index = EmbeddingIndex(model="keyword-embed")
        index.refresh(story_cards, keyword_provider, models=["keyword-embed"])
        assert index.refresh(story_cards, keyword_provider, models=["keyword-embed"]) is None
        assert len(keyword_provider.batch_calls) == 1

    def test_only_changed_card_reembedded(self, story_cards, keyword_provider):
        index = EmbeddingIndex(model="keyword-embed")
        index.refresh(story_cards, keyword_provider, models=["keyword-embed"])
        edited = [replace(story_cards[0], content="the hero leaves the castle"), *story_cards[1:]]
        index.refresh(edited, keyword_provider, models=["keyword-embed"])
        # A single stale card goes through embed, not embed_batch
        assert len(keyword_provider.embed_calls) == 1
        assert keyword_provider.embed_calls[0][0].endswith("the hero leaves the castle")

    def test_falls_back_to_next_model(self, story_cards):
        provider = KeywordEmbeddingProvider(failing_models={"primary"})
        index = EmbeddingIndex(model="primary")
        model = index.refresh(story_cards, provider, models=["primary", "backup"])
        assert model == "backup"
        assert index.model == "backup"
        assert len(index) == 3

    def test_all_models_failing_writes_nothing(self, story_cards):
        provider = KeywordEmbeddingProvider(failing_models={"primary", "backup"})
        index = EmbeddingIndex(model="primary")
        with pytest.raises(ProviderError):
            index.refresh(story_cards, provider, models=["primary", "backup"])
        assert len(index) == 0

    def test_count_mismatch_writes_nothing(self, story_cards):
        class ShortProvider(KeywordEmbeddingProvider):
            def embed_batch(self, texts, *, model, task_type, timeout=None):
                return super().embed_batch(texts, model=model, task_type=task_type)[:-1]

        index = EmbeddingIndex(model="keyword-embed")
        with pytest.raises(MalformedResponseError):
            index.refresh(story_cards, ShortProvider(), models=["keyword-embed"])
        assert len(index) == 0

    def test_cancelled_before_call(self, story_cards, keyword_provider):
        token = CancellationToken()
        token.cancel()
        index = EmbeddingIndex(model="keyword-embed")
        with pytest.raises(Cancelled):
            index.refresh(story_cards, keyword_provider, models=["keyword-embed"], cancel=token)
        assert keyword_provider.batch_calls == []
        assert len(index) == 0

    def test_cancelled_during_call_discards_vectors(self, story_cards):
        token = CancellationToken()

        class CancellingProvider(KeywordEmbeddingProvider):
            def embed_batch(self, texts, *, model, task_type, timeout=None):
                token.cancel()
                return super().embed_batch(texts, model=model, task_type=task_type)

        index = EmbeddingIndex(model="keyword-embed")
        with pytest.raises(Cancelled):
            index.refresh(story_cards, CancellingProvider(), models=["keyword-embed"], cancel=token)
        assert len(index) == 0

    def test_model_change_drops_other_dimension(self, story_cards):
        provider = KeywordEmbeddingProvider(failing_models={"old-model"})
        index = EmbeddingIndex(model="old-model")
        index.put(record("gone", "2026-01-01T00:00:00.000000Z", vector=(1.0, 2.0, 3.0)))
        index.refresh(story_cards, provider, models=["keyword-embed"])
        assert index.model == "keyword-embed"
        assert "gone" not in index
        assert index.dimension == len(provider.vocabulary)

    def test_empty_vector_drops_old_record(self, story_cards):
        class NoVectorForRest(KeywordEmbeddingProvider):
            def vector(self, text):
                return [] if "rests" in text else super().vector(text)

        index = EmbeddingIndex(model="keyword-embed")
        index.refresh(story_cards, NoVectorForRest(), models=["keyword-embed"])
        edited = make_card("villain", "the hero rests", order_index=1)
        index.refresh([edited], NoVectorForRest(), models=["keyword-embed"])
        assert index.get("villain") is None
        assert index.is_stale(edited)

    def test_stale_cards_reads_dimension_once(self, story_cards, keyword_provider, monkeypatch):
        index = EmbeddingIndex(model="keyword-embed")
        index.refresh(story_cards, keyword_provider, models=["keyword-embed"])
        reads = []
        original = EmbeddingIndex.dimension.fget

        def counting(self):
            reads.append(1)
            return original(self)

        monkeypatch.setattr(EmbeddingIndex, "dimension", property(counting))
        assert index.stale_cards(story_cards) == []
        assert len(reads) == 1


class TestModelCandidates:
    def test_order_and_dedup(self):
        index = EmbeddingIndex(model="stored")
        assert index.model_candidates(["a", "stored", "b"], preferred="a") == ["a", "stored", "b"]


class TestEviction:
    def test_cap_keeps_most_recent(self):
        index = EmbeddingIndex(max_records=3)
        for i in range(5):
            index.put(record(f"c{i}", f"2026-01-0{i + 1}T00:00:00.000000Z"))
        dropped = index.evict()
        assert dropped == 2
        assert len(index) == 3
        assert set(index.records()) == {"c2", "c3", "c4"}

    def test_newest_first_tiebreak_is_stable(self):
        same = "2026-01-01T00:00:00.000000Z"
        ordered = newest_first([record("b", same), record("a", same)])
        assert [r.card_id for r in ordered] == ["a", "b"]


class TestCopyAdopt:
    def test_copy_is_independent(self, story_cards, keyword_provider):
        index = EmbeddingIndex(model="keyword-embed")
        working = index.copy()
        working.refresh(story_cards, keyword_provider, models=["keyword-embed"])
        assert len(index) == 0
        index.adopt(working)
        assert len(index) == 3
        assert index.model == "keyword-embed"


class TestPersistence:
    def test_save_and_load(self, tmp_path, story_cards, keyword_provider):
        path = tmp_path / "embedding-index.json"
        index = EmbeddingIndex(path, model="keyword-embed")
        index.refresh(story_cards, keyword_provider, models=["keyword-embed"])
        index.save()

        payload = json.loads(path.read_text())
        assert payload["model"] == "keyword-embed"
        assert list(payload) == sorted(payload)
        assert len(payload["records"]) == 3

        reloaded = EmbeddingIndex(path)
        assert reloaded.load() == 3
        assert reloaded.model == "keyword-embed"
        assert not any(reloaded.is_stale(card) for card in story_cards)

    def test_load_filters_invalid_ids_and_caps(self, tmp_path):
        path = tmp_path / "embedding-index.json"
        index = EmbeddingIndex(path, max_records=10)
        for i in range(5):
            index.put(record(f"c{i}", f"2026-01-0{i + 1}T00:00:00.000000Z"))
        index.save()

        reloaded = EmbeddingIndex(path, max_records=2)
        assert reloaded.load(valid_ids={"c0", "c1", "c2"}) == 2
        assert set(reloaded.records()) == {"c1", "c2"}

    def test_empty_index_removes_file(self, tmp_path):
        path = tmp_path / "embedding-index.json"
        path.write_text("{}")
        EmbeddingIndex(path).save()
        assert not path.exists()

    def test_unreadable_file_yields_empty_index(self, tmp_path):
        path = tmp_path / "embedding-index.json"
        path.write_text("not json")
        index = EmbeddingIndex(path)
        assert index.load() == 0
        assert len(index) == 0

    def test_flush_writes_pending_save(self, tmp_path):
        path = tmp_path / "embedding-index.json"
        index = EmbeddingIndex(path, save_delay=60)
        index.put(record("a", "2026-01-01T00:00:00.000000Z"))
        index.schedule_save()
        assert not path.exists()
        index.flush()
        assert path.exists()


class TestClippedInput:
    def test_header_and_clip(self):
        card = make_card("a", "x" * 50, category="plot")
        text = clipped_embedding_input(card, max_chars=20)
        assert text.startswith("[plot]\n")
        assert len(text) == 20
