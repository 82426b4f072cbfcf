"""Tests for semantic and lexical retrieval."""

import pytest

from conftest import KeywordEmbeddingProvider, make_card

from cardrecall.cancellation import CancellationToken
from cardrecall.config import RetrievalConfig
from cardrecall.digest import refresh_digests
from cardrecall.embedding_index import EmbeddingIndex
from cardrecall.errors import Cancelled, IndexStoreError
from cardrecall.index_store import LocalIndexStore
from cardrecall.retrieval import (
    EMPTY_QUERY_TEXT,
    NO_MATCH_TEXT,
    HybridRetriever,
    LexicalStrategy,
    RetrievalRequest,
    ScoredCard,
    cosine_similarity,
    rank_scored,
    render_retrieval_block,
    render_retrieval_line,
    run_strategies,
    tfidf_rank,
)
from cardrecall.text import TRUNCATED_MARKER

QUESTION = "what does the villain want"


@pytest.fixture
def store(tmp_path):
    s = LocalIndexStore(tmp_path / "vector-index.db")
    yield s
    s.close()


def request_for(cards, query=QUESTION, scoped_ids=(), cancel=None) -> RetrievalRequest:
    return RetrievalRequest(
        query=query,
        cards=cards,
        scoped_ids=set(scoped_ids),
        digests=refresh_digests(cards, {}),
        cancel=cancel,
    )


def retriever(store=None, provider=None, config=None) -> HybridRetriever:
    return HybridRetriever(
        EmbeddingIndex(model="keyword-embed"),
        store,
        provider or KeywordEmbeddingProvider(),
        config,
        models=["keyword-embed"],
    )


class TestCosine:
    def test_identical(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0

    def test_zero_vector(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0


class TestRanking:
    def test_ties_broken_by_tree_order(self):
        first = make_card("a", "x", order_index=2, created_at="2026-01-01T00:00:00.000000Z")
        second = make_card("b", "x", order_index=1, created_at="2026-01-02T00:00:00.000000Z")
        third = make_card("c", "x", order_index=1, created_at="2026-01-01T00:00:00.000000Z")
        ranked = rank_scored([ScoredCard(first, 0.5), ScoredCard(second, 0.5), ScoredCard(third, 0.5)])
        assert [s.card.id for s in ranked] == ["c", "b", "a"]


class TestRendering:
    def test_line_format(self, story_cards):
        digests = refresh_digests(story_cards, {})
        line = render_retrieval_line(ScoredCard(story_cards[1], 0.4082), digests["villain"])
        assert line == "[query][plot] a villain plots revenge | a villain plots revenge (similarity 0.41)"

    def test_scope_marker_and_score_clamp(self, story_cards):
        digests = refresh_digests(story_cards, {})
        line = render_retrieval_line(ScoredCard(story_cards[0], 1.08, scoped=True), digests["hero"])
        assert line.startswith("[scope][plot] ")
        assert line.endswith("(similarity 0.99)")

    def test_block_respects_budget(self, story_cards):
        digests = refresh_digests(story_cards, {})
        ranked = [ScoredCard(card, 0.5) for card in story_cards]
        text = render_retrieval_block(ranked, digests, top_k=8, budget=120)
        assert len(text) <= 120
        assert text.endswith(TRUNCATED_MARKER)

    def test_block_respects_top_k(self, story_cards):
        digests = refresh_digests(story_cards, {})
        ranked = [ScoredCard(card, 0.5) for card in story_cards]
        text = render_retrieval_block(ranked, digests, top_k=1, budget=900)
        assert text.count("\n") == 0

    def test_nothing_fits(self, story_cards):
        digests = refresh_digests(story_cards, {})
        ranked = [ScoredCard(card, 0.5) for card in story_cards]
        assert render_retrieval_block(ranked, digests, top_k=8, budget=5) is None


class TestTfidf:
    def test_villain_ranks_first(self, story_cards):
        ranked = tfidf_rank(QUESTION, story_cards, set())
        assert ranked[0].card.id == "villain"
        assert all(item.score > 0 for item in ranked)
        assert "epilogue" not in [item.card.id for item in ranked]

    def test_scope_boost(self, story_cards):
        plain = {s.card.id: s.score for s in tfidf_rank(QUESTION, story_cards, set())}
        boosted = {s.card.id: s for s in tfidf_rank(QUESTION, story_cards, {"hero"}, scope_boost=0.08)}
        assert boosted["hero"].score == pytest.approx(plain["hero"] + 0.08)
        assert boosted["hero"].scoped

    def test_hidden_cards_ignored(self):
        cards = [make_card("a", "the villain", is_archived=True), make_card("b", "the villain", is_floating=True)]
        assert tfidf_rank(QUESTION, cards, set()) == []

    def test_empty_query(self, story_cards):
        assert tfidf_rank("  ", story_cards, set()) == []


class TestHybridRetriever:
    def test_end_to_end_villain_first(self, story_cards, store):
        result = retriever(store).retrieve(request_for(story_cards))
        assert result is not None
        assert result.strategy == "semantic"
        assert result.card_ids[0] == "villain"
        assert result.ranked[0].score > 0
        assert result.card_ids == ["villain", "hero"]
        assert len(result.text) <= RetrievalConfig().line_budget

    def test_scores_are_cosine(self, story_cards, store):
        result = retriever(store).retrieve(request_for(story_cards))
        scores = {item.card.id: item.score for item in result.ranked}
        assert scores["villain"] == pytest.approx(1 / (3 ** 0.5 * 2 ** 0.5))
        assert scores["hero"] == pytest.approx(1 / 3)

    def test_deterministic_across_calls(self, story_cards, store):
        r = retriever(store)
        first = r.retrieve(request_for(story_cards)).card_ids
        second = r.retrieve(request_for(story_cards)).card_ids
        assert first == second

    def test_scope_boost_reorders(self, story_cards, store):
        result = retriever(store).retrieve(request_for(story_cards, scoped_ids={"hero"}))
        assert result.card_ids[0] == "hero"
        assert result.ranked[0].scoped
        assert result.text.startswith("[scope]")

    def test_stale_card_refreshed_before_query(self, story_cards, store):
        provider = KeywordEmbeddingProvider()
        r = retriever(store, provider)
        r.retrieve(request_for(story_cards))
        edited = [story_cards[0], make_card("villain", "peace at last", order_index=1), story_cards[2]]
        result = r.retrieve(request_for(edited))
        assert "villain" not in result.card_ids

    def test_old_vector_not_used_when_reembedding_is_empty(self, story_cards, store):
        class NoVectorForRest(KeywordEmbeddingProvider):
            def vector(self, text):
                return [] if "rests" in text else super().vector(text)

        r = retriever(store, NoVectorForRest())
        r.retrieve(request_for(story_cards))
        assert "villain" in store.card_ids()

        edited = [story_cards[0], make_card("villain", "the hero rests", order_index=1), story_cards[2]]
        result = r.retrieve(request_for(edited))

        assert result.card_ids == ["hero"]
        assert "villain" not in store.card_ids()

    def test_syncs_local_store(self, story_cards, store):
        retriever(store).retrieve(request_for(story_cards))
        assert store.card_ids() == {"hero", "villain", "epilogue"}

    def test_works_without_local_store(self, story_cards):
        result = retriever(None).retrieve(request_for(story_cards))
        assert result.card_ids[0] == "villain"

    def test_store_failure_degrades(self, story_cards, store, monkeypatch):
        def broken(*args, **kwargs):
            raise IndexStoreError("database is locked")

        monkeypatch.setattr(store, "sync_index", broken)
        monkeypatch.setattr(store, "query_candidate_ids", broken)
        result = retriever(store).retrieve(request_for(story_cards))
        assert result.card_ids[0] == "villain"

    def test_provider_failure_declines(self, story_cards, store):
        provider = KeywordEmbeddingProvider(failing_models={"keyword-embed"})
        assert retriever(store, provider).retrieve(request_for(story_cards)) is None

    def test_empty_query_declines(self, story_cards, store):
        assert retriever(store).retrieve(request_for(story_cards, query="  ")) is None

    def test_no_match_declines(self, story_cards, store):
        assert retriever(store).retrieve(request_for(story_cards, query="unrelated words")) is None

    def test_cancelled_propagates(self, story_cards, store):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(Cancelled):
            retriever(store).retrieve(request_for(story_cards, cancel=token))


class TestStrategyChain:
    def test_empty_query_placeholder(self, story_cards):
        result = run_strategies([LexicalStrategy()], request_for(story_cards, query=""))
        assert result.text == EMPTY_QUERY_TEXT
        assert result.ranked == []

    def test_no_match_placeholder(self, story_cards):
        result = run_strategies([LexicalStrategy()], request_for(story_cards, query="zzz qqq"))
        assert result.text == NO_MATCH_TEXT

    def test_falls_back_to_lexical(self, story_cards, store):
        provider = KeywordEmbeddingProvider(failing_models={"keyword-embed"})
        chain = [retriever(store, provider), LexicalStrategy()]
        result = run_strategies(chain, request_for(story_cards))
        assert result.strategy == "lexical"
        assert result.card_ids[0] == "villain"

    def test_both_paths_render_alike(self, story_cards, store):
        semantic = run_strategies([retriever(store)], request_for(story_cards))
        lexical = run_strategies([LexicalStrategy()], request_for(story_cards))
        first_semantic = semantic.text.split("\n")[0]
        first_lexical = lexical.text.split("\n")[0]
        assert first_semantic.split(" (similarity")[0] == first_lexical.split(" (similarity")[0]
