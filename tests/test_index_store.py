"""Tests for the SQLite local index store."""

import sqlite3

import pytest

from conftest import make_card

from cardrecall.digest import refresh_digests
from cardrecall.embedding_index import EmbeddingIndex
from cardrecall.errors import IndexStoreError
from cardrecall.index_store import (
    IndexDocument,
    LocalIndexStore,
    build_index_documents,
    pack_vector,
    unpack_vector,
)


@pytest.fixture
def store(tmp_path):
    s = LocalIndexStore(tmp_path / "vector-index.db")
    yield s
    s.close()


@pytest.fixture
def documents(story_cards, keyword_provider):
    index = EmbeddingIndex(model="keyword-embed")
    index.refresh(story_cards, keyword_provider, models=["keyword-embed"])
    digests = refresh_digests(story_cards, {})
    return build_index_documents(story_cards, digests, index.records())


def doc(card_id: str, tokens: dict, updated_at: str = "2026-01-01T00:00:00.000000Z") -> IndexDocument:
    return IndexDocument(
        card_id=card_id,
        content_hash="h-" + card_id,
        category="plot",
        order_index=0,
        updated_at=updated_at,
        vector=[1.0, 0.5],
        search_text=" ".join(tokens),
        token_frequencies=tokens,
    )


class TestVectorCodec:
    def test_little_endian_float32(self):
        blob = pack_vector([1.0, -2.5])
        assert blob == b"\x00\x00\x80\x3f\x00\x00\x20\xc0"
        assert unpack_vector(blob) == [1.0, -2.5]


class TestBuildDocuments:
    def test_search_text_includes_category_and_content(self, documents):
        by_id = {d.card_id: d for d in documents}
        assert set(by_id) == {"hero", "villain", "epilogue"}
        assert "plot" in by_id["villain"].search_text
        assert by_id["villain"].token_frequencies["villain"] >= 1

    def test_cards_without_vector_skipped(self, story_cards):
        digests = refresh_digests(story_cards, {})
        assert build_index_documents(story_cards, digests, {}) == []

    def test_record_for_old_content_skipped(self, story_cards, keyword_provider):
        index = EmbeddingIndex(model="keyword-embed")
        index.refresh(story_cards, keyword_provider, models=["keyword-embed"])
        edited = [story_cards[0], make_card("villain", "the hero rests", order_index=1)]
        documents = build_index_documents(edited, refresh_digests(edited, {}), index.records())
        assert [d.card_id for d in documents] == ["hero"]


class TestSyncIndex:
    def test_sync_inserts_rows_and_postings(self, store, documents):
        removed = store.sync_index(documents, {"hero", "villain", "epilogue"})
        assert removed == 0
        assert store.card_ids() == {"hero", "villain", "epilogue"}
        assert store.postings("villain")["revenge"] >= 1
        assert len(store.get_vector("hero")) == 8

    def test_sync_removes_invalid_cards(self, store, documents):
        store.sync_index(documents, {"hero", "villain", "epilogue"})
        removed = store.sync_index([], {"hero"})
        assert removed == 2
        assert store.card_ids() == {"hero"}
        assert store.posting_card_ids() == {"hero"}

    def test_resync_replaces_postings(self, store):
        store.sync_index([doc("a", {"castle": 2})], {"a"})
        store.sync_index([doc("a", {"tower": 1})], {"a"})
        assert store.postings("a") == {"tower": 1.0}

    def test_failed_sync_leaves_previous_state(self, store, monkeypatch):
        store.sync_index([doc("a", {"castle": 1})], {"a"})

        calls = {"n": 0}
        original = LocalIndexStore._write_postings

        def failing_write(self, conn, document):
            calls["n"] += 1
            if calls["n"] == 2:
                raise sqlite3.OperationalError("disk I/O error")
            original(self, conn, document)

        monkeypatch.setattr(LocalIndexStore, "_write_postings", failing_write)
        with pytest.raises(IndexStoreError):
            store.sync_index([doc("b", {"tower": 1}), doc("c", {"gate": 1})], {"b", "c"})

        # Neither the new rows nor the deletion of "a" were applied
        assert store.card_ids() == {"a"}
        assert store.posting_card_ids() == {"a"}
        assert store.postings("a") == {"castle": 1.0}

    def test_no_posting_without_vector_row(self, store, documents):
        store.sync_index(documents, {"hero", "villain", "epilogue"})
        store.sync_index([], {"villain"})
        assert store.posting_card_ids() <= store.card_ids()


class TestCandidateQuery:
    def test_ranked_by_summed_term_frequency(self, store):
        store.sync_index([
            doc("a", {"castle": 1}),
            doc("b", {"castle": 3, "hero": 1}),
            doc("c", {"peace": 1}),
        ], {"a", "b", "c"})
        assert store.query_candidate_ids(["castle", "hero"], limit=2) == ["b", "a"]

    def test_padded_with_recent_cards(self, store):
        store.sync_index([
            doc("old", {"peace": 1}, "2026-01-01T00:00:00.000000Z"),
            doc("new", {"peace": 1}, "2026-02-01T00:00:00.000000Z"),
            doc("hit", {"castle": 1}, "2025-12-01T00:00:00.000000Z"),
        ], {"old", "new", "hit"})
        assert store.query_candidate_ids(["castle"], limit=3) == ["hit", "new", "old"]

    def test_no_tokens_gives_recent_cards(self, store):
        store.sync_index([
            doc("old", {"peace": 1}, "2026-01-01T00:00:00.000000Z"),
            doc("new", {"peace": 1}, "2026-02-01T00:00:00.000000Z"),
        ], {"old", "new"})
        assert store.query_candidate_ids([], limit=1) == ["new"]

    def test_zero_limit(self, store):
        assert store.query_candidate_ids(["castle"], limit=0) == []


class TestLifecycle:
    def test_reopen_keeps_rows(self, tmp_path):
        path = tmp_path / "vector-index.db"
        with LocalIndexStore(path) as first:
            first.sync_index([doc("a", {"castle": 1})], {"a"})
        with LocalIndexStore(path) as second:
            assert second.count() == 1

    def test_closed_store_raises(self, tmp_path):
        store = LocalIndexStore(tmp_path / "vector-index.db")
        store.close()
        with pytest.raises(IndexStoreError):
            store.query_candidate_ids(["castle"], limit=1)

    def test_unopenable_path_raises(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        with pytest.raises(IndexStoreError):
            LocalIndexStore(blocker / "nested" / "vector-index.db")
