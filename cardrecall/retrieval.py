"""
Retrieval of query-relevant cards.

Two ways to rank cards against a question, tried in order:

1. Semantic: refresh stale embeddings, narrow candidates through the local
   index's token postings, score by cosine similarity against the query
   embedding.
2. Lexical: TF-IDF cosine over the in-memory corpus, no network.

Both render through ``render_retrieval_block`` so their output is
indistinguishable downstream. If neither produces anything, the prompt
gets a short placeholder instead of retrieval context.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Optional, Protocol

from .cancellation import check
from .config import RetrievalConfig
from .embedding_index import EmbeddingIndex
from .errors import IndexStoreError, ProviderError
from .index_store import LocalIndexStore, build_index_documents
from .providers.base import RETRIEVAL_QUERY, embed_with_fallback
from .text import TRUNCATED_MARKER, clamp, content_hash, fit_lines, search_tokens, term_frequency
from .types import CardDigest, CardSnapshot, visible_cards

logger = logging.getLogger(__name__)

SCOPE_MARKER = "scope"
QUERY_MARKER = "query"
MAX_SCORE_SHOWN = 0.99

EMPTY_QUERY_TEXT = "(empty question, retrieval skipped)"
NO_MATCH_TEXT = "(no strongly related cards)"


def cosine_similarity(a, b) -> float:
    """Cosine of two vectors; 0.0 for empty, mismatched or zero-norm input."""
    if not a or len(a) != len(b):
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a <= 0 or norm_b <= 0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


@dataclass(frozen=True)
class ScoredCard:
    card: CardSnapshot
    score: float
    scoped: bool = False


def rank_scored(scored: list[ScoredCard]) -> list[ScoredCard]:
    """Highest score first; ties by tree order (orderIndex, then createdAt)."""
    return sorted(scored, key=lambda s: (-s.score, s.card.order_index, s.card.created_at))


def render_retrieval_line(item: ScoredCard, digest: CardDigest, facts: int = 2) -> str:
    marker = SCOPE_MARKER if item.scoped else QUERY_MARKER
    shown = min(max(item.score, 0.0), MAX_SCORE_SHOWN)
    key_facts = " / ".join(digest.key_facts[:facts])
    head = f"[{marker}][{item.card.category}] {digest.short_summary}"
    if key_facts:
        head = f"{head} | {key_facts}"
    return f"{head} (similarity {shown:.2f})"


def render_retrieval_block(
    ranked: list[ScoredCard],
    digests: dict[str, CardDigest],
    *,
    top_k: int,
    budget: int,
    facts: int = 2,
) -> Optional[str]:
    """
    Render the top ``top_k`` ranked cards as retrieval lines within ``budget``.

    Cards without a digest are skipped. Returns None when no line fits.
    """
    lines = [
        render_retrieval_line(item, digests[item.card.id], facts)
        for item in ranked[:top_k]
        if item.card.id in digests
    ]
    kept, _truncated = fit_lines(lines, budget, marker=TRUNCATED_MARKER)
    if not kept or kept == [TRUNCATED_MARKER]:
        return None
    return "\n".join(kept)


def tfidf_rank(
    query: str,
    cards: list[CardSnapshot],
    scoped_ids: set[str],
    *,
    scope_boost: float = 0.08,
    card_chars: int = 900,
) -> list[ScoredCard]:
    """
    Rank visible cards against ``query`` by TF-IDF cosine similarity.

    Weights are (1 + ln tf) * idf with idf = ln((1 + N) / (1 + df)) + 1.
    Non-positive scores are dropped; scoped cards get ``scope_boost``.
    """
    query_tf = term_frequency(search_tokens(query.strip()))
    if not query_tf:
        return []

    docs = []
    document_frequency: dict[str, int] = {}
    for card in visible_cards(cards):
        tf = term_frequency(search_tokens(clamp(f"{card.category} {card.content}", card_chars)))
        if not tf:
            continue
        docs.append((card, tf))
        for term in tf:
            document_frequency[term] = document_frequency.get(term, 0) + 1
    if not docs:
        return []

    total_docs = len(docs)

    def idf(term: str) -> float:
        return math.log((1 + total_docs) / (1 + document_frequency.get(term, 0))) + 1

    query_vector = {t: (1 + math.log(c)) * idf(t) for t, c in query_tf.items()}
    query_norm = math.sqrt(sum(w * w for w in query_vector.values()))
    if query_norm <= 0:
        return []

    scored = []
    for card, tf in docs:
        dot = 0.0
        doc_norm_sq = 0.0
        for term, count in tf.items():
            weight = (1 + math.log(count)) * idf(term)
            doc_norm_sq += weight * weight
            if term in query_vector:
                dot += query_vector[term] * weight
        if doc_norm_sq <= 0:
            continue
        score = dot / (query_norm * math.sqrt(doc_norm_sq))
        if score <= 0:
            continue
        scoped = card.id in scoped_ids
        if scoped:
            score += scope_boost
        scored.append(ScoredCard(card, score, scoped))
    return rank_scored(scored)


# -----------------------------------------------------------------------------
# Strategies
# -----------------------------------------------------------------------------

@dataclass
class RetrievalRequest:
    """Inputs to one retrieval call. Not persisted."""
    query: str
    cards: list[CardSnapshot]
    scoped_ids: set[str]
    digests: dict[str, CardDigest]
    cancel: object = None


@dataclass
class RetrievalResult:
    text: str
    ranked: list[ScoredCard] = field(default_factory=list)
    strategy: str = "none"
    model: Optional[str] = None

    @property
    def card_ids(self) -> list[str]:
        return [item.card.id for item in self.ranked]


class RetrievalStrategy(Protocol):
    name: str

    def retrieve(self, request: RetrievalRequest) -> Optional[RetrievalResult]:
        """Return a result, or None to let the next strategy try."""
        ...


class LexicalStrategy:
    """In-memory TF-IDF ranking. Needs no index and no network."""

    name = "lexical"

    def __init__(self, config: Optional[RetrievalConfig] = None, *, card_chars: int = 900):
        self._config = config or RetrievalConfig()
        self._card_chars = card_chars

    def retrieve(self, request: RetrievalRequest) -> Optional[RetrievalResult]:
        ranked = tfidf_rank(
            request.query,
            request.cards,
            request.scoped_ids,
            scope_boost=self._config.scope_boost,
            card_chars=self._card_chars,
        )
        top = ranked[:self._config.top_k]
        text = render_retrieval_block(
            top,
            request.digests,
            top_k=self._config.top_k,
            budget=self._config.line_budget,
            facts=self._config.retrieval_facts,
        )
        if text is None:
            return None
        return RetrievalResult(text=text, ranked=top, strategy=self.name)


class HybridRetriever:
    """
    Embedding-based retrieval with a lexical pre-filter.

    Mutates ``embedding_index`` (refreshing stale cards) and syncs
    ``index_store``; pass a working copy of the index when the caller may
    still discard the request.
    """

    name = "semantic"

    def __init__(
        self,
        embedding_index: EmbeddingIndex,
        index_store: Optional[LocalIndexStore],
        provider,
        config: Optional[RetrievalConfig] = None,
        *,
        models: Optional[list[str]] = None,
    ):
        self._index = embedding_index
        self._store = index_store
        self._provider = provider
        self._config = config or RetrievalConfig()
        self._models = list(models or [])
        self.last_model: Optional[str] = None

    def sync_store(self, cards: list[CardSnapshot], digests: dict[str, CardDigest]) -> bool:
        """
        Mirror the embedding index into the local store. False on failure.

        Rows for cards without a fresh vector are dropped along with rows
        for cards that are gone.
        """
        if self._store is None:
            return False
        documents = build_index_documents(
            cards, digests, self._index.records(),
            max_input_chars=self._config.max_input_chars,
        )
        if not documents:
            return False
        try:
            self._store.sync_index(documents, {doc.card_id for doc in documents})
        except IndexStoreError as e:
            logger.warning("Local index sync failed, continuing without it: %s", e)
            return False
        return True

    def _candidates(self, query: str, cards: list[CardSnapshot]) -> list[CardSnapshot]:
        tokens = search_tokens(query)
        if not tokens or self._store is None:
            return cards
        try:
            ids = self._store.query_candidate_ids(
                tokens, self._config.candidate_limit, self._config.fallback_limit,
            )
        except IndexStoreError as e:
            logger.warning("Candidate query failed, scoring full corpus: %s", e)
            return cards
        if not ids:
            return cards
        wanted = set(ids)
        return [card for card in cards if card.id in wanted]

    def retrieve(self, request: RetrievalRequest) -> Optional[RetrievalResult]:
        query = request.query.strip()
        if not query:
            return None
        cards = visible_cards(request.cards)
        if not cards:
            return None

        self._index.prune({card.id for card in cards})
        try:
            refreshed_model = self._index.refresh(
                cards,
                self._provider,
                models=self._models,
                batch_size=self._config.batch_size,
                timeout=self._config.document_timeout,
                cancel=request.cancel,
            )
        except ProviderError as e:
            logger.warning("Card embedding failed, no semantic context: %s", e)
            return None

        self.sync_store(cards, request.digests)

        check(request.cancel)
        try:
            vectors, query_model = embed_with_fallback(
                self._provider,
                [query],
                task_type=RETRIEVAL_QUERY,
                models=self._index.model_candidates(self._models, preferred=refreshed_model),
                timeout=self._config.query_timeout,
            )
        except ProviderError as e:
            logger.warning("Query embedding failed, no semantic context: %s", e)
            return None
        query_vector = vectors[0] if vectors else []
        if not query_vector:
            return None
        self.last_model = query_model

        scored = []
        for card in self._candidates(query, cards):
            record = self._index.get(card.id)
            if record is None or len(record.vector) != len(query_vector):
                continue
            if record.content_hash != content_hash(card.content):
                continue
            score = cosine_similarity(query_vector, record.vector)
            if score <= 0:
                continue
            scoped = card.id in request.scoped_ids
            if scoped:
                score += self._config.scope_boost
            scored.append(ScoredCard(card, score, scoped))
        if not scored:
            return None

        top = rank_scored(scored)[:self._config.top_k]
        text = render_retrieval_block(
            top,
            request.digests,
            top_k=self._config.top_k,
            budget=self._config.line_budget,
            facts=self._config.retrieval_facts,
        )
        if text is None:
            return None
        return RetrievalResult(text=text, ranked=top, strategy=self.name, model=query_model)


def run_strategies(strategies: list[RetrievalStrategy], request: RetrievalRequest) -> RetrievalResult:
    """
    Try each strategy in order; the first result wins.

    Ends with a placeholder (no augmentation) when every strategy declines.
    """
    if not request.query.strip():
        return RetrievalResult(text=EMPTY_QUERY_TEXT)
    for strategy in strategies:
        result = strategy.retrieve(request)
        if result is not None:
            logger.debug("Retrieval via %s: %d card(s)", strategy.name, len(result.ranked))
            return result
    return RetrievalResult(text=NO_MATCH_TEXT)
