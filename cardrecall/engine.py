"""
Workspace engine: one object per workspace that runs chat turns.

A turn snapshots the cards and the thread, refreshes digests and
embeddings on working copies, retrieves related cards, builds the prompt,
generates the answer with continuation and only then commits the working
state. A cancelled turn applies nothing; local index rows that were
already synced stay, since they are keyed by content hash.

Card suggestions run the same preparation focused on one card, then
render their own prompt around the shared context blocks. Summaries
skip retrieval and go straight to the model.
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .cancellation import check
from .cards import SCOPE_SELECTED, JsonCardRepository, ThreadScope, resolve_scope, scope_label
from .config import WorkspaceConfig, get_default_workspace_path, load_or_create_config
from .continuation import ContinuationHandler
from .credentials import default_credential_store, require_api_key
from .digest import refresh_digests
from .embedding_index import EmbeddingIndex
from .errors import (
    Cancelled,
    ConfigurationError,
    IndexStoreError,
    MalformedResponseError,
    MissingCredentialError,
    ProviderError,
)
from .index_store import LocalIndexStore
from .logging_config import configure_ops_log, remove_ops_log
from .prompt_builder import build_prompt
from .protocol import CardRepository, CredentialStore
from .providers.base import get_registry
from .retrieval import (
    HybridRetriever,
    LexicalStrategy,
    RetrievalRequest,
    RetrievalResult,
    run_strategies,
)
from .suggestions import (
    MIN_SUMMARY_CHILDREN,
    PLOT_CATEGORY,
    Suggestion,
    build_suggestion_context,
    child_cards,
    children_summary_prompt,
    generation_query,
    normalize_summary,
    parse_action,
    parse_suggestions,
    render_suggestion_prompt,
    resolve_options,
    summary_prompt,
)
from .threads import ChatThread, ThreadStore, should_refresh_rolling_summary
from .types import (
    CardDigest,
    CardSnapshot,
    ContextPreview,
    HistoryMessage,
    PromptBuildResult,
    TokenUsage,
    visible_cards,
)

logger = logging.getLogger(__name__)

CARDS_FILENAME = "cards.json"
ERROR_ANSWER_PREFIX = "Error: "


@dataclass
class AskResult:
    """Outcome of one chat turn."""
    thread_id: str
    answer: str
    usage: TokenUsage
    preview: ContextPreview
    retrieval: RetrievalResult
    chunks: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {
            "thread_id": self.thread_id,
            "answer": self.answer,
            "usage": self.usage.to_dict(),
            "chunks": self.chunks,
            "error": self.error,
            "retrieval": {
                "strategy": self.retrieval.strategy,
                "model": self.retrieval.model,
                "card_ids": self.retrieval.card_ids,
            },
        }


@dataclass
class ReindexResult:
    embedded: int
    records: int
    model: str
    synced: bool

    def to_dict(self) -> dict:
        return {
            "embedded": self.embedded,
            "records": self.records,
            "model": self.model,
            "synced": self.synced,
        }


@dataclass
class SuggestionResult:
    """Five candidate versions of one card. Nothing is applied to the card."""
    card_id: str
    action: str
    options: list[str]
    suggestions: list[Suggestion]
    usage: TokenUsage
    preview: ContextPreview
    retrieval: RetrievalResult
    chunks: int = 0

    def to_dict(self) -> dict:
        return {
            "card_id": self.card_id,
            "action": self.action,
            "options": self.options,
            "suggestions": [s.to_dict() for s in self.suggestions],
            "usage": self.usage.to_dict(),
            "chunks": self.chunks,
            "retrieval": {
                "strategy": self.retrieval.strategy,
                "model": self.retrieval.model,
                "card_ids": self.retrieval.card_ids,
            },
        }


@dataclass
class SummaryResult:
    card_id: str
    text: str
    usage: TokenUsage
    children: list[str] = field(default_factory=list)
    chunks: int = 0

    def to_dict(self) -> dict:
        return {
            "card_id": self.card_id,
            "text": self.text,
            "children": self.children,
            "usage": self.usage.to_dict(),
            "chunks": self.chunks,
        }


@dataclass
class _PreparedTurn:
    """Working state of a turn. Applied to the workspace only on commit."""
    cards: list[CardSnapshot]
    digests: dict[str, CardDigest]
    index: EmbeddingIndex
    retrieval: RetrievalResult
    build: Optional[PromptBuildResult] = None
    history: list[HistoryMessage] = field(default_factory=list)


class Workspace:
    """
    Chat engine for one workspace directory.

    Example:
        with Workspace("~/novel") as ws:
            result = ws.ask("what does the villain want")
            print(result.answer)
    """

    def __init__(
        self,
        path: Optional[str | Path] = None,
        *,
        config: Optional[WorkspaceConfig] = None,
        cards: Optional[CardRepository] = None,
        credentials: Optional[CredentialStore] = None,
        provider=None,
    ) -> None:
        """
        Open (or create) a workspace.

        Args:
            path: Workspace directory. Uses the default if not specified.
            config: Pre-loaded config (skips reading the TOML file).
            cards: Card source. Defaults to ``cards.json`` in the workspace.
            credentials: Key source. Defaults to environment, then key file.
            provider: Injected provider (skips registry creation).
        """
        if config is not None:
            self._config = config
        else:
            workspace_path = Path(path).expanduser().resolve() if path else get_default_workspace_path()
            self._config = load_or_create_config(workspace_path)
        self._path = self._config.path

        self._ops_log_handler = configure_ops_log(self._path)
        self._cards: CardRepository = cards or JsonCardRepository(self._path / CARDS_FILENAME)
        self._credentials = credentials or default_credential_store(self._path, self._config.provider.name)
        self._provider = provider
        self._owns_provider = provider is None

        self._embedding_index = EmbeddingIndex(
            self._config.embedding_index_path,
            model=self._config.embedding_models[0] if self._config.embedding_models else "",
            max_records=self._config.index.max_records,
            save_delay=self._config.index.save_delay,
            max_input_chars=self._config.retrieval.max_input_chars,
        )
        self._index_loaded = False

        self._threads = ThreadStore(
            self._config.threads_path,
            max_threads=self._config.threads.max_threads,
            max_messages=self._config.threads.max_messages,
            save_delay=self._config.threads.save_delay,
        )
        self._threads.load()

        self._index_store: Optional[LocalIndexStore] = None
        self._index_store_failed = False
        self._digests: dict[str, CardDigest] = {}
        self._lock = threading.Lock()
        self._closed = False

    # -- accessors ----------------------------------------------------------

    @property
    def config(self) -> WorkspaceConfig:
        return self._config

    @property
    def path(self) -> Path:
        return self._path

    @property
    def embedding_index(self) -> EmbeddingIndex:
        return self._embedding_index

    @property
    def threads(self) -> ThreadStore:
        return self._threads

    @property
    def digests(self) -> dict[str, CardDigest]:
        return dict(self._digests)

    # -- collaborators ------------------------------------------------------

    def _get_provider(self):
        """
        Raises:
            MissingCredentialError: If no API key is configured
        """
        api_key = require_api_key(self._credentials)
        if self._provider is None:
            params = dict(self._config.provider.params)
            params["api_key"] = api_key
            self._provider = get_registry().create(self._config.provider.name, params)
        return self._provider

    def _optional_provider(self):
        try:
            return self._get_provider()
        except MissingCredentialError:
            logger.info("No API key configured, using lexical retrieval only")
            return None

    def _get_index_store(self) -> Optional[LocalIndexStore]:
        """Open the local index lazily. A failure disables it for this session."""
        if self._index_store is None and not self._index_store_failed:
            try:
                self._index_store = LocalIndexStore(self._config.index_db_path)
            except IndexStoreError as e:
                logger.warning("Local index unavailable, using in-memory ranking: %s", e)
                self._index_store_failed = True
        return self._index_store

    def _resolve_thread(self, thread_id: Optional[str]) -> ChatThread:
        if thread_id is None:
            return self._threads.active()
        thread = self._threads.get(thread_id)
        if thread is None:
            raise ConfigurationError(f"Unknown thread: {thread_id}")
        return thread

    def _load_index(self, cards: list[CardSnapshot]) -> None:
        """Load the persisted embedding index once, filtered to the visible cards before capping."""
        if self._index_loaded:
            return
        loaded = self._embedding_index.load({card.id for card in visible_cards(cards)})
        self._index_loaded = True
        logger.debug("Loaded %d embedding record(s)", loaded)

    def _find_card(self, cards: list[CardSnapshot], card_id: str) -> CardSnapshot:
        for card in visible_cards(cards):
            if card.id == card_id:
                return card
        raise ConfigurationError(f"Unknown card: {card_id}")

    def _scoped_cards(self, scope: ThreadScope, cards: list[CardSnapshot]) -> list[CardSnapshot]:
        selection = self._cards.selected_card_ids() if scope.type == SCOPE_SELECTED else None
        return resolve_scope(scope, cards, selection)

    # -- turn pipeline ------------------------------------------------------

    def _refresh_digests(self, cards: list[CardSnapshot]) -> dict[str, CardDigest]:
        budgets = self._config.budgets
        return refresh_digests(
            cards, self._digests,
            summary_length=budgets.card_summary,
            fact_length=budgets.key_fact,
        )

    def _retrieve(
        self,
        query: str,
        cards: list[CardSnapshot],
        scoped: list[CardSnapshot],
        digests: dict[str, CardDigest],
        provider,
        cancel,
    ) -> tuple[RetrievalResult, EmbeddingIndex]:
        self._load_index(cards)
        working = self._embedding_index.copy()
        strategies = []
        if provider is not None:
            strategies.append(HybridRetriever(
                working,
                self._get_index_store(),
                provider,
                self._config.retrieval,
                models=self._config.embedding_models,
            ))
        strategies.append(LexicalStrategy(
            self._config.retrieval,
            card_chars=self._config.budgets.fallback_card_chars,
        ))
        request = RetrievalRequest(
            query=query,
            cards=visible_cards(cards),
            scoped_ids={card.id for card in scoped},
            digests=digests,
            cancel=cancel,
        )
        result = run_strategies(strategies, request)
        logger.info("Retrieval via %s: %d card(s)", result.strategy, len(result.ranked))
        return result, working

    def _prepare(self, thread: ChatThread, question: str, provider, cancel) -> _PreparedTurn:
        cards = self._cards.list_cards()
        scoped = self._scoped_cards(thread.scope, cards)
        label = scope_label(thread.scope, len(scoped))
        history = thread.history() + [HistoryMessage("user", question)]
        refresh = should_refresh_rolling_summary(
            thread, self._config.threads.rolling_refresh_every, pending_turns=1,
        )
        return self._build_turn(
            cards, scoped, label, question, provider, cancel,
            history=history, rolling_summary=thread.rolling_summary, refresh=refresh,
        )

    def _build_turn(
        self,
        cards: list[CardSnapshot],
        scoped: list[CardSnapshot],
        label: str,
        question: str,
        provider,
        cancel,
        *,
        history: Optional[list[HistoryMessage]] = None,
        rolling_summary: str = "",
        refresh: bool = False,
    ) -> _PreparedTurn:
        history = history or []
        digests = self._refresh_digests(cards)
        retrieval, working = self._retrieve(question, cards, scoped, digests, provider, cancel)
        check(cancel)

        build = build_prompt(
            cards,
            scoped,
            label,
            history,
            question,
            rolling_summary,
            digests,
            refresh,
            semantic_context=retrieval.text,
            budgets=self._config.budgets,
            retrieval_config=self._config.retrieval,
        )
        return _PreparedTurn(
            cards=cards,
            digests=build.digests,
            index=working,
            retrieval=retrieval,
            build=build,
            history=history,
        )

    def _commit_index(self, turn: _PreparedTurn) -> None:
        self._digests = dict(turn.digests)
        self._embedding_index.adopt(turn.index)
        self._embedding_index.schedule_save()

    def _commit_turn(self, thread_id: str, question: str, answer: str, usage: TokenUsage, turn: _PreparedTurn) -> None:
        self._commit_index(turn)
        rolling_summary = turn.build.rolling_summary

        def apply(thread: ChatThread) -> None:
            thread.rolling_summary = rolling_summary
            thread.token_usage.add(usage)

        self._threads.append_message(thread_id, "user", question)
        self._threads.update(thread_id, apply)
        self._threads.append_message(thread_id, "model", answer)

    # -- operations ---------------------------------------------------------

    def ask(self, question: str, *, thread_id: Optional[str] = None, cancel=None) -> AskResult:
        """
        Run one chat turn on a thread (the active one by default).

        A provider failure during generation becomes the answer text,
        prefixed with ``Error:``; the prepared state is still committed.

        Raises:
            ValueError: If the question is empty
            ConfigurationError: If the key, model or thread is not usable
            Cancelled: If cancelled; the thread and indexes are unchanged
        """
        question = question.strip()
        if not question:
            raise ValueError("Question is empty")

        with self._lock:
            provider = self._get_provider()
            thread = self._resolve_thread(thread_id)
            turn = self._prepare(thread, question, provider, cancel)

            handler = ContinuationHandler(provider, self._config.generation)
            error = None
            try:
                response = handler.generate(turn.build.prompt, self._config.chat_model, cancel)
            except Cancelled:
                logger.info("Turn cancelled on thread %s", thread.id)
                raise
            except ProviderError as e:
                logger.warning("Generation failed on thread %s: %s", thread.id, e)
                error = str(e)
                answer, usage, chunks = f"{ERROR_ANSWER_PREFIX}{e}", TokenUsage(), 0
            else:
                answer, usage, chunks = response.text, response.usage, response.chunks
            check(cancel)

            self._commit_turn(thread.id, question, answer, usage, turn)
            logger.info(
                "Answered on thread %s: %d chunk(s), %d total tokens",
                thread.id, chunks, usage.total_tokens,
            )
            return AskResult(
                thread_id=thread.id,
                answer=answer,
                usage=usage,
                preview=turn.build.preview,
                retrieval=turn.retrieval,
                chunks=chunks,
                error=error,
            )

    def preview(self, question: str, *, thread_id: Optional[str] = None, cancel=None) -> ContextPreview:
        """
        Build the context blocks for ``question`` without generating.

        Uses semantic retrieval when a key is configured, lexical otherwise.
        Refreshed digests and embeddings are kept; the thread is not changed.
        """
        question = question.strip()
        with self._lock:
            provider = self._optional_provider()
            thread = self._resolve_thread(thread_id)
            turn = self._prepare(thread, question, provider, cancel)
            self._commit_index(turn)
            return turn.build.preview

    def search(self, query: str, *, scope: Optional[ThreadScope] = None, cancel=None) -> RetrievalResult:
        """Rank cards related to ``query``. Scoped cards get the scope boost."""
        with self._lock:
            provider = self._optional_provider()
            cards = self._cards.list_cards()
            scoped = self._scoped_cards(scope or ThreadScope(), cards)
            digests = self._refresh_digests(cards)
            result, working = self._retrieve(query.strip(), cards, scoped, digests, provider, cancel)
            check(cancel)
            self._digests = digests
            self._embedding_index.adopt(working)
            self._embedding_index.schedule_save()
            return result

    def reindex(self, *, cancel=None) -> ReindexResult:
        """
        Embed every stale card and sync the local index, without a query.

        Raises:
            MissingCredentialError: If no API key is configured
            ProviderError: If every embedding model fails
            Cancelled: If cancelled before the new records are stored
        """
        with self._lock:
            provider = self._get_provider()
            cards = visible_cards(self._cards.list_cards())
            digests = self._refresh_digests(cards)
            self._load_index(cards)
            working = self._embedding_index.copy()
            working.prune({card.id for card in cards})
            stale = len(working.stale_cards(cards))
            working.refresh(
                cards,
                provider,
                models=self._config.embedding_models,
                batch_size=self._config.retrieval.batch_size,
                timeout=self._config.retrieval.document_timeout,
                cancel=cancel,
            )
            retriever = HybridRetriever(
                working, self._get_index_store(), provider, self._config.retrieval,
                models=self._config.embedding_models,
            )
            synced = retriever.sync_store(cards, digests)

            self._digests = digests
            self._embedding_index.adopt(working)
            self._embedding_index.flush()
            logger.info("Reindexed %d stale card(s), %d record(s)", stale, len(working))
            return ReindexResult(
                embedded=stale,
                records=len(working),
                model=working.model,
                synced=synced,
            )

    def suggest(
        self,
        card_id: str,
        action: str = "elaborate",
        options: Optional[list[str]] = None,
        *,
        cancel=None,
    ) -> SuggestionResult:
        """
        Ask the model for five candidate versions of a plot card.

        The prompt carries the context blocks of a chat turn focused on the
        card, plus its ancestor path, the plot and note columns up to it and
        its existing children. The card itself is not changed.

        Args:
            card_id: A visible plot card
            action: ``elaborate``, ``next-scene`` or ``alternative``
            options: Generation option names; balanced if none

        Raises:
            ConfigurationError: If the card, action or an option is unknown, or no key is set
            ValueError: If the card is not a plot card
            ProviderError: If generation fails or fewer than five suggestions come back
            Cancelled: If cancelled; digests and embeddings are unchanged
        """
        card_action = parse_action(action)
        chosen = resolve_options(options)

        with self._lock:
            provider = self._get_provider()
            cards = self._cards.list_cards()
            card = self._find_card(cards, card_id)
            if card.category != PLOT_CATEGORY:
                raise ValueError(f"Suggestions need a {PLOT_CATEGORY} card, {card.id} is {card.category!r}")

            scope = ThreadScope(card_ids=[card.id])
            turn = self._build_turn(
                cards, [card], scope_label(scope, 1),
                generation_query(card, card_action, chosen), provider, cancel,
            )
            prompt = render_suggestion_prompt(
                card, card_action, chosen, build_suggestion_context(card, cards), turn.build.preview,
            )
            response = ContinuationHandler(provider, self._config.generation).generate(
                prompt, self._config.chat_model, cancel,
            )
            suggestions = parse_suggestions(response.text)
            check(cancel)

            self._commit_index(turn)
            logger.info(
                "Suggested %d %s version(s) of card %s, %d total tokens",
                len(suggestions), card_action.name, card.id, response.usage.total_tokens,
            )
            return SuggestionResult(
                card_id=card.id,
                action=card_action.name,
                options=[option.name for option in chosen],
                suggestions=suggestions,
                usage=response.usage,
                preview=turn.build.preview,
                retrieval=turn.retrieval,
                chunks=response.chunks,
            )

    def summarize(self, card_id: str, *, children: bool = False, cancel=None) -> SummaryResult:
        """
        Summarize one card, or with ``children`` the card's child cards.

        Raises:
            ConfigurationError: If the card is unknown or no key is set
            ValueError: If ``children`` is set and the card has fewer than two
            ProviderError: If generation fails or the summary is empty
            Cancelled: If cancelled
        """
        with self._lock:
            provider = self._get_provider()
            cards = self._cards.list_cards()
            card = self._find_card(cards, card_id)
            if children:
                sources = child_cards(card, cards)
                if len(sources) < MIN_SUMMARY_CHILDREN:
                    raise ValueError(
                        f"Card {card.id} has {len(sources)} child card(s), "
                        f"at least {MIN_SUMMARY_CHILDREN} are needed"
                    )
                prompt = children_summary_prompt(sources)
            else:
                sources = []
                prompt = summary_prompt(card)

            response = ContinuationHandler(provider, self._config.generation).generate(
                prompt, self._config.chat_model, cancel,
            )
            text = normalize_summary(response.text)
            if not text:
                raise MalformedResponseError("Model returned an empty summary")
            check(cancel)

            logger.info("Summarized card %s from %d child card(s)", card.id, len(sources))
            return SummaryResult(
                card_id=card.id,
                text=text,
                usage=response.usage,
                children=[c.id for c in sources],
                chunks=response.chunks,
            )

    # -- threads ------------------------------------------------------------

    def list_threads(self) -> list[ChatThread]:
        return self._threads.list_threads()

    def new_thread(self, scope: Optional[ThreadScope] = None) -> ChatThread:
        scope = scope or ThreadScope()
        if scope.type == SCOPE_SELECTED and not scope.card_ids:
            scope = ThreadScope(card_ids=self._cards.selected_card_ids())
        return self._threads.create(scope)

    def select_thread(self, thread_id: str) -> ChatThread:
        try:
            return self._threads.select(thread_id)
        except KeyError:
            raise ConfigurationError(f"Unknown thread: {thread_id}") from None

    def delete_thread(self, thread_id: str) -> bool:
        return self._threads.delete(thread_id)

    # -- lifecycle ----------------------------------------------------------

    def close(self) -> None:
        """Flush pending writes and release the index and provider."""
        if self._closed:
            return
        self._closed = True
        try:
            # An index that was never loaded must not overwrite the file
            if self._index_loaded:
                self._embedding_index.flush()
            self._threads.flush()
        finally:
            if self._index_store is not None:
                self._index_store.close()
                self._index_store = None
            if self._owns_provider and self._provider is not None and hasattr(self._provider, "close"):
                self._provider.close()
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass  # Suppress errors during garbage collection
