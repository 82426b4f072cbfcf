"""
Prompt assembly under per-section character budgets.

The prompt has a fixed section order: preamble, scope label, scoped
context, retrieval context, category lanes, rolling summary, recent
history, question, response rules. Every block is packed greedily
line by line and never exceeds its cap; a block that dropped at least
one candidate line carries ``TRUNCATED_MARKER``.
"""

import logging
from typing import Optional

from .config import PromptBudgets, RetrievalConfig
from .digest import refresh_digests
from .retrieval import LexicalStrategy, RetrievalRequest, run_strategies
from .text import TRUNCATED_MARKER, clamp, fit_lines
from .types import (
    CardDigest,
    CardSnapshot,
    ContextPreview,
    HistoryMessage,
    PromptBuildResult,
    visible_cards,
)

logger = logging.getLogger(__name__)

NO_SCOPED_CARDS = "(no cards in scope)"
NO_LANE_CARDS = "(no cards in this lane)"
NO_CONVERSATION = "(no conversation)"
NO_SUMMARY = "(no summary)"

PREAMBLE = """You are a story consultant and creative partner for a writer.
The writer keeps the story as cards: plot beats, notes, characters.
Read the whole card set as background and answer the question about
the focused cards, showing how a change there affects the larger story.
Answer only what was asked, concisely."""

RULES = """[Response rules]
- Answer the question directly; no headings or preamble.
- Keep it to 3-6 sentences unless the writer asks for a length.
- Finish every sentence; do not stop mid-thought.
- Keep plot, notes and character facts consistent with each other.
- No code blocks or JSON."""


def _ordered(cards: list[CardSnapshot]) -> list[CardSnapshot]:
    return sorted(visible_cards(cards), key=CardSnapshot.sort_key)


def _pack(lines: list[str], budget: int, *, separator: str = "\n", marker_at_start: bool = False) -> str:
    kept, _ = fit_lines(
        lines, budget,
        marker=TRUNCATED_MARKER,
        separator=separator,
        marker_at_start=marker_at_start,
    )
    return separator.join(kept)


def build_scoped_context(
    scoped_cards: list[CardSnapshot],
    digests: dict[str, CardDigest],
    budgets: PromptBudgets,
) -> str:
    """Focus cards in tree order: ``[category] summary | fact / fact / fact``."""
    lines = []
    for card in _ordered(scoped_cards):
        digest = digests.get(card.id)
        if digest is None:
            continue
        facts = " / ".join(digest.key_facts[:budgets.scoped_facts])
        line = f"[{card.category}] {digest.short_summary}"
        if facts:
            line = f"{line} | {facts}"
        lines.append(line)
    text = _pack(lines, budgets.scoped)
    if not text or text == TRUNCATED_MARKER:
        return clamp(NO_SCOPED_CARDS, budgets.scoped)
    return text


def lane_categories(cards: list[CardSnapshot], budgets: PromptBudgets) -> list[str]:
    """Configured lanes, or every category present among visible cards."""
    if budgets.lanes:
        return list(budgets.lanes)
    return sorted({card.category for card in visible_cards(cards)})


def build_lane_summary(
    cards: list[CardSnapshot],
    digests: dict[str, CardDigest],
    category: str,
    budgets: PromptBudgets,
) -> str:
    """One ``- summary`` line per card of ``category``, in tree order."""
    lines = [
        f"- {digests[card.id].short_summary}"
        for card in _ordered(cards)
        if card.category == category and card.id in digests
    ]
    text = _pack(lines, budgets.lane)
    if not text or text == TRUNCATED_MARKER:
        return clamp(NO_LANE_CARDS, budgets.lane)
    return text


def build_history_summary(
    history: list[HistoryMessage],
    budgets: PromptBudgets,
    *,
    max_messages: Optional[int] = None,
) -> str:
    """
    The most recent messages, each clamped, separated by blank lines.

    When over budget the newest messages are kept and the marker goes on
    top, where the omitted older messages would have been.
    """
    count = budgets.history_messages if max_messages is None else max_messages
    recent = history[-count:] if count > 0 else []
    if not recent:
        return clamp(NO_CONVERSATION, budgets.history)
    lines = []
    for message in recent:
        role = "User" if message.role == "user" else "AI"
        lines.append(f"{role}: {clamp(message.text, budgets.history_message_chars, preserve_line_break=True)}")
    # Pack newest-first so the oldest lines are the ones dropped
    kept, truncated = fit_lines(
        list(reversed(lines)), budgets.history,
        marker=TRUNCATED_MARKER, separator="\n\n",
    )
    if truncated and kept and kept[-1] == TRUNCATED_MARKER:
        kept = kept[:-1]
        kept.reverse()
        kept.insert(0, TRUNCATED_MARKER)
    else:
        kept.reverse()
    if not kept or kept == [TRUNCATED_MARKER]:
        return clamp(NO_CONVERSATION, budgets.history)
    return "\n\n".join(kept)


def build_rolling_summary(
    previous: str,
    history: list[HistoryMessage],
    budgets: PromptBudgets,
) -> str:
    """Fold the previous summary with the latest history window."""
    parts = []
    if previous.strip():
        parts.append(clamp(previous, budgets.rolling_previous_chars, preserve_line_break=True).strip())
    latest = build_history_summary(history, budgets, max_messages=budgets.rolling_window).strip()
    if latest and latest != clamp(NO_CONVERSATION, budgets.history):
        parts.append(latest)
    if not parts:
        return clamp(NO_SUMMARY, budgets.rolling)
    return clamp("\n".join(parts), budgets.rolling, preserve_line_break=True)


def fit_retrieval_context(text: str, budgets: PromptBudgets) -> str:
    """Re-fit externally supplied retrieval text to the retrieval cap."""
    lines = [line for line in text.split("\n") if line != TRUNCATED_MARKER]
    dropped_before = len(lines) != len(text.split("\n"))
    kept, truncated = fit_lines(lines, budgets.retrieval, marker=TRUNCATED_MARKER)
    if dropped_before and not truncated:
        # Upstream already dropped lines; keep the marker within this cap too
        while kept and len("\n".join(kept + [TRUNCATED_MARKER])) > budgets.retrieval:
            kept.pop()
        if len(TRUNCATED_MARKER) <= budgets.retrieval:
            kept.append(TRUNCATED_MARKER)
    return "\n".join(kept)


def build_prompt(
    all_cards: list[CardSnapshot],
    scoped_cards: list[CardSnapshot],
    scope_label: str,
    history: list[HistoryMessage],
    last_user_message: str,
    previous_rolling_summary: str,
    digest_cache: dict[str, CardDigest],
    refresh_rolling_summary: bool,
    semantic_context: Optional[str] = None,
    budgets: Optional[PromptBudgets] = None,
    retrieval_config: Optional[RetrievalConfig] = None,
) -> PromptBuildResult:
    """
    Assemble the chat prompt.

    Digests are refreshed for every visible card and returned as a new
    cache. When ``semantic_context`` is None the retrieval block comes from
    an in-memory TF-IDF ranking rendered in the same line format.

    The rolling summary is rebuilt when ``refresh_rolling_summary`` is set
    or the previous one is empty; otherwise it passes through verbatim.
    """
    budgets = budgets or PromptBudgets()
    retrieval_config = retrieval_config or RetrievalConfig(line_budget=budgets.retrieval)
    digests = refresh_digests(
        all_cards, digest_cache,
        summary_length=budgets.card_summary,
        fact_length=budgets.key_fact,
    )
    visible = visible_cards(all_cards)

    scoped_context = build_scoped_context(scoped_cards, digests, budgets)
    lanes = {
        category: build_lane_summary(visible, digests, category, budgets)
        for category in lane_categories(visible, budgets)
    }
    history_summary = build_history_summary(history, budgets)

    preserved = previous_rolling_summary.strip()
    if refresh_rolling_summary or not preserved:
        rolling_summary = build_rolling_summary(previous_rolling_summary, history, budgets)
    else:
        rolling_summary = clamp(preserved, budgets.rolling, preserve_line_break=True)

    question = clamp(last_user_message, budgets.question, preserve_line_break=True)

    if semantic_context is None:
        request = RetrievalRequest(
            query=last_user_message,
            cards=visible,
            scoped_ids={card.id for card in scoped_cards},
            digests=digests,
        )
        strategy = LexicalStrategy(retrieval_config, card_chars=budgets.fallback_card_chars)
        semantic_context = run_strategies([strategy], request).text
    retrieval_context = fit_retrieval_context(semantic_context, budgets)

    sections = [
        PREAMBLE,
        f"[Thread scope]\n{scope_label}",
        f"[Focused context]\n{scoped_context}",
        f"[Question-related cards]\n{retrieval_context}",
    ]
    for category, summary in lanes.items():
        sections.append(f"[Lane summary: {category}]\n{summary}")
    sections.extend([
        f"[Thread rolling summary]\n{rolling_summary}",
        f"[Recent conversation]\n{history_summary}",
        f"[User's latest question]\n{question}",
        RULES,
    ])
    prompt = "\n\n".join(sections)

    preview = ContextPreview(
        scope_label=scope_label,
        scoped_context=scoped_context,
        retrieval_context=retrieval_context,
        lane_summaries=lanes,
        rolling_summary=rolling_summary,
        history_summary=history_summary,
        question=question,
    )
    logger.debug("Built prompt: %d chars, %d lane(s)", len(prompt), len(lanes))
    return PromptBuildResult(
        prompt=prompt,
        digests=digests,
        rolling_summary=rolling_summary,
        preview=preview,
    )
