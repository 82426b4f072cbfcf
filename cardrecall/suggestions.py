"""
Card suggestions and summaries.

A suggestion request asks the chat model for five alternative versions of
one plot card: an elaboration, the scene that could follow, or a
different take on the same beat. The prompt carries the shared context a
chat turn builds plus the card's place in the card tree: its ancestor
path, the plot and note columns up to it, and its existing children.

Summaries condense one card, or the children of one card, into a short
entity-dense paragraph.

Everything here is pure: prompts in, parsed results out. Running the
model is the engine's job.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .errors import ConfigurationError, MalformedResponseError
from .text import EMPTY_TEXT, clamp
from .types import CardSnapshot, ContextPreview, visible_cards

logger = logging.getLogger(__name__)

PLOT_CATEGORY = "plot"
NOTE_CATEGORY = "notes"
UNCATEGORIZED = "uncategorized"
SUGGESTION_COUNT = 5
NONE_LINE = "- none"

QUERY_CONTENT_CHARS = 420
SUMMARY_ARTICLE_CHARS = 5600
SUMMARY_CHILD_CHARS = 1400
MIN_SUMMARY_CHILDREN = 2
DETAILED_TAIL = 3


@dataclass(frozen=True)
class CardAction:
    name: str
    label: str
    guideline: str
    length_guideline: str


ELABORATE = CardAction(
    "elaborate",
    "Elaboration suggestions",
    "Keep the meaning of the current card but make its events, actions, "
    "choices and results concrete.",
    "Each content is 3-6 sentences.",
)
NEXT_SCENE = CardAction(
    "next_scene",
    "Next scene suggestions",
    "Propose five different scenes that could directly follow the current card.",
    "Each content is 1-3 sentences.",
)
ALTERNATIVE = CardAction(
    "alternative",
    "Alternative suggestions",
    "Keep the core purpose of the current card but change the approach, "
    "the tone or the order of events.",
    "Each content is 2-4 sentences.",
)

CARD_ACTIONS = {action.name: action for action in (ELABORATE, NEXT_SCENE, ALTERNATIVE)}


def parse_action(name: str) -> CardAction:
    """
    Look up an action by name. Accepts ``next-scene`` and ``next_scene``.

    Raises:
        ConfigurationError: If the name is unknown
    """
    key = name.strip().lower().replace("-", "_")
    try:
        return CARD_ACTIONS[key]
    except KeyError:
        known = ", ".join(n.replace("_", "-") for n in CARD_ACTIONS)
        raise ConfigurationError(f"Unknown action: {name} (expected one of: {known})") from None


@dataclass(frozen=True)
class GenerationOption:
    name: str
    title: str
    instruction: str


BALANCED = GenerationOption(
    "balanced", "Balanced expansion",
    "Keep conflict, choice, emotion and theme in balance and make five different directions.",
)

GENERATION_OPTIONS = (
    BALANCED,
    GenerationOption(
        "conflict", "Conflict",
        "Spread the kinds of conflict: inner, relational, social, physical or "
        "philosophical, at least three kinds across the five.",
    ),
    GenerationOption(
        "choice", "Choice",
        "Design the protagonist's choice so that it splits the plot in clearly different directions.",
    ),
    GenerationOption(
        "secret", "Secret",
        "Build tension from when a secret is revealed and how it is kept hidden.",
    ),
    GenerationOption(
        "twist", "Twist",
        "No forced twists: the reversal must keep the existing theme and causality.",
    ),
    GenerationOption(
        "emotion", "Emotion",
        "Make the cause, the expression and the aftermath of each emotion visible.",
    ),
    GenerationOption(
        "relationship", "Relationship",
        "Create a point where power, trust or dependence between characters shifts.",
    ),
    GenerationOption(
        "worldbuilding", "Worldbuilding",
        "Let the rules or limits of the world drive the events directly.",
    ),
    GenerationOption(
        "symbol", "Symbol",
        "The symbolic scene must actually move the plot and the emotions forward.",
    ),
    GenerationOption(
        "genre_variation", "Genre variation",
        "Play the same event in a different genre tone, such as thriller, "
        "melodrama, noir or black comedy.",
    ),
    GenerationOption(
        "theme_deepening", "Theme deepening",
        "Never state the theme outright; reveal it through actions and consequences.",
    ),
)

_OPTIONS_BY_NAME = {option.name: option for option in GENERATION_OPTIONS}


def resolve_options(names: Optional[Iterable[str]] = None) -> list[GenerationOption]:
    """
    Resolve option names into options, in their canonical order.

    No names means the balanced option alone.

    Raises:
        ConfigurationError: If a name is unknown
    """
    wanted = set()
    for name in names or ():
        key = name.strip().lower().replace("-", "_")
        if not key:
            continue
        if key not in _OPTIONS_BY_NAME:
            known = ", ".join(o.name.replace("_", "-") for o in GENERATION_OPTIONS)
            raise ConfigurationError(f"Unknown option: {name} (expected any of: {known})")
        wanted.add(key)
    if not wanted:
        return [BALANCED]
    return [option for option in GENERATION_OPTIONS if option.name in wanted]


def generation_query(card: CardSnapshot, action: CardAction, options: list[GenerationOption]) -> str:
    """Retrieval query for a suggestion request: what is asked, about which card."""
    content = clamp(card.content, QUERY_CONTENT_CHARS, preserve_line_break=True)
    titles = ", ".join(option.title for option in options)
    return f"{action.label}: {content}\nOptions: {titles}"


# -- card tree ---------------------------------------------------------------

def ancestor_path(card: CardSnapshot, by_id: dict[str, CardSnapshot]) -> list[CardSnapshot]:
    """Root-first path ending at ``card``. A parent cycle ends the walk."""
    path = [card]
    seen = {card.id}
    parent_id = card.parent_id
    while parent_id and parent_id in by_id and parent_id not in seen:
        parent = by_id[parent_id]
        path.append(parent)
        seen.add(parent_id)
        parent_id = parent.parent_id
    path.reverse()
    return path


def column_flow(card: CardSnapshot, cards: list[CardSnapshot], category: str) -> list[CardSnapshot]:
    """
    Visible cards of ``category`` on the same tree level as ``card``,
    up to and including its position, in tree order.
    """
    by_id = {c.id: c for c in cards}
    depth = len(ancestor_path(card, by_id))
    flow = [
        c for c in visible_cards(cards)
        if c.category == category
        and c.order_index <= card.order_index
        and len(ancestor_path(c, by_id)) == depth
    ]
    return sorted(flow, key=CardSnapshot.sort_key)


def child_cards(card: CardSnapshot, cards: list[CardSnapshot]) -> list[CardSnapshot]:
    children = [c for c in visible_cards(cards) if c.parent_id == card.id]
    return sorted(children, key=CardSnapshot.sort_key)


# -- context formatting ------------------------------------------------------

def _category(card: CardSnapshot) -> str:
    return card.category or UNCATEGORIZED


def _card_line(card: CardSnapshot, length: int) -> str:
    return f"[{_category(card)}] {clamp(card.content, length)}"


def compressed_card_memory(
    cards: list[CardSnapshot],
    max_items: int,
    snippet_length: int,
    budget: int,
) -> str:
    """
    One-line digest of many cards: deduplicated snippets joined by " | ".

    Over ``max_items`` snippets, the first and the last ones are kept so
    that both the origin and the recent direction survive.
    """
    snippets: list[str] = []
    seen = set()
    for card in cards:
        text = clamp(card.content, snippet_length)
        if text == EMPTY_TEXT:
            continue
        snippet = f"[{_category(card)}] {' '.join(text.replace(' / ', ' ').split())}"
        key = snippet.lower()
        if key in seen:
            continue
        seen.add(key)
        snippets.append(snippet)

    if not snippets:
        return ""
    if len(snippets) > max_items:
        head = max(1, max_items // 2)
        tail = max_items - head
        snippets = snippets[:head] + snippets[len(snippets) - tail:]
    return clamp(" | ".join(snippets), budget)


def format_card_list(cards: list[CardSnapshot], max_cards: int, max_length: int) -> str:
    if not cards:
        return NONE_LINE
    lines = [
        f"{i}. {_card_line(card, max_length)}"
        for i, card in enumerate(cards[:max_cards], 1)
    ]
    if len(cards) > max_cards:
        lines.append(f"... {len(cards) - max_cards} more omitted")
    return "\n".join(lines)


def adaptive_card_list(cards: list[CardSnapshot], max_cards: int, max_length: int) -> str:
    """
    Numbered card list. When the full list is too long, older cards are
    compressed into one line and the newest few stay detailed.
    """
    if not cards:
        return NONE_LINE
    full = format_card_list(cards, max_cards, max_length)
    wide = max_length >= 240
    if len(full) <= (920 if wide else 760):
        return full

    limited = cards[:max_cards]
    recent_count = min(DETAILED_TAIL, len(limited))
    older = limited[:len(limited) - recent_count]
    recent = limited[len(limited) - recent_count:]

    lines = []
    if older:
        compressed = compressed_card_memory(older, 8, 60 if wide else 54, 520 if wide else 440)
        if compressed:
            lines.append(f"Earlier cards ({len(older)}): {compressed}")
    lines.append("Recent cards (detailed):")
    for offset, card in enumerate(recent, len(older) + 1):
        lines.append(f"{offset}. {_card_line(card, min(max_length, 170))}")
    if len(cards) > max_cards:
        lines.append(f"... {len(cards) - max_cards} more omitted")
    return "\n".join(lines)


def _path_label(index: int, count: int) -> str:
    return "Current" if index == count - 1 else f"Step {index + 1}"


def adaptive_card_path(path: list[CardSnapshot]) -> str:
    """The path from the root to the current card, compressed when long."""
    if not path:
        return NONE_LINE
    lines = [
        f"{_path_label(i, len(path))}: {_card_line(card, 240)}"
        for i, card in enumerate(path)
    ]
    full = "\n".join(lines)
    if len(full) <= 680:
        return full

    recent_count = min(DETAILED_TAIL, len(path))
    older = path[:len(path) - recent_count]
    lines = []
    if older:
        compressed = compressed_card_memory(older, 8, 54, 420)
        if compressed:
            lines.append(f"Earlier steps ({len(older)}): {compressed}")
    for i in range(len(older), len(path)):
        lines.append(f"{_path_label(i, len(path))}: {_card_line(path[i], 170)}")
    return "\n".join(lines)


def parent_anchors(path: list[CardSnapshot]) -> str:
    """Ancestors of the current card that the suggestions must stay true to."""
    ancestors = path[:-1]
    if not ancestors:
        return NONE_LINE
    if len(ancestors) <= 3:
        return "\n".join(
            f"{'Direct parent' if i == len(ancestors) - 1 else f'Ancestor {i + 1}'}: "
            f"{_card_line(card, 150)}"
            for i, card in enumerate(ancestors)
        )

    lines = [f"Origin: {_card_line(ancestors[0], 150)}"]
    middle = ancestors[1:-2]
    if middle:
        compressed = compressed_card_memory(middle, 5, 52, 320)
        if compressed:
            lines.append(f"Middle steps: {compressed}")
    lines.append(f"Ancestor: {_card_line(ancestors[-2], 150)}")
    lines.append(f"Direct parent: {_card_line(ancestors[-1], 150)}")
    return "\n".join(lines)


def note_foundation(notes: list[CardSnapshot]) -> str:
    """The intent recorded in note cards, oldest first."""
    limited = notes[:10]
    if not limited:
        return NONE_LINE
    if len(limited) <= 3:
        return "\n".join(
            f"{'Founding intent' if i == 0 else f'Supporting intent {i}'}: {_card_line(card, 160)}"
            for i, card in enumerate(limited)
        )

    lines = [f"Founding intent: {_card_line(limited[0], 170)}"]
    middle = limited[1:-2]
    if middle:
        compressed = compressed_card_memory(middle, 5, 50, 300)
        if compressed:
            lines.append(f"Middle notes: {compressed}")
    lines.append(f"Recent note: {_card_line(limited[-2], 140)}")
    lines.append(f"Latest note: {_card_line(limited[-1], 140)}")
    return "\n".join(lines)


@dataclass
class SuggestionContext:
    """Tree neighbourhood of the card a suggestion is made for."""
    path: list[CardSnapshot] = field(default_factory=list)
    plot_flow: list[CardSnapshot] = field(default_factory=list)
    note_flow: list[CardSnapshot] = field(default_factory=list)
    children: list[CardSnapshot] = field(default_factory=list)


def build_suggestion_context(card: CardSnapshot, cards: list[CardSnapshot]) -> SuggestionContext:
    by_id = {c.id: c for c in cards}
    return SuggestionContext(
        path=ancestor_path(card, by_id),
        plot_flow=column_flow(card, cards, PLOT_CATEGORY),
        note_flow=column_flow(card, cards, NOTE_CATEGORY),
        children=child_cards(card, cards),
    )


SUGGESTION_PREAMBLE = """You are a story development partner for a writer.
The writer keeps the story as cards arranged in a tree: every card can
have child cards that expand it. Propose new versions of the current card."""

SUGGESTION_RULES = """[Constraints]
- Stay consistent with the parent anchors and the note foundation.
- Do not repeat the content of the existing child cards.
- Every suggestion takes a clearly different direction.
- Write in the language of the current card.
- No markdown, no commentary outside the JSON."""


def _shared_blocks(shared: Optional[ContextPreview]) -> list[str]:
    if shared is None:
        return []
    blocks = [
        f"[Focused context]\n{shared.scoped_context}",
        f"[Question-related cards]\n{shared.retrieval_context}",
    ]
    for category, summary in shared.lane_summaries.items():
        blocks.append(f"[Lane summary: {category}]\n{summary}")
    return blocks


def render_suggestion_prompt(
    card: CardSnapshot,
    action: CardAction,
    options: list[GenerationOption],
    context: SuggestionContext,
    shared: Optional[ContextPreview] = None,
) -> str:
    """
    Full suggestion prompt.

    ``shared`` carries the context blocks of a regular chat turn (focused
    card, related cards, category lanes); the tree context follows them.
    The model must answer with a JSON object holding exactly
    ``SUGGESTION_COUNT`` suggestions.
    """
    directions = "\n".join(f"- {option.title}: {option.instruction}" for option in options)
    schema = json.dumps(
        {"suggestions": [{"title": "short title", "content": "card text", "rationale": "why it works"}]},
        ensure_ascii=False,
    )
    sections = [
        SUGGESTION_PREAMBLE,
        *_shared_blocks(shared),
        f"[Task]\n{action.label}. {action.guideline}\n{action.length_guideline}",
        f"[Directions]\n{directions}",
        SUGGESTION_RULES,
        f"[Parent anchors]\n{parent_anchors(context.path)}",
        f"[Path to the current card]\n{adaptive_card_path(context.path)}",
        f"[Note foundation]\n{note_foundation(context.note_flow)}",
        f"[Note flow]\n{adaptive_card_list(context.note_flow, 12, 240)}",
        f"[Story flow]\n{adaptive_card_list(context.plot_flow, 16, 240)}",
        f"[Current card]\n{_card_line(card, 900)}",
        f"[Existing child cards]\n{adaptive_card_list(context.children, 10, 180)}",
        f"[Output format]\nAnswer with JSON only, exactly {SUGGESTION_COUNT} items:\n{schema}",
    ]
    return "\n\n".join(sections)


# -- parsing -----------------------------------------------------------------

@dataclass
class Suggestion:
    title: str
    content: str
    rationale: Optional[str] = None

    @property
    def card_text(self) -> str:
        """Text for a new card: the title heads the content unless already there."""
        if self.content.startswith(self.title):
            return self.content
        return f"{self.title}\n{self.content}"

    def to_dict(self) -> dict:
        return {"title": self.title, "content": self.content, "rationale": self.rationale}


def strip_code_fence(text: str) -> str:
    """Remove a surrounding Markdown code fence, if any."""
    result = text.strip()
    if result.startswith("```"):
        newline = result.find("\n")
        result = result[newline + 1:] if newline >= 0 else ""
        closing = result.rfind("```")
        if closing >= 0:
            result = result[:closing]
    return result.strip()


def _between(text: str, opening: str, closing: str) -> Optional[str]:
    start = text.find(opening)
    end = text.rfind(closing)
    if start < 0 or end <= start:
        return None
    return text[start:end + 1]


def _decode_items(text: str) -> Optional[list]:
    for candidate in (text, _between(text, "{", "}"), _between(text, "[", "]")):
        if not candidate:
            continue
        try:
            payload = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(payload, dict) and isinstance(payload.get("suggestions"), list):
            return payload["suggestions"]
        if isinstance(payload, list):
            return payload
    return None


def parse_suggestions(text: str, count: int = SUGGESTION_COUNT) -> list[Suggestion]:
    """
    Parse a model answer into exactly ``count`` suggestions.

    Accepts a ``{"suggestions": [...]}`` object or a bare list, with or
    without a code fence or surrounding prose. Entries without content
    are dropped; a missing title becomes "Suggestion N".

    Raises:
        MalformedResponseError: If no JSON is found or fewer than ``count`` entries remain
    """
    items = _decode_items(strip_code_fence(text))
    if items is None:
        raise MalformedResponseError("Model answer holds no suggestion JSON")

    suggestions = []
    for index, item in enumerate(items, 1):
        if not isinstance(item, dict):
            continue
        content = str(item.get("content") or "").strip()
        if not content:
            continue
        title = str(item.get("title") or "").strip() or f"Suggestion {index}"
        rationale = str(item.get("rationale") or "").strip() or None
        suggestions.append(Suggestion(title, content, rationale))

    if len(suggestions) < count:
        raise MalformedResponseError(f"Expected {count} suggestions, got {len(suggestions)}")
    if len(suggestions) > count:
        logger.debug("Dropping %d extra suggestion(s)", len(suggestions) - count)
    return suggestions[:count]


# -- summaries ---------------------------------------------------------------

DENSE_SUMMARY_TEMPLATE = """[Article]
{article}

You will generate increasingly concise, entity-dense summaries of the
Article above. Repeat the following two steps 5 times.

Step 1. Identify 1-3 informative entities from the Article which are
missing from the previously generated summary.
Step 2. Write a new, denser summary of identical length which covers
every entity and detail from the previous summary plus the missing
entities.

A missing entity is relevant to the main story, specific yet concise,
novel (not in the previous summary), faithful (present in the Article)
and may appear anywhere in the Article.

Guidelines:
- The first summary should be long (4-5 sentences) yet highly
  non-specific, containing little information beyond the entities
  marked as missing.
- Make every word count: rewrite the previous summary to improve flow
  and make space for additional entities.
- Make space with fusion, compression and removal of uninformative
  phrases.
- The summaries should become highly dense and concise yet
  self-contained, understandable without the Article.
- Missing entities can appear anywhere in the new summary.
- Never drop entities from the previous summary.

Write in the language of the Article.
Output only the final, densest summary as plain prose: no steps,
no lists, no headings, no JSON."""


def summary_prompt(card: CardSnapshot) -> str:
    article = clamp(card.content, SUMMARY_ARTICLE_CHARS, preserve_line_break=True)
    return DENSE_SUMMARY_TEMPLATE.format(article=article)


def children_summary_prompt(children: list[CardSnapshot]) -> str:
    """
    Summary prompt over several child cards, one numbered entry each.

    Raises:
        ValueError: If fewer than ``MIN_SUMMARY_CHILDREN`` cards are given
    """
    if len(children) < MIN_SUMMARY_CHILDREN:
        raise ValueError(f"Need at least {MIN_SUMMARY_CHILDREN} child cards to summarize")
    article = "\n\n".join(
        f"{i}. {clamp(card.content, SUMMARY_CHILD_CHARS, preserve_line_break=True)}"
        for i, card in enumerate(children, 1)
    )
    return DENSE_SUMMARY_TEMPLATE.format(article=article)


def normalize_summary(text: str) -> str:
    """Clean a model summary: no code fence, no tabs, at most one blank line in a row."""
    result = strip_code_fence(text.replace("\r\n", "\n"))
    result = result.replace("\t", " ")
    result = re.sub(r"\n{3,}", "\n\n", result)
    return result.strip()
