"""
Card sources and thread scope resolution.

The card tree itself lives in the editor; here it is read as snapshots,
either from a JSON export of the workspace or from memory.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .errors import ConfigurationError
from .types import CardSnapshot, visible_cards

logger = logging.getLogger(__name__)

SCOPE_SELECTED = "selected"
SCOPE_CATEGORY = "category"


def card_from_dict(data: dict) -> CardSnapshot:
    """Build a snapshot from an export record (camelCase or snake_case keys)."""
    def pick(*names, default=None):
        for name in names:
            if name in data and data[name] is not None:
                return data[name]
        return default

    return CardSnapshot(
        id=str(data["id"]),
        category=str(pick("category", default="") or ""),
        content=str(pick("content", default="") or ""),
        order_index=int(pick("order_index", "orderIndex", default=0)),
        created_at=str(pick("created_at", "createdAt", default="")),
        parent_id=pick("parent_id", "parentID", "parentId"),
        is_archived=bool(pick("is_archived", "isArchived", default=False)),
        is_floating=bool(pick("is_floating", "isFloating", default=False)),
    )


class InMemoryCardRepository:
    """Cards held in a list; the selection is a list of card IDs."""

    def __init__(self, cards: Optional[list[CardSnapshot]] = None, selection: Optional[list[str]] = None):
        self._cards = list(cards or [])
        self._selection = list(selection or [])

    def list_cards(self) -> list[CardSnapshot]:
        return list(self._cards)

    def selected_card_ids(self) -> list[str]:
        return list(self._selection)

    def set_cards(self, cards: list[CardSnapshot]) -> None:
        self._cards = list(cards)

    def select(self, card_ids: list[str]) -> None:
        self._selection = list(card_ids)


class JsonCardRepository:
    """
    Reads ``{"cards": [...], "selection": [...]}`` from a workspace export.

    The file is re-read on every call so edits in the editor are seen by
    the next request.
    """

    def __init__(self, path: Path):
        self._path = Path(path)

    def _load(self) -> dict:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise ConfigurationError(f"Card file not found: {self._path}") from e
        except ValueError as e:
            raise ConfigurationError(f"Card file is not valid JSON: {self._path}: {e}") from e
        if isinstance(data, list):
            return {"cards": data, "selection": []}
        return data

    def list_cards(self) -> list[CardSnapshot]:
        cards = []
        for record in self._load().get("cards", []):
            try:
                cards.append(card_from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed card record: %s", e)
        return cards

    def selected_card_ids(self) -> list[str]:
        return [str(cid) for cid in self._load().get("selection", [])]


@dataclass
class ThreadScope:
    """
    What a thread is focused on.

    ``selected``: explicit card IDs (the live selection wins when present).
    ``category``: every visible card of one category, e.g. a plot lane.
    """
    type: str = SCOPE_SELECTED
    card_ids: list[str] = field(default_factory=list)
    category: Optional[str] = None

    @classmethod
    def parse(cls, spec: str) -> "ThreadScope":
        """Parse ``selected`` or ``category:<name>``."""
        spec = spec.strip()
        if spec == SCOPE_SELECTED:
            return cls()
        if spec.startswith(f"{SCOPE_CATEGORY}:") and spec[len(SCOPE_CATEGORY) + 1:].strip():
            return cls(type=SCOPE_CATEGORY, category=spec[len(SCOPE_CATEGORY) + 1:].strip())
        raise ConfigurationError(f"Unknown scope: {spec!r} (use 'selected' or 'category:<name>')")

    @property
    def name(self) -> str:
        if self.type == SCOPE_CATEGORY:
            return f"{SCOPE_CATEGORY}:{self.category}"
        return SCOPE_SELECTED

    def to_dict(self) -> dict:
        return {"type": self.type, "card_ids": list(self.card_ids), "category": self.category}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ThreadScope":
        if not data:
            return cls()
        return cls(
            type=data.get("type") or SCOPE_SELECTED,
            card_ids=[str(c) for c in data.get("card_ids") or []],
            category=data.get("category"),
        )


def resolve_scope(
    scope: ThreadScope,
    cards: list[CardSnapshot],
    live_selection: Optional[list[str]] = None,
) -> list[CardSnapshot]:
    """Visible cards the scope refers to, in input order."""
    visible = visible_cards(cards)
    if scope.type == SCOPE_CATEGORY:
        return [card for card in visible if card.category == scope.category]
    ids = set(live_selection or []) or set(scope.card_ids)
    return [card for card in visible if card.id in ids]


def scope_label(scope: ThreadScope, card_count: int) -> str:
    noun = "card" if card_count == 1 else "cards"
    return f"{scope.name} ({card_count} {noun})"
