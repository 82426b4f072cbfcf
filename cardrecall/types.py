"""
Data types for the card memory engine.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> str:
    """Current UTC timestamp in canonical format: YYYY-MM-DDTHH:MM:SS.ffffffZ.

    All persisted timestamps use this wire format. Fixed width, so stored
    strings sort in time order.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Accepts the canonical format as well as plain ISO strings with or
    without an offset.
    """
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class CardSnapshot:
    """
    Read-only view of one card, as supplied by the card repository.

    Only cards that are neither archived nor floating take part in
    retrieval and prompt assembly.
    """
    id: str
    category: str
    content: str
    order_index: int = 0
    created_at: str = ""
    parent_id: Optional[str] = None
    is_archived: bool = False
    is_floating: bool = False

    @property
    def is_visible(self) -> bool:
        return not self.is_archived and not self.is_floating

    def sort_key(self) -> tuple[int, str]:
        """Tree order: orderIndex first, then creation time."""
        return (self.order_index, self.created_at)


def visible_cards(cards) -> list[CardSnapshot]:
    """Filter out archived and floating cards, preserving input order."""
    return [card for card in cards if card.is_visible]


@dataclass(frozen=True)
class CardDigest:
    """Short summary + key facts for a card, valid while content_hash matches."""
    card_id: str
    content_hash: str
    short_summary: str
    key_facts: tuple[str, ...]
    updated_at: str


@dataclass(frozen=True)
class EmbeddingRecord:
    """One card's embedding vector and the content hash it was computed from."""
    card_id: str
    content_hash: str
    vector: tuple[float, ...]
    updated_at: str

    def to_dict(self) -> dict:
        return {
            "card_id": self.card_id,
            "content_hash": self.content_hash,
            "vector": list(self.vector),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EmbeddingRecord":
        return cls(
            card_id=str(data["card_id"]),
            content_hash=str(data["content_hash"]),
            vector=tuple(float(v) for v in data.get("vector") or ()),
            updated_at=str(data.get("updated_at") or ""),
        )


@dataclass
class TokenUsage:
    """Prompt/output/total token counters, accumulated across calls."""
    prompt_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: "TokenUsage") -> None:
        self.prompt_tokens += max(other.prompt_tokens, 0)
        self.output_tokens += max(other.output_tokens, 0)
        self.total_tokens += max(other.total_tokens, 0)

    def clamped(self) -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=max(self.prompt_tokens, 0),
            output_tokens=max(self.output_tokens, 0),
            total_tokens=max(self.total_tokens, 0),
        )

    def to_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "TokenUsage":
        if not data:
            return cls()
        return cls(
            prompt_tokens=int(data.get("prompt_tokens", 0)),
            output_tokens=int(data.get("output_tokens", 0)),
            total_tokens=int(data.get("total_tokens", 0)),
        ).clamped()


@dataclass(frozen=True)
class HistoryMessage:
    """A role/text pair from the conversation, as seen by the prompt builder."""
    role: str  # "user" or "model"
    text: str


@dataclass(frozen=True)
class ContextPreview:
    """
    The literal context blocks that went into a prompt.

    Exposed for UI inspection; every field is the exact text used.
    """
    scope_label: str
    scoped_context: str
    retrieval_context: str
    lane_summaries: dict[str, str]
    rolling_summary: str
    history_summary: str
    question: str


@dataclass
class PromptBuildResult:
    prompt: str
    digests: dict[str, CardDigest]
    rolling_summary: str
    preview: ContextPreview


@dataclass
class ChatResponse:
    """Final merged model answer plus usage accumulated over all chunks."""
    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    chunks: int = 1
