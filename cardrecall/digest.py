"""
Card digests: a short summary and a few key facts per card.

A digest is valid while its content hash matches the card's current
trimmed content. Recomputation is lazy: ``build_digest`` returns the
cached digest untouched when it is still valid.
"""

import re
from typing import Iterable, Optional

from .text import EMPTY_TEXT, clamp, content_hash
from .types import CardDigest, CardSnapshot, utc_now

SUMMARY_LENGTH = 140
KEY_FACT_LENGTH = 44
MAX_KEY_FACTS = 4
MIN_FACT_LENGTH = 6

_FACT_SPLIT_RE = re.compile(r"[.!?;]")


def extract_key_facts(
    text: str,
    *,
    max_facts: int = MAX_KEY_FACTS,
    fact_length: int = KEY_FACT_LENGTH,
) -> tuple[str, ...]:
    """
    Split text into sentence-like fragments and keep the first few.

    Fragments shorter than 6 characters are skipped. If nothing qualifies,
    the whole text (clamped) is the single fact, unless it is empty.
    """
    normalized = text.replace("\n", ". ")
    facts: list[str] = []
    for chunk in _FACT_SPLIT_RE.split(normalized):
        trimmed = chunk.strip()
        if len(trimmed) < MIN_FACT_LENGTH:
            continue
        facts.append(clamp(trimmed, fact_length))
        if len(facts) >= max_facts:
            break
    if not facts:
        fallback = clamp(text, fact_length)
        if fallback != EMPTY_TEXT:
            facts = [fallback]
    return tuple(facts)


def build_digest(
    card: CardSnapshot,
    cached: Optional[CardDigest] = None,
    *,
    summary_length: int = SUMMARY_LENGTH,
    fact_length: int = KEY_FACT_LENGTH,
) -> CardDigest:
    """Return ``cached`` if it still matches the card content, else a fresh digest."""
    normalized = card.content.strip()
    current_hash = content_hash(normalized)
    if cached is not None and cached.content_hash == current_hash:
        return cached
    return CardDigest(
        card_id=card.id,
        content_hash=current_hash,
        short_summary=clamp(normalized, summary_length),
        key_facts=extract_key_facts(normalized, fact_length=fact_length),
        updated_at=utc_now(),
    )


def refresh_digests(
    cards: Iterable[CardSnapshot],
    cache: dict[str, CardDigest],
    *,
    summary_length: int = SUMMARY_LENGTH,
    fact_length: int = KEY_FACT_LENGTH,
) -> dict[str, CardDigest]:
    """
    Digest every visible card, reusing valid cache entries.

    Returns a new dict (the input cache is not mutated) holding the old
    entries plus one up-to-date digest per visible card.
    """
    updated = dict(cache)
    for card in cards:
        if not card.is_visible:
            continue
        updated[card.id] = build_digest(
            card,
            updated.get(card.id),
            summary_length=summary_length,
            fact_length=fact_length,
        )
    return updated
