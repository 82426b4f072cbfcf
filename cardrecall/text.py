"""
Text helpers shared by digesting, retrieval and prompt assembly.

All functions here are pure and synchronous.
"""

import hashlib
from collections import Counter

EMPTY_TEXT = "(empty)"
ELLIPSIS = "..."
# Appended (or prepended) to a block when at least one candidate line was dropped
TRUNCATED_MARKER = "... (truncated)"

# Precomposed Hangul syllables
_HANGUL_FIRST = 0xAC00
_HANGUL_LAST = 0xD7A3


def content_hash(content: str) -> str:
    """Hash of trimmed card content. Digest and embedding freshness key."""
    normalized = content.strip()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]


def clamp(text: str, max_length: int, *, preserve_line_break: bool = False) -> str:
    """
    Normalize and shorten text to at most ``max_length`` characters.

    Newlines become " / " unless ``preserve_line_break`` is set; tabs become
    spaces. Empty input yields ``EMPTY_TEXT``. Overlong input is cut and
    suffixed with "..." so that the result, suffix included, fits.
    """
    normalized = text.strip()
    if not preserve_line_break:
        normalized = normalized.replace("\r\n", "\n").replace("\n", " / ")
    normalized = normalized.replace("\t", " ")
    if not normalized:
        return EMPTY_TEXT[:max(max_length, 0)]
    if len(normalized) <= max_length:
        return normalized
    if max_length <= len(ELLIPSIS):
        return normalized[:max(max_length, 0)]
    return normalized[:max_length - len(ELLIPSIS)] + ELLIPSIS


def is_hangul(char: str) -> bool:
    return _HANGUL_FIRST <= ord(char) <= _HANGUL_LAST


def contains_hangul(text: str) -> bool:
    return any(is_hangul(c) for c in text)


def hangul_bigrams(word: str) -> list[str]:
    """All adjacent character pairs, for partial-syllable matching."""
    if len(word) < 2:
        return []
    return [word[i:i + 2] for i in range(len(word) - 1)]


def search_tokens(text: str) -> list[str]:
    """
    Tokenize text for lexical matching.

    Lowercases, keeps runs of letters/digits/Hangul syllables, drops
    tokens shorter than 2 characters. Hangul tokens additionally emit
    their character bigrams.
    """
    lowered = text.lower()
    cleaned = "".join(c if (c.isalnum() or is_hangul(c)) else " " for c in lowered)
    tokens: list[str] = []
    for word in cleaned.split():
        if len(word) < 2:
            continue
        tokens.append(word)
        if contains_hangul(word):
            tokens.extend(hangul_bigrams(word))
    return tokens


def term_frequency(tokens: list[str]) -> Counter:
    return Counter(tokens)


def fit_lines(
    lines: list[str],
    budget: int,
    *,
    marker: str,
    separator: str = "\n",
    marker_at_start: bool = False,
) -> tuple[list[str], bool]:
    """
    Greedily keep leading ``lines`` while the joined text stays within ``budget``.

    When at least one line is dropped, ``marker`` is added (at the end, or at
    the start with ``marker_at_start``). Room for the marker is reserved
    inside the budget, removing kept lines if needed, so the joined result
    never exceeds ``budget``.

    Returns:
        (kept lines including any marker, whether anything was dropped)
    """
    kept: list[str] = []
    used = 0
    truncated = False
    for line in lines:
        cost = len(line) + (len(separator) if kept else 0)
        if used + cost > budget:
            truncated = True
            break
        kept.append(line)
        used += cost

    if not truncated:
        return kept, False

    def joined_length(items: list[str]) -> int:
        return sum(len(i) for i in items) + len(separator) * max(len(items) - 1, 0)

    while kept and joined_length(kept + [marker]) > budget:
        kept.pop()
    if joined_length(kept + [marker]) <= budget:
        if marker_at_start:
            kept.insert(0, marker)
        else:
            kept.append(marker)
    return kept, True
