"""
Per-workspace embedding index: card ID -> (vector, content hash, updated-at).

Freshness is content-addressed: a record is usable while its content hash
matches the card's current trimmed content. The index is capped; the
least recently updated records are evicted first. Persistence is a JSON
file written through a debounced timer.
"""

import json
import logging
import os
import tempfile
import threading
from collections import Counter
from pathlib import Path
from typing import Iterable, Optional

from .cancellation import check
from .errors import MalformedResponseError
from .providers.base import RETRIEVAL_DOCUMENT, embed_with_fallback
from .text import content_hash
from .types import CardSnapshot, EmbeddingRecord, utc_now

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-embedding-001"
MAX_RECORDS = 1200
MAX_INPUT_CHARS = 1800
SAVE_DELAY = 0.8


def clipped_embedding_input(card: CardSnapshot, max_chars: int = MAX_INPUT_CHARS) -> str:
    """Text sent to the embedding model for a card: category header plus content."""
    normalized = f"[{card.category}]\n{card.content}".strip()
    return normalized[:max_chars]


def newest_first(records: Iterable[EmbeddingRecord]) -> list[EmbeddingRecord]:
    """Sort by updated_at descending; card_id breaks ties for a stable order."""
    ordered = sorted(records, key=lambda r: r.card_id)
    return sorted(ordered, key=lambda r: r.updated_at, reverse=True)


class EmbeddingIndex:
    """
    In-memory embedding records with optional JSON persistence.

    All mutation goes through methods holding ``self._lock``. Callers that
    must not publish partial work (a request that may still be cancelled)
    refresh a ``copy()`` and hand it back through ``adopt()``.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        *,
        model: str = DEFAULT_MODEL,
        max_records: int = MAX_RECORDS,
        save_delay: float = SAVE_DELAY,
        max_input_chars: int = MAX_INPUT_CHARS,
    ):
        self._path = Path(path) if path is not None else None
        self._model = model
        self._max_records = max_records
        self._save_delay = save_delay
        self._max_input_chars = max_input_chars
        self._records: dict[str, EmbeddingRecord] = {}
        self._lock = threading.RLock()
        self._save_timer: Optional[threading.Timer] = None

    # -- inspection ---------------------------------------------------------

    @property
    def model(self) -> str:
        return self._model

    @property
    def max_records(self) -> int:
        return self._max_records

    @property
    def dimension(self) -> Optional[int]:
        """Most common vector length among the records, or None when empty."""
        with self._lock:
            lengths = Counter(len(r.vector) for r in self._records.values() if r.vector)
        if not lengths:
            return None
        return lengths.most_common(1)[0][0]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, card_id: str) -> bool:
        with self._lock:
            return card_id in self._records

    def get(self, card_id: str) -> Optional[EmbeddingRecord]:
        with self._lock:
            return self._records.get(card_id)

    def records(self) -> dict[str, EmbeddingRecord]:
        """Snapshot of the current records."""
        with self._lock:
            return dict(self._records)

    def is_stale(self, card: CardSnapshot, dimension: Optional[int] = None) -> bool:
        """
        True if the card has no usable record: missing, empty vector,
        content changed, or vector length differs from the index dimension.

        ``dimension`` defaults to ``self.dimension``; pass it in when
        checking many cards against the same index.
        """
        record = self.get(card.id)
        if record is None or not record.vector:
            return True
        if record.content_hash != content_hash(card.content):
            return True
        if dimension is None:
            dimension = self.dimension
        return dimension is not None and len(record.vector) != dimension

    def stale_cards(self, cards: Iterable[CardSnapshot]) -> list[CardSnapshot]:
        dimension = self.dimension
        return [card for card in cards if card.is_visible and self.is_stale(card, dimension)]

    def model_candidates(self, configured: list[str], preferred: Optional[str] = None) -> list[str]:
        """
        Models to try, in order: ``preferred``, the model that produced the
        stored vectors, then the configured fallbacks. Duplicates removed.
        """
        candidates: list[str] = []
        for name in [preferred, self._model, *configured]:
            name = (name or "").strip()
            if name and name not in candidates:
                candidates.append(name)
        return candidates or [DEFAULT_MODEL]

    # -- mutation -----------------------------------------------------------

    def put(self, record: EmbeddingRecord) -> None:
        with self._lock:
            self._records[record.card_id] = record

    def refresh(
        self,
        cards: list[CardSnapshot],
        provider,
        *,
        models: list[str],
        batch_size: int = 24,
        timeout: Optional[float] = None,
        cancel=None,
    ) -> Optional[str]:
        """
        Embed every stale card in ``cards`` and store the new records.

        All-or-nothing per call: provider failure or a vector count mismatch
        raises before any record is written. A card that comes back with an
        empty vector loses its old record, which no longer matches its content.

        Returns:
            The model that produced the vectors, or None if nothing was stale.

        Raises:
            ProviderError: If every candidate model fails
            MalformedResponseError: If the vector count differs from the input
            Cancelled: If cancelled before the records are stored
        """
        stale = self.stale_cards(cards)
        if not stale:
            return None

        check(cancel)
        texts = [clipped_embedding_input(card, self._max_input_chars) for card in stale]
        vectors, model_used = embed_with_fallback(
            provider,
            texts,
            task_type=RETRIEVAL_DOCUMENT,
            models=self.model_candidates(models),
            batch_size=batch_size,
            timeout=timeout,
        )
        if len(vectors) != len(stale):
            raise MalformedResponseError(
                f"Embedding count mismatch: sent {len(stale)}, got {len(vectors)}"
            )
        check(cancel)

        now = utc_now()
        with self._lock:
            for card, vector in zip(stale, vectors):
                if not vector:
                    self._records.pop(card.id, None)
                    continue
                self._records[card.id] = EmbeddingRecord(
                    card_id=card.id,
                    content_hash=content_hash(card.content),
                    vector=tuple(float(v) for v in vector),
                    updated_at=now,
                )
            if model_used != self._model:
                logger.info("Embedding model changed: %s -> %s", self._model, model_used)
                self._model = model_used
                new_dimension = len(next((v for v in vectors if v), ()))
                if new_dimension:
                    # Vectors from another model cannot be compared
                    self._records = {
                        cid: r for cid, r in self._records.items()
                        if len(r.vector) == new_dimension
                    }
        logger.info("Embedded %d card(s) with %s", len(stale), model_used)
        return model_used

    def prune(self, valid_ids: set[str]) -> int:
        """Drop records for cards that are no longer visible. Returns count dropped."""
        with self._lock:
            dropped = [cid for cid in self._records if cid not in valid_ids]
            for cid in dropped:
                del self._records[cid]
        return len(dropped)

    def evict(self) -> int:
        """Keep only the ``max_records`` most recently updated records."""
        with self._lock:
            if len(self._records) <= self._max_records:
                return 0
            kept = newest_first(self._records.values())[:self._max_records]
            dropped = len(self._records) - len(kept)
            self._records = {r.card_id: r for r in kept}
        return dropped

    def copy(self) -> "EmbeddingIndex":
        """Unpersisted working copy with the same model and records."""
        clone = EmbeddingIndex(
            None,
            model=self._model,
            max_records=self._max_records,
            save_delay=self._save_delay,
            max_input_chars=self._max_input_chars,
        )
        with self._lock:
            clone._records = dict(self._records)
        return clone

    def adopt(self, other: "EmbeddingIndex") -> None:
        """Replace records and model with those of a working copy."""
        records = other.records()
        with self._lock:
            self._records = records
            self._model = other.model

    # -- persistence --------------------------------------------------------

    def load(self, valid_ids: Optional[set[str]] = None) -> int:
        """
        Load records from disk, keeping only valid cards, newest first, capped.

        A missing or unreadable file yields an empty index.
        """
        if self._path is None or not self._path.exists():
            return 0
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            records = [EmbeddingRecord.from_dict(r) for r in payload.get("records", [])]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable embedding index %s: %s", self._path, e)
            return 0

        records = [
            r for r in records
            if r.vector and (valid_ids is None or r.card_id in valid_ids)
        ]
        kept = newest_first(records)[:self._max_records]
        with self._lock:
            self._records = {r.card_id: r for r in kept}
            model = str(payload.get("model") or "").strip()
            if model:
                self._model = model
        return len(kept)

    def save(self) -> None:
        """Write the index now. An index with no records removes the file."""
        if self._path is None:
            return
        self.evict()
        with self._lock:
            records = newest_first(r for r in self._records.values() if r.vector)
            model = self._model.strip() or DEFAULT_MODEL

        if not records:
            self._path.unlink(missing_ok=True)
            return

        payload = {
            "model": model,
            "records": [r.to_dict() for r in records],
            "updated_at": utc_now(),
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, sort_keys=True)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def schedule_save(self) -> None:
        """Coalesce rapid mutations into one write after ``save_delay`` seconds."""
        if self._path is None:
            return
        with self._lock:
            if self._save_timer is not None:
                self._save_timer.cancel()
            timer = threading.Timer(self._save_delay, self._timed_save)
            timer.daemon = True
            self._save_timer = timer
        timer.start()

    def _timed_save(self) -> None:
        with self._lock:
            self._save_timer = None
        try:
            self.save()
        except OSError as e:
            logger.warning("Failed to persist embedding index: %s", e)

    def flush(self) -> None:
        """Cancel any pending timer and write immediately."""
        with self._lock:
            timer, self._save_timer = self._save_timer, None
        if timer is not None:
            timer.cancel()
        self.save()
