"""
Local index store using SQLite.

Mirrors the embedding index on disk as two tables: ``embeddings`` (one
row per card: metadata, raw little-endian float32 vector, search text)
and ``token_index`` (inverted postings keyed by ``(token, card_id)``).
The postings give a cheap lexical pre-filter before cosine scoring.

Writes are serialized: one connection per store, guarded by a lock, and
every sync runs inside a single IMMEDIATE transaction. Readers therefore
see either the state before a sync or after it, never a mix.
"""

import logging
import sqlite3
import struct
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from .embedding_index import clipped_embedding_input
from .errors import IndexStoreError
from .text import content_hash, search_tokens, term_frequency
from .types import CardDigest, CardSnapshot, EmbeddingRecord, parse_utc_timestamp

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Pad lexical matches with recent cards up to this many candidates
FALLBACK_LIMIT = 160


def pack_vector(vector) -> bytes:
    """Encode floats as a raw little-endian float32 array."""
    return struct.pack(f"<{len(vector)}f", *vector)


def unpack_vector(blob: bytes) -> list[float]:
    count = len(blob) // 4
    return list(struct.unpack(f"<{count}f", blob[:count * 4]))


@dataclass
class IndexDocument:
    """One card's row in the local index, plus its token postings."""
    card_id: str
    content_hash: str
    category: str
    order_index: int
    updated_at: str
    vector: list[float]
    search_text: str
    token_frequencies: dict[str, int] = field(default_factory=dict)


def build_index_documents(
    cards: Iterable[CardSnapshot],
    digests: dict[str, CardDigest],
    records: dict[str, EmbeddingRecord],
    *,
    max_input_chars: int = 1800,
) -> list[IndexDocument]:
    """
    Build index documents for cards that have both a digest and a vector
    computed from their current content.

    The search text combines category, summary, key facts and the clipped
    embedding input, so lexical matching sees what the model saw.
    """
    documents = []
    for card in cards:
        digest = digests.get(card.id)
        record = records.get(card.id)
        if digest is None or record is None or not record.vector:
            continue
        if record.content_hash != content_hash(card.content):
            continue
        search_text = " ".join([
            card.category,
            digest.short_summary,
            " ".join(digest.key_facts),
            clipped_embedding_input(card, max_input_chars),
        ])
        documents.append(IndexDocument(
            card_id=card.id,
            content_hash=record.content_hash,
            category=card.category,
            order_index=card.order_index,
            updated_at=record.updated_at,
            vector=list(record.vector),
            search_text=search_text,
            token_frequencies=dict(term_frequency(search_tokens(search_text))),
        ))
    return documents


def _sortable_time(ts: str) -> float:
    try:
        return parse_utc_timestamp(ts).timestamp()
    except ValueError:
        return 0.0


class LocalIndexStore:
    """
    SQLite-backed vector and token-postings store for one workspace.

    Only ``sync_index`` mutates the tables. Raw connections are never
    handed out.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            # isolation_level=None gives us manual transaction control
            # so a whole sync runs under one BEGIN IMMEDIATE
            self._conn = sqlite3.connect(
                str(self._db_path), check_same_thread=False,
                isolation_level=None,
            )
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA busy_timeout=5000")

            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS embeddings (
                    card_id TEXT PRIMARY KEY,
                    content_hash TEXT NOT NULL,
                    category TEXT NOT NULL,
                    order_index INTEGER NOT NULL,
                    updated_at REAL NOT NULL,
                    vector BLOB NOT NULL,
                    search_text TEXT NOT NULL
                )
            """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS token_index (
                    token TEXT NOT NULL,
                    card_id TEXT NOT NULL,
                    tf REAL NOT NULL,
                    PRIMARY KEY (token, card_id)
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_embeddings_updated_at
                ON embeddings(updated_at DESC)
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_token_index_card_id
                ON token_index(card_id)
            """)
            self._conn.execute(f"PRAGMA user_version={SCHEMA_VERSION}")
        except (sqlite3.Error, OSError) as e:
            raise IndexStoreError(f"Cannot open index store {self._db_path}: {e}") from e

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise IndexStoreError("Index store is closed")
        return self._conn

    # -- writes -------------------------------------------------------------

    def _write_postings(self, conn: sqlite3.Connection, doc: IndexDocument) -> None:
        """Replace one card's postings. Runs inside the sync transaction."""
        conn.execute("DELETE FROM token_index WHERE card_id = ?", (doc.card_id,))
        conn.executemany("""
            INSERT INTO token_index (token, card_id, tf)
            VALUES (?, ?, ?)
            ON CONFLICT(token, card_id) DO UPDATE SET tf = excluded.tf
        """, [
            (token, doc.card_id, float(tf))
            for token, tf in doc.token_frequencies.items() if token
        ])

    def sync_index(self, documents: list[IndexDocument], valid_card_ids: set[str]) -> int:
        """
        Upsert documents and drop every card not in ``valid_card_ids``.

        The whole call is one transaction: on any failure nothing is
        applied. Documents without a vector are skipped.

        Returns:
            Number of cards removed.

        Raises:
            IndexStoreError: If the transaction failed (and was rolled back)
        """
        with self._lock:
            conn = self._require_conn()
            try:
                # BEGIN IMMEDIATE takes the write lock up front so another
                # process cannot interleave a sync
                conn.execute("BEGIN IMMEDIATE")
                try:
                    for doc in documents:
                        if not doc.vector:
                            continue
                        conn.execute("""
                            INSERT INTO embeddings
                                (card_id, content_hash, category, order_index,
                                 updated_at, vector, search_text)
                            VALUES (?, ?, ?, ?, ?, ?, ?)
                            ON CONFLICT(card_id) DO UPDATE SET
                                content_hash = excluded.content_hash,
                                category = excluded.category,
                                order_index = excluded.order_index,
                                updated_at = excluded.updated_at,
                                vector = excluded.vector,
                                search_text = excluded.search_text
                        """, (
                            doc.card_id,
                            doc.content_hash,
                            doc.category,
                            doc.order_index,
                            _sortable_time(doc.updated_at),
                            pack_vector(doc.vector),
                            doc.search_text,
                        ))
                        self._write_postings(conn, doc)

                    stored = [row[0] for row in conn.execute("SELECT card_id FROM embeddings")]
                    removed = [(cid,) for cid in stored if cid not in valid_card_ids]
                    if removed:
                        conn.executemany("DELETE FROM token_index WHERE card_id = ?", removed)
                        conn.executemany("DELETE FROM embeddings WHERE card_id = ?", removed)

                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
            except sqlite3.Error as e:
                raise IndexStoreError(f"Index sync failed: {e}") from e

        logger.debug("Synced %d document(s), removed %d", len(documents), len(removed))
        return len(removed)

    # -- reads --------------------------------------------------------------

    def query_candidate_ids(
        self,
        tokens: list[str],
        limit: int,
        fallback_limit: int = FALLBACK_LIMIT,
    ) -> list[str]:
        """
        Card IDs ranked by summed term frequency over ``tokens``.

        Returns at most ``limit`` IDs. When the lexical matches fall short
        (or there are no tokens) the list is padded, without duplicates,
        with the most recently updated cards.
        """
        if limit <= 0:
            return []
        scan_limit = max(limit, fallback_limit)
        unique_tokens = sorted({t for t in tokens if t})
        ordered: list[str] = []
        seen: set[str] = set()

        with self._lock:
            conn = self._require_conn()
            try:
                if unique_tokens:
                    placeholders = ",".join("?" * len(unique_tokens))
                    cursor = conn.execute(f"""
                        SELECT card_id, SUM(tf) AS score
                        FROM token_index
                        WHERE token IN ({placeholders})
                        GROUP BY card_id
                        ORDER BY score DESC, card_id ASC
                        LIMIT ?
                    """, (*unique_tokens, scan_limit))
                    for card_id, _score in cursor.fetchall():
                        if card_id not in seen:
                            seen.add(card_id)
                            ordered.append(card_id)
                            if len(ordered) >= limit:
                                return ordered

                cursor = conn.execute("""
                    SELECT card_id FROM embeddings
                    ORDER BY updated_at DESC, card_id ASC
                    LIMIT ?
                """, (scan_limit,))
                for (card_id,) in cursor.fetchall():
                    if card_id not in seen:
                        seen.add(card_id)
                        ordered.append(card_id)
                        if len(ordered) >= limit:
                            break
            except sqlite3.Error as e:
                raise IndexStoreError(f"Candidate query failed: {e}") from e

        return ordered

    def get_vector(self, card_id: str) -> Optional[list[float]]:
        with self._lock:
            row = self._require_conn().execute(
                "SELECT vector FROM embeddings WHERE card_id = ?", (card_id,)
            ).fetchone()
        return unpack_vector(row[0]) if row else None

    def card_ids(self) -> set[str]:
        with self._lock:
            rows = self._require_conn().execute("SELECT card_id FROM embeddings").fetchall()
        return {row[0] for row in rows}

    def posting_card_ids(self) -> set[str]:
        """Card IDs referenced by any posting."""
        with self._lock:
            rows = self._require_conn().execute(
                "SELECT DISTINCT card_id FROM token_index"
            ).fetchall()
        return {row[0] for row in rows}

    def postings(self, card_id: str) -> dict[str, float]:
        with self._lock:
            rows = self._require_conn().execute(
                "SELECT token, tf FROM token_index WHERE card_id = ?", (card_id,)
            ).fetchall()
        return {token: tf for token, tf in rows}

    def count(self) -> int:
        """Number of cards in the store."""
        with self._lock:
            row = self._require_conn().execute("SELECT COUNT(*) FROM embeddings").fetchone()
        return row[0]

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        """Ensure connection is closed on garbage collection."""
        self.close()
