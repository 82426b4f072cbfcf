"""
Conversation threads for one workspace.

Threads are kept in memory and persisted as one JSON file (sorted keys,
ISO-8601 timestamps). Record caps are applied on load and before every
write: at most ``max_threads`` threads, most recently updated first, and
at most ``max_messages`` messages per thread, newest kept.
"""

import json
import logging
import os
import tempfile
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from .cards import ThreadScope
from .types import HistoryMessage, TokenUsage, utc_now

logger = logging.getLogger(__name__)

MAX_THREADS = 30
MAX_MESSAGES = 140
SAVE_DELAY = 0.45
ROLLING_REFRESH_EVERY = 4

DEFAULT_TITLE_PREFIX = "Thread "
TITLE_LENGTH = 16


@dataclass
class ChatMessage:
    role: str  # "user" or "model"
    text: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {"id": self.id, "role": self.role, "text": self.text, "created_at": self.created_at}

    @classmethod
    def from_dict(cls, data: dict) -> "ChatMessage":
        return cls(
            role=str(data.get("role", "user")),
            text=str(data.get("text", "")),
            id=str(data.get("id") or uuid.uuid4().hex),
            created_at=str(data.get("created_at") or utc_now()),
        )


@dataclass
class ChatThread:
    id: str
    title: str
    scope: ThreadScope = field(default_factory=ThreadScope)
    messages: list[ChatMessage] = field(default_factory=list)
    rolling_summary: str = ""
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    updated_at: str = field(default_factory=utc_now)

    @property
    def user_turns(self) -> int:
        return sum(1 for m in self.messages if m.role == "user")

    def history(self) -> list[HistoryMessage]:
        return [HistoryMessage(m.role, m.text) for m in self.messages]

    def last_user_message(self) -> str:
        for message in reversed(self.messages):
            if message.role == "user":
                return message.text
        return ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "scope": self.scope.to_dict(),
            "messages": [m.to_dict() for m in self.messages],
            "rolling_summary": self.rolling_summary,
            "token_usage": self.token_usage.to_dict(),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChatThread":
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or DEFAULT_TITLE_PREFIX.strip()),
            scope=ThreadScope.from_dict(data.get("scope")),
            messages=[ChatMessage.from_dict(m) for m in data.get("messages") or []],
            rolling_summary=str(data.get("rolling_summary") or ""),
            token_usage=TokenUsage.from_dict(data.get("token_usage")),
            updated_at=str(data.get("updated_at") or utc_now()),
        )


def should_refresh_rolling_summary(
    thread: ChatThread,
    every: int = ROLLING_REFRESH_EVERY,
    *,
    pending_turns: int = 0,
) -> bool:
    """
    Refresh when there is no summary yet, or on every ``every``-th user turn.

    ``pending_turns`` counts user messages not yet appended to the thread.
    """
    if not thread.rolling_summary.strip():
        return True
    return every > 0 and (thread.user_turns + pending_turns) % every == 0


def is_default_title(title: str) -> bool:
    """True for the numbered titles new threads get: ``Thread <n>``."""
    suffix = title[len(DEFAULT_TITLE_PREFIX):]
    return title.startswith(DEFAULT_TITLE_PREFIX) and suffix.isascii() and suffix.isdigit()


def suggested_title(user_message: str) -> str:
    trimmed = user_message.strip()
    if not trimmed:
        return DEFAULT_TITLE_PREFIX.strip()
    if len(trimmed) <= TITLE_LENGTH:
        return trimmed
    return trimmed[:TITLE_LENGTH] + "..."


class ThreadStore:
    """
    In-memory threads with debounced JSON persistence.

    Mutations go through ``update`` (or helpers built on it), which bumps
    ``updated_at`` and schedules a save.
    """

    def __init__(
        self,
        path: Optional[Path],
        *,
        max_threads: int = MAX_THREADS,
        max_messages: int = MAX_MESSAGES,
        save_delay: float = SAVE_DELAY,
    ):
        self._path = Path(path) if path is not None else None
        self._max_threads = max_threads
        self._max_messages = max_messages
        self._save_delay = save_delay
        self._threads: list[ChatThread] = []
        self._active_id: Optional[str] = None
        self._lock = threading.RLock()
        self._save_timer: Optional[threading.Timer] = None

    # -- normalization ------------------------------------------------------

    def _normalized(self, threads: list[ChatThread]) -> list[ChatThread]:
        for thread in threads:
            if len(thread.messages) > self._max_messages:
                thread.messages = thread.messages[-self._max_messages:]
            thread.token_usage = thread.token_usage.clamped()
        ordered = sorted(threads, key=lambda t: t.updated_at, reverse=True)
        return ordered[:self._max_threads]

    # -- access -------------------------------------------------------------

    @property
    def active_id(self) -> Optional[str]:
        return self._active_id

    def list_threads(self) -> list[ChatThread]:
        with self._lock:
            return list(self._threads)

    def get(self, thread_id: str) -> Optional[ChatThread]:
        with self._lock:
            return next((t for t in self._threads if t.id == thread_id), None)

    def active(self) -> ChatThread:
        """The active thread, creating one when there is none."""
        with self._lock:
            thread = self.get(self._active_id) if self._active_id else None
            if thread is None:
                thread = self._threads[0] if self._threads else self.create()
                self._active_id = thread.id
            return thread

    def _next_title(self) -> str:
        numbers = []
        for thread in self._threads:
            if is_default_title(thread.title):
                numbers.append(int(thread.title[len(DEFAULT_TITLE_PREFIX):]))
        return f"{DEFAULT_TITLE_PREFIX}{max(numbers, default=0) + 1}"

    # -- mutation -----------------------------------------------------------

    def create(self, scope: Optional[ThreadScope] = None) -> ChatThread:
        with self._lock:
            thread = ChatThread(id=uuid.uuid4().hex, title=self._next_title(), scope=scope or ThreadScope())
            self._threads.insert(0, thread)
            self._active_id = thread.id
            self._threads = self._normalized(self._threads)
        self.schedule_save()
        return thread

    def select(self, thread_id: str) -> ChatThread:
        with self._lock:
            thread = self.get(thread_id)
            if thread is None:
                raise KeyError(thread_id)
            self._active_id = thread_id
        self.schedule_save()
        return thread

    def delete(self, thread_id: str) -> bool:
        with self._lock:
            before = len(self._threads)
            self._threads = [t for t in self._threads if t.id != thread_id]
            if self._active_id == thread_id:
                self._active_id = self._threads[0].id if self._threads else None
            removed = len(self._threads) < before
        if removed:
            self.schedule_save()
        return removed

    def update(self, thread_id: str, mutate: Callable[[ChatThread], None]) -> Optional[ChatThread]:
        with self._lock:
            thread = self.get(thread_id)
            if thread is None:
                return None
            mutate(thread)
            thread.updated_at = utc_now()
            if len(thread.messages) > self._max_messages:
                thread.messages = thread.messages[-self._max_messages:]
        self.schedule_save()
        return thread

    def append_message(self, thread_id: str, role: str, text: str) -> Optional[ChatThread]:
        """Append a message; the first user message names a default-titled thread."""
        def mutate(thread: ChatThread) -> None:
            thread.messages.append(ChatMessage(role=role, text=text))
            if role == "user" and is_default_title(thread.title) and text.strip():
                thread.title = suggested_title(text)
        return self.update(thread_id, mutate)

    def clear_messages(self, thread_id: str) -> Optional[ChatThread]:
        def mutate(thread: ChatThread) -> None:
            thread.messages = []
            thread.rolling_summary = ""
            thread.token_usage = TokenUsage()
        return self.update(thread_id, mutate)

    # -- persistence --------------------------------------------------------

    def load(self) -> int:
        """Load threads from disk. A missing or unreadable file yields none."""
        if self._path is None or not self._path.exists():
            return 0
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            threads = [ChatThread.from_dict(t) for t in payload.get("threads", [])]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable thread store %s: %s", self._path, e)
            return 0
        with self._lock:
            self._threads = self._normalized(threads)
            saved_active = payload.get("active_thread_id")
            if any(t.id == saved_active for t in self._threads):
                self._active_id = saved_active
            else:
                self._active_id = self._threads[0].id if self._threads else None
            return len(self._threads)

    def save(self) -> None:
        """Write now. No threads removes the file."""
        if self._path is None:
            return
        with self._lock:
            self._threads = self._normalized(self._threads)
            threads = [t.to_dict() for t in self._threads]
            active = self._active_id if any(t.id == self._active_id for t in self._threads) else None
            if active is None and self._threads:
                active = self._threads[0].id

        if not threads:
            self._path.unlink(missing_ok=True)
            return

        payload = {"threads": threads, "active_thread_id": active}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, sort_keys=True, indent=2, ensure_ascii=False)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def schedule_save(self) -> None:
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
            logger.warning("Failed to persist threads: %s", e)

    def flush(self) -> None:
        with self._lock:
            timer, self._save_timer = self._save_timer, None
        if timer is not None:
            timer.cancel()
        self.save()
