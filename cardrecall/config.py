"""
Configuration management for cardrecall workspaces.

The configuration is stored as a TOML file in the workspace directory.
It specifies the provider, models, retrieval knobs and prompt budgets.
"""

import os
import tomllib
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w


CONFIG_FILENAME = "cardrecall.toml"
CONFIG_VERSION = 1

DEFAULT_CHAT_MODEL = "gemini-3-pro-preview"
DEFAULT_EMBEDDING_MODELS = ["gemini-embedding-001", "text-embedding-004"]


@dataclass
class ProviderConfig:
    """Configuration for the remote provider."""
    name: str = "gemini"
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class RetrievalConfig:
    """Hybrid retrieval knobs."""
    top_k: int = 8
    scope_boost: float = 0.08
    line_budget: int = 900
    candidate_multiplier: int = 24
    candidate_floor: int = 140
    fallback_limit: int = 160
    max_input_chars: int = 1800
    batch_size: int = 24
    retrieval_facts: int = 2
    document_timeout: float = 80.0
    query_timeout: float = 45.0

    @property
    def candidate_limit(self) -> int:
        return max(self.top_k * self.candidate_multiplier, self.candidate_floor)


@dataclass
class PromptBudgets:
    """Per-section character caps for prompt assembly."""
    scoped: int = 1200
    retrieval: int = 900
    lane: int = 500
    history: int = 700
    rolling: int = 520
    question: int = 600
    history_messages: int = 10
    history_message_chars: int = 260
    rolling_window: int = 6
    rolling_previous_chars: int = 320
    card_summary: int = 140
    key_fact: int = 44
    scoped_facts: int = 3
    fallback_card_chars: int = 900
    # Category lanes summarized globally; empty means every category present
    lanes: list[str] = field(default_factory=list)


@dataclass
class IndexConfig:
    max_records: int = 1200
    save_delay: float = 0.8


@dataclass
class ThreadConfig:
    max_threads: int = 30
    max_messages: int = 140
    save_delay: float = 0.45
    rolling_refresh_every: int = 4


@dataclass
class GenerationConfig:
    max_chunks: int = 4
    tail_chars: int = 1400
    max_overlap: int = 280
    min_overlap: int = 20
    min_word_overlap: int = 8
    attempt_timeouts: list[float] = field(default_factory=lambda: [75.0, 120.0])
    retry_delay: float = 0.8
    temperature: float = 0.95
    top_p: float = 0.95


@dataclass
class WorkspaceConfig:
    """Complete workspace configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    provider: ProviderConfig = field(default_factory=ProviderConfig)
    chat_model: str = DEFAULT_CHAT_MODEL
    embedding_models: list[str] = field(default_factory=lambda: list(DEFAULT_EMBEDDING_MODELS))

    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    budgets: PromptBudgets = field(default_factory=PromptBudgets)
    index: IndexConfig = field(default_factory=IndexConfig)
    threads: ThreadConfig = field(default_factory=ThreadConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def embedding_index_path(self) -> Path:
        return self.path / "embedding-index.json"

    @property
    def index_db_path(self) -> Path:
        return self.path / "vector-index.db"

    @property
    def threads_path(self) -> Path:
        return self.path / "threads.json"

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def detect_default_provider() -> ProviderConfig:
    """
    Pick a provider for a new workspace from the environment.

    Gemini when a Gemini/Google key is set (or nothing is set), OpenAI
    when only an OpenAI key is available.
    """
    has_gemini_key = bool(
        os.environ.get("CARDRECALL_API_KEY")
        or os.environ.get("GEMINI_API_KEY")
        or os.environ.get("GOOGLE_API_KEY")
    )
    has_openai_key = bool(os.environ.get("OPENAI_API_KEY"))
    if has_openai_key and not has_gemini_key:
        return ProviderConfig("openai")
    return ProviderConfig("gemini")


def create_default_config(workspace_path: Path) -> WorkspaceConfig:
    """Create a new config with auto-detected defaults."""
    provider = detect_default_provider()
    config = WorkspaceConfig(path=workspace_path, provider=provider)
    if provider.name == "openai":
        config.chat_model = "gpt-4.1-mini"
        config.embedding_models = ["text-embedding-3-small"]
    return config


def _section(cls, data: Optional[dict]):
    """Build a settings dataclass from a TOML table, ignoring unknown keys."""
    if not data:
        return cls()
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


def load_config(workspace_path: Path) -> WorkspaceConfig:
    """
    Load configuration from a workspace directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = workspace_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    version = data.get("workspace", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    provider_section = data.get("provider", {"name": "gemini"})
    provider = ProviderConfig(
        name=provider_section.get("name", "gemini"),
        params={k: v for k, v in provider_section.items() if k != "name"},
    )

    models = data.get("models", {})
    embedding_models = [m for m in models.get("embedding", []) if str(m).strip()]

    return WorkspaceConfig(
        path=workspace_path,
        version=version,
        created=data.get("workspace", {}).get("created", ""),
        provider=provider,
        chat_model=models.get("chat", DEFAULT_CHAT_MODEL),
        embedding_models=embedding_models or list(DEFAULT_EMBEDDING_MODELS),
        retrieval=_section(RetrievalConfig, data.get("retrieval")),
        budgets=_section(PromptBudgets, data.get("budgets")),
        index=_section(IndexConfig, data.get("index")),
        threads=_section(ThreadConfig, data.get("threads")),
        generation=_section(GenerationConfig, data.get("generation")),
    )


def save_config(config: WorkspaceConfig) -> None:
    """
    Save configuration to the workspace directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    provider = {"name": config.provider.name}
    provider.update(config.provider.params)

    data = {
        "workspace": {
            "version": config.version,
            "created": config.created,
        },
        "provider": provider,
        "models": {
            "chat": config.chat_model,
            "embedding": list(config.embedding_models),
        },
        "retrieval": asdict(config.retrieval),
        "budgets": asdict(config.budgets),
        "index": asdict(config.index),
        "threads": asdict(config.threads),
        "generation": asdict(config.generation),
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(workspace_path: Path) -> WorkspaceConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = workspace_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(workspace_path)
    config = create_default_config(workspace_path)
    save_config(config)
    return config


def get_default_workspace_path() -> Path:
    """Workspace directory from CARDRECALL_HOME, else ~/.cardrecall/default."""
    home = os.environ.get("CARDRECALL_HOME")
    if home:
        return Path(home).expanduser().resolve()
    return Path.home() / ".cardrecall" / "default"
